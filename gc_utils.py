import os

# gc prefix added to avoid name conflict with other modules
# This file contains all general utility functions

# organism, experiment and replicate identify a single growth curve
DEFAULT_GROUP_KEY_COLUMNS = ['organism_id', 'experiment_id', 'replicate_id']


def save_log(log, path):
    '''Overwrite the log file with the new log'''
    with open(path, 'w') as file:
        file.write('\n'.join(log))


def get_files_from_directory(path , extension):
    '''Get the full path to each file with the extension specified from the path'''
    files = []
    for file in sorted(os.listdir(path)):
        if file.endswith(extension):
            files.append(os.path.join(path ,file))
    return files


def get_first_index(iterable, condition=lambda x: True):
    '''Get the index of the first element in an iterable that matches the condition'''
    for i, x in enumerate(iterable):
        if condition(x):
            return i


def format_group_key(group_key, key_columns=DEFAULT_GROUP_KEY_COLUMNS):
    '''Readable group description for log messages, e.g. "organism_id: A, experiment_id: 1, replicate_id: 2"'''
    return ', '.join(f'{column}: {value}' for column, value in zip(key_columns, group_key))


def convert_growth_rate_units(growth_rates, factor):
    '''
    Scale growth rates to a different time unit.
    The rate is per unit of time so going from per hour to per day means a factor of 24.
    '''
    return growth_rates * factor
