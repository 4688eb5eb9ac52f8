import os
import pathlib
import matplotlib
import pandas as pd
import seaborn as sns
import matplotlib.pyplot as plt

import gc_utils

# gc prefix added to avoid name conflict with other modules
# This file contains all IO related functions

def read_growth_table(file_path, log, time_column='time', density_column='OD', key_columns=gc_utils.DEFAULT_GROUP_KEY_COLUMNS):
    '''
    Desrciption
    -----------
    Read a tidy table of density measurements from a csv or an excel file (all the sheets of an excel file are read and concatenated)

    Parameters
    ----------
    file_path : str
        The path to the file
    log : list
        The list to which the log messages will be appended
    time_column : str
        Name of the column with the measurement times
    density_column : str
        Name of the column with the measured densities
    key_columns : list of strings
        Names of the columns that together identify a group (organism, experiment, replicate)

    Returns
    -------
    pandas.DataFrame
        dataframe containing all the columns from the input file indexed by the key columns and sorted by group and time. Columns:
        - ``time`` (:py:class:`float`) measurement time
        - ``OD`` (:py:class:`float`) Optical density in AU, missing measurements are nan
        All other columns are kept as they are.

    Raises
    ------
    ValueError
        If the file type is not supported, a required column is missing, a time or key value is missing or a density is not a number.
    '''
    current_file_name = pathlib.Path(file_path).stem
    print(f"Reading data from file {current_file_name}")

    # Keys are opaque identifiers, don't let pandas turn "01" into 1
    key_dtypes = {column: str for column in key_columns}

    extension = pathlib.Path(file_path).suffix.lower()
    if extension == '.csv':
        raw_data_df = pd.read_csv(file_path, dtype=key_dtypes)
    elif extension in ('.xlsx', '.xls'):
        with pd.ExcelFile(file_path) as excel_file:
            sheets = [pd.read_excel(excel_file, sheet_name, dtype=key_dtypes) for sheet_name in excel_file.sheet_names]
        raw_data_df = pd.concat(sheets, ignore_index=True)
    else:
        __raise_input_error(f'Unsupported file type "{extension}" for file: {current_file_name}', log)

    missing_columns = [column for column in list(key_columns) + [time_column, density_column] if column not in raw_data_df.columns]
    if missing_columns:
        __raise_input_error(f'Columns {missing_columns} are missing in file: {current_file_name}', log)

    for column in list(key_columns) + [time_column]:
        if raw_data_df[column].isna().any():
            first_missing_row = raw_data_df.index[raw_data_df[column].isna()][0]
            __raise_input_error(f'A missing value in column "{column}" at row {first_missing_row} in file: {current_file_name}', log)

    # Missing densities are allowed, anything else that is not a number (e.g. "OVER" from the reader) is not
    densities = pd.to_numeric(raw_data_df[density_column], errors='coerce')
    invalid_density = densities.isna() & raw_data_df[density_column].notna()
    if invalid_density.any():
        first_invalid_row = raw_data_df.index[invalid_density][0]
        __raise_input_error(f'A measurement with the value of "{raw_data_df[density_column][first_invalid_row]}" is in row {first_invalid_row} in file: {current_file_name}', log)

    raw_data_df[time_column] = pd.to_numeric(raw_data_df[time_column], errors='raise').astype(float)
    raw_data_df[density_column] = densities.astype(float)

    raw_data_df = raw_data_df.sort_values(list(key_columns) + [time_column], kind='mergesort')
    return raw_data_df.set_index(list(key_columns))


def __raise_input_error(err_msg, log):
    log.append(err_msg)
    raise ValueError(err_msg)


def save_dataframe_to_csv(df, output_file_path, file_name):
    '''
    Description
    -----------
    Save a dataframe to a csv file with the indexes

    Parameters
    ----------
    df : pandas.DataFrame
        The dataframe to be saved
    output_file_path : str
        The path to the folder where the csv file will be saved
    file_name : str
        The name of the csv file, supply the value of the file name without the extension
    '''
    #Create the output file path with the file name and extension
    file_path_with_file_name = os.path.join(output_file_path, f'{file_name}.csv')
    # Save the dataframe a csv file
    df.to_csv(file_path_with_file_name, index=True)
    return file_path_with_file_name


def create_directory(father_directory, nested_directory_name):
    '''
    Description
    -----------
    Create a directory if it does not exist

    Parameters
    ----------
    father_directory : str
        The path to the directory under which the new directory will be created
    nested_directory_name : str
        The name of the nested directory to be created
    '''
    # Create the output directory path
    new_dir_path = os.path.join(father_directory, nested_directory_name)
    # Create the directory if it does not exist
    if not os.path.isdir(new_dir_path):
        os.mkdir(new_dir_path)
    return new_dir_path


def create_single_group_graphs(file_name, annotated_data, fit_data, curves_data, output_path, title, decimal_percision,
                               time_column='time', density_column='OD', curve_density_column='predicted_OD'):
    '''Create a graph for each group with the measurements and the fitted curve
    Parameters
    ----------
    file_name : str
        The name of the file being processed. Will be used to prefix the output file names
    annotated_data : pandas.DataFrame
        dataframe returned from gc_core.annotate_death_phase or one with the same structure
    fit_data : pandas.DataFrame
        dataframe returned from gc_core.get_experiment_growth_parameters or one with the same structure
    curves_data : pandas.DataFrame
        dataframe returned from gc_core.get_fitted_curves
    output_path : str
        Save path
    title: str
        The title for the graphs
    decimal_percision: int
        The amount of digits after the decimal point to show in the labels
    Returns
    -------
    list of strings
        The paths of the saved graphs
    '''

    # Matplotlib backend mode - a non-interactive backend that can only write to files
    # Before changing to this mode the program would crash after the creation of about 250 graphs
    matplotlib.use("Agg")

    plt.style.use('ggplot')

    # Styles
    point_size = 30
    alpha = 0.6

    key_columns = list(annotated_data.index.names)

    fit_data_unindexed = fit_data.reset_index()
    fit_rows = {tuple(row[column] for column in key_columns): row for row in fit_data_unindexed.to_dict('records')}
    curves_by_group = dict(list(curves_data.reset_index().groupby(key_columns)))

    saved_graphs = []
    for group_key, group_df in annotated_data.reset_index().groupby(key_columns):
        growth_phase_df = group_df[~group_df['death_phase']]
        death_phase_df = group_df[group_df['death_phase']]

        fig, ax = plt.subplots()
        ax.set_title(f'{title}\n{gc_utils.format_group_key(group_key, key_columns)}', fontsize=9)
        ax.set_xlabel('Time')
        ax.set_ylabel(density_column)

        ax.scatter(growth_phase_df[time_column], growth_phase_df[density_column], color='black', s=point_size, alpha=alpha, label='Growth phase')
        if not death_phase_df.empty:
            ax.scatter(death_phase_df[time_column], death_phase_df[density_column], color='firebrick', marker='x', s=point_size, alpha=alpha,
                       label='Death phase (not fitted)')

        # If the group has a fit graph it, otherwise only graph the measurements as an aid for seeing what went wrong
        fit_row = fit_rows.get(group_key)
        is_valid = fit_row is not None and bool(fit_row['is_valid'])
        if is_valid:
            if group_key in curves_by_group:
                curve_df = curves_by_group[group_key]
                ax.plot(curve_df[time_column], curve_df[curve_density_column], color='blue',
                        label=f'Logistic fit, r: {fit_row["r"]:.{decimal_percision}f}')

            ax.axhline(y=fit_row['K'], color='black', linestyle='dashdot', label=f'Carrying capacity: {fit_row["K"]:.{decimal_percision}f}')

        ax.legend(loc="lower right")

        # Mark the files of groups that failed fitting with an 'invalid' prefix
        status_string = '' if is_valid else 'invalid_'
        graph_path = os.path.join(output_path, f"{status_string}{file_name} {' '.join(str(value) for value in group_key)}.png")
        fig.savefig(graph_path)
        plt.close("all")
        saved_graphs.append(graph_path)

    return saved_graphs


def create_growth_rate_summary_graph(fit_data, output_path, file_name, rate_column='r', group_column='organism_id', hue_column='experiment_id'):
    '''
    Description
    -----------
    Box plot of the fitted growth rates of the valid groups, one box per value of group_column with the replicates drawn on top

    Returns
    -------
    str or None
        The path to the saved graph, None when no group was fitted successfully
    '''
    matplotlib.use("Agg")
    plt.style.use('ggplot')

    valid_fit_data = fit_data[fit_data['is_valid'].astype(bool)].reset_index()
    if valid_fit_data.empty:
        print(f'No valid fits in {file_name}, skipping the growth rate summary graph')
        return None

    plt.figure(figsize=(10, 6))
    ax = sns.boxplot(data=valid_fit_data, x=group_column, y=rate_column, color='lightgray', showfliers=False)
    sns.stripplot(data=valid_fit_data, x=group_column, y=rate_column, hue=hue_column, ax=ax, size=6, alpha=0.8)

    plt.title(f'{file_name}: growth rate ({rate_column}) by {group_column}')
    plt.xticks(rotation=45, ha='right')
    plt.tight_layout()
    graph_path = os.path.join(output_path, f'{file_name} growth rate summary.png')
    plt.savefig(graph_path)
    plt.close('all')
    return graph_path


def import_previous_run_data(output_path, key_columns=gc_utils.DEFAULT_GROUP_KEY_COLUMNS):
    '''
    Desrciption
    -----------
    Read the content the output folder with the results of a previous run.
    The folder must include at least one annotated data file (as saved from main) and the same number of fit data files
    belonging to the same original files. If any of these assumptions is not true the function will raise a value error.

    Parameters
    ----------
    output_path : str
        The path to the output folder with the results of a previous run
    key_columns : list of strings
        The group key columns the files were indexed by

    Returns
    -------
    file_annotated_data_mapping : dictionary
        The name of the file as the key and the annotated data as a pandas.DataFrame as the value
    file_fit_data_mapping : dictionary
        The name of the file as the key and the fit data from get_experiment_growth_parameters as a pandas.DataFrame as the value
    '''
    file_annotated_data_mapping = {}
    file_fit_data_mapping = {}

    key_dtypes = {column: str for column in key_columns}

    # List all files in the specified directory
    all_files = sorted(os.listdir(output_path))

    # Filter files based on the required suffix
    annotated_data_files = [f for f in all_files if f.endswith('_annotated_data.csv')]
    fit_data_files = [f for f in all_files if f.endswith('_fit_data.csv')]

    if len(annotated_data_files) == 0:
        raise ValueError(f"No annotated data files were found in {output_path}.")

    # Check that the number of annotated data files matches the number of fit data files
    if len(annotated_data_files) != len(fit_data_files):
        raise ValueError("The number of annotated data files does not match the number of fit data files.")

    for annotated_file in annotated_data_files:
        file_base_name = annotated_file.replace('_annotated_data.csv', '')
        # Index the df the same way it was indexed intially
        file_annotated_data_mapping[file_base_name] = pd.read_csv(os.path.join(output_path, annotated_file), dtype=key_dtypes).set_index(list(key_columns))

    for fit_file in fit_data_files:
        file_base_name = fit_file.replace('_fit_data.csv', '')
        file_fit_data_mapping[file_base_name] = pd.read_csv(os.path.join(output_path, fit_file), dtype=key_dtypes).set_index(list(key_columns))

    if file_annotated_data_mapping.keys() != file_fit_data_mapping.keys():
        raise ValueError("The annotated data files and the fit data files don't belong to the same original files.")

    return file_annotated_data_mapping, file_fit_data_mapping
