import os
import time
import json
import pathlib
import argparse

import gc_io
import gc_core
import gc_utils
from fit_data import FitSettings


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument('-in', '--input_folder', help='The path to the folder with the measurements', required=True)
    parser.add_argument('-out', '--output_folder', help='The path to the folder under which the output will be saved', required=True)
    parser.add_argument('-c', '--is_get_cached_results', help='should the program grab data from the output folder that was put there from previous runs', default=False ,action='store_true')
    parser.add_argument('-gg', '--is_create_group_graphs', help='should a graph be generated for every group', default=False ,action='store_true')
    parser.add_argument('-sg', '--is_create_summary_graphs', help='should growth rate summary graphs be generated', default=False ,action='store_true')
    parser.add_argument('--config', help='The path to the config file', default='config.json')


    args = parser.parse_args(argv)
    input_path = os.path.normcase(args.input_folder)
    output_path = os.path.normcase(args.output_folder)
    is_import_chached_results = args.is_get_cached_results
    is_create_group_graphs = args.is_create_group_graphs
    is_create_summary_graphs = args.is_create_summary_graphs


    # Read the analysis settings from the config file
    config = ''
    with open(args.config) as json_file:
        config = json.load(json_file)

    raw_data_file_extension = config['file_extension']
    key_columns = config['group_key_columns']
    time_column = config['time_column']
    density_column = config['density_column']
    death_phase_relative_tolerance = config['death_phase_relative_tolerance']
    fit_settings = FitSettings.from_config(config.get('fit'))
    curve_sample_points = config['curve_sample_points']
    max_workers = config.get('max_workers')
    rate_unit_factor = config['rate_unit_factor']
    rate_unit_label = config['rate_unit_label']
    # The amount of digits after the decimal point to show in plots
    decimal_percision_in_plots = config['decimal_precision_in_plots']

    if not is_import_chached_results:
        # Get all the files from the input directory
        files_for_analysis = gc_utils.get_files_from_directory(input_path, raw_data_file_extension)
        if len(files_for_analysis) == 0:
            print(f'No {raw_data_file_extension} files were found in {input_path}. Finishing the program.')
            return

        file_import_log = []
        file_import_log_save_path = os.path.join(output_path, 'file_import_log.txt')

        file_annotated_data_mapping = {}
        print("Importing the data from files")
        for file in files_for_analysis:
            current_file_name = pathlib.Path(file).stem
            try:
                raw_data_df = gc_io.read_growth_table(file, file_import_log, time_column, density_column, key_columns)
            except ValueError:
                # Keep a record of what was wrong with the input before stopping
                gc_utils.save_log(file_import_log, file_import_log_save_path)
                raise

            file_annotated_data_mapping[current_file_name] = gc_core.annotate_death_phase(raw_data_df, death_phase_relative_tolerance, time_column, density_column)
            gc_io.save_dataframe_to_csv(file_annotated_data_mapping[current_file_name], output_path, f'{current_file_name}_annotated_data')
        print("Exported annotated data to csv")

        gc_utils.save_log(file_import_log, file_import_log_save_path)


        growth_parameters_log = []
        growth_parameters_log_save_path = os.path.join(output_path, 'growth_parameters_log.txt')
        print("Fitting the logistic model for each group")
        file_fit_data_mapping = {}
        for file_name in file_annotated_data_mapping:
            file_fit_data_mapping[file_name], curr_log = gc_core.get_experiment_growth_parameters(file_annotated_data_mapping[file_name], fit_settings,
                                                                                                   max_workers, time_column, density_column)
            # Raw r is per time unit of the input, the converted one is added next to it for the tables
            file_fit_data_mapping[file_name][f'r_{rate_unit_label}'] = gc_utils.convert_growth_rate_units(file_fit_data_mapping[file_name]['r'], rate_unit_factor)
            growth_parameters_log += [f'{file_name}: {msg}' for msg in curr_log]
            gc_io.save_dataframe_to_csv(file_fit_data_mapping[file_name], output_path, f'{file_name}_fit_data')

        # Remove all the empty indexes from the list before saving
        growth_parameters_log = list(filter(lambda x: x != '', growth_parameters_log))
        gc_utils.save_log(growth_parameters_log, growth_parameters_log_save_path)

    else:
        print(f"Importing results in {output_path}")
        file_annotated_data_mapping, file_fit_data_mapping = gc_io.import_previous_run_data(output_path, key_columns)
        print(f"Import succesful, imported {list(file_annotated_data_mapping.keys())} annotated data and fit data")

    # Data has either been fitted or loaded, reconstruct the curves over the measured time range of each file
    print("Sampling the fitted curves")
    file_curves_data_mapping = {}
    for file_name, annotated_data_df in file_annotated_data_mapping.items():
        fit_results = gc_core.fit_results_from_dataframe(file_fit_data_mapping[file_name])
        file_curves_data_mapping[file_name] = gc_core.get_fitted_curves(fit_results, annotated_data_df[time_column].min(), annotated_data_df[time_column].max(),
                                                                        n_points=curve_sample_points, key_columns=key_columns, time_column=time_column)
        gc_io.save_dataframe_to_csv(file_curves_data_mapping[file_name], output_path, f'{file_name}_fitted_curves')

    if is_create_group_graphs:
        print("Creating figures")
        # Graph the data and save the figures to the output_directory
        for file_name in file_annotated_data_mapping:
            graphs_output_path = gc_io.create_directory(output_path, f'{file_name} group graphs')
            gc_io.create_single_group_graphs(file_name, file_annotated_data_mapping[file_name], file_fit_data_mapping[file_name], file_curves_data_mapping[file_name],
                                             graphs_output_path, f"{density_column} as a function of time", decimal_percision_in_plots, time_column, density_column)

    if is_create_summary_graphs:
        summary_graphs_path = gc_io.create_directory(output_path, 'summary graphs')
        for file_name in file_fit_data_mapping:
            gc_io.create_growth_rate_summary_graph(file_fit_data_mapping[file_name], summary_graphs_path, file_name,
                                                   group_column=key_columns[0], hue_column=key_columns[1] if len(key_columns) > 1 else None)


if __name__ == "__main__":
    start_time = time.time()
    main()
    passed_time = time.time() - start_time
    # Convert the time to minutes and seconds and print it
    print(f"It took {int(passed_time / 60)} minutes and {int(passed_time % 60)} seconds to run the program")
