import os

import numpy as np
import pandas as pd
import pytest

import gc_io
import gc_core


def write_csv(path, rows, columns=('organism_id', 'experiment_id', 'replicate_id', 'time', 'OD')):
    pd.DataFrame(rows, columns=list(columns)).to_csv(path, index=False)
    return str(path)


def test_read_csv(tmp_path):
    file_path = write_csv(tmp_path / 'plate1.csv', [
        ['ecoli', '01', '1', 2.0, 0.2],
        ['ecoli', '01', '1', 0.0, 0.1],
        ['ecoli', '01', '1', 1.0, None],
    ])
    log = []

    raw_data = gc_io.read_growth_table(file_path, log)

    assert list(raw_data.index.names) == ['organism_id', 'experiment_id', 'replicate_id']
    # Keys stay as text
    assert raw_data.index[0] == ('ecoli', '01', '1')
    assert raw_data['time'].tolist() == [0.0, 1.0, 2.0]
    assert np.isnan(raw_data['OD'].iloc[1])
    assert log == []


def test_read_excel_concatenates_sheets(tmp_path):
    file_path = str(tmp_path / 'plates.xlsx')
    columns = ['organism_id', 'experiment_id', 'replicate_id', 'time', 'OD']
    with pd.ExcelWriter(file_path) as writer:
        pd.DataFrame([['ecoli', 'exp1', '1', 0.0, 0.1]], columns=columns).to_excel(writer, sheet_name='plate1', index=False)
        pd.DataFrame([['yeast', 'exp1', '1', 0.0, 0.3]], columns=columns).to_excel(writer, sheet_name='plate2', index=False)

    raw_data = gc_io.read_growth_table(file_path, [])

    assert sorted(raw_data.index.get_level_values('organism_id')) == ['ecoli', 'yeast']


def test_missing_column_is_an_error(tmp_path):
    file_path = write_csv(tmp_path / 'bad.csv', [['ecoli', 'exp1', 0.0, 0.1]], columns=('organism_id', 'experiment_id', 'time', 'OD'))
    log = []

    with pytest.raises(ValueError, match='replicate_id'):
        gc_io.read_growth_table(file_path, log)
    assert len(log) == 1


def test_missing_time_is_an_error(tmp_path):
    file_path = write_csv(tmp_path / 'bad.csv', [['ecoli', 'exp1', '1', None, 0.1], ['ecoli', 'exp1', '1', 1.0, 0.2]])
    with pytest.raises(ValueError, match='time'):
        gc_io.read_growth_table(file_path, [])


def test_non_numeric_density_is_an_error(tmp_path):
    file_path = write_csv(tmp_path / 'bad.csv', [['ecoli', 'exp1', '1', 0.0, 0.1], ['ecoli', 'exp1', '1', 1.0, 'OVER']])
    log = []
    with pytest.raises(ValueError, match='OVER'):
        gc_io.read_growth_table(file_path, log)
    assert 'OVER' in log[0]


def test_unsupported_file_type(tmp_path):
    file_path = tmp_path / 'data.txt'
    file_path.write_text('time,OD\n')
    with pytest.raises(ValueError):
        gc_io.read_growth_table(str(file_path), [])


def test_import_previous_run_data(tmp_path, experiment_table):
    annotated = gc_core.annotate_death_phase(experiment_table)
    fit_data, _ = gc_core.get_experiment_growth_parameters(annotated, max_workers=1)
    gc_io.save_dataframe_to_csv(annotated, str(tmp_path), 'plate1_annotated_data')
    gc_io.save_dataframe_to_csv(fit_data, str(tmp_path), 'plate1_fit_data')

    annotated_mapping, fit_mapping = gc_io.import_previous_run_data(str(tmp_path))

    assert list(annotated_mapping) == ['plate1']
    assert annotated_mapping['plate1']['death_phase'].tolist() == annotated['death_phase'].tolist()
    np.testing.assert_allclose(fit_mapping['plate1']['r'].to_numpy(), fit_data['r'].to_numpy())
    assert fit_mapping['plate1'].index.equals(fit_data.index)


def test_import_previous_run_data_with_missing_files(tmp_path, experiment_table):
    gc_io.save_dataframe_to_csv(gc_core.annotate_death_phase(experiment_table), str(tmp_path), 'plate1_annotated_data')
    with pytest.raises(ValueError):
        gc_io.import_previous_run_data(str(tmp_path))


def test_create_directory(tmp_path):
    new_dir = gc_io.create_directory(str(tmp_path), 'graphs')
    assert os.path.isdir(new_dir)
    assert gc_io.create_directory(str(tmp_path), 'graphs') == new_dir


def test_graphs(tmp_path, experiment_table):
    annotated = gc_core.annotate_death_phase(experiment_table)
    fit_data, _ = gc_core.get_experiment_growth_parameters(annotated, max_workers=1)
    curves = gc_core.get_fitted_curves(gc_core.fit_results_from_dataframe(fit_data), 0, 14, n_points=50)

    saved_graphs = gc_io.create_single_group_graphs('plate1', annotated, fit_data, curves, str(tmp_path), 'OD over time', 2)

    assert len(saved_graphs) == 3
    assert all(os.path.isfile(path) for path in saved_graphs)
    assert os.path.isfile(tmp_path / 'invalid_plate1 ecoli exp1 2.png')
    assert os.path.isfile(tmp_path / 'plate1 ecoli exp1 1.png')

    summary_graph = gc_io.create_growth_rate_summary_graph(fit_data, str(tmp_path), 'plate1')
    assert os.path.isfile(summary_graph)


def test_summary_graph_without_valid_fits(tmp_path, experiment_table):
    fit_data, _ = gc_core.get_experiment_growth_parameters(gc_core.annotate_death_phase(experiment_table.loc[[('ecoli', 'exp1', '2')]]), max_workers=1)
    assert gc_io.create_growth_rate_summary_graph(fit_data, str(tmp_path), 'plate1') is None
