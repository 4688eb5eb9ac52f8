import numpy as np
import pandas as pd
import pytest

import gc_utils


# Rises to 0.80 at t=10 and then declines until the end of the measurements
DECLINING_SERIES = [(0, 0.05), (2, 0.10), (4, 0.22), (6, 0.45), (8, 0.70), (10, 0.80), (12, 0.78), (14, 0.60)]


def make_growth_table(groups):
    '''Build a raw data table indexed by the default group key from {(organism, experiment, replicate): [(time, OD), ...]}'''
    rows = []
    for group_key, series in groups.items():
        for t, od in series:
            rows.append(dict(zip(gc_utils.DEFAULT_GROUP_KEY_COLUMNS, group_key), time=float(t), OD=od))
    return pd.DataFrame(rows).set_index(gc_utils.DEFAULT_GROUP_KEY_COLUMNS)


@pytest.fixture
def declining_series():
    times, densities = zip(*DECLINING_SERIES)
    return np.array(times, dtype=float), np.array(densities, dtype=float)


@pytest.fixture
def experiment_table():
    return make_growth_table({
        ('ecoli', 'exp1', '1'): DECLINING_SERIES,
        # Too short to fit once the death phase is removed
        ('ecoli', 'exp1', '2'): [(0, 0.05), (2, 0.30), (4, 0.20)],
        ('yeast', 'exp1', '1'): [(0, 0.05), (2, 0.10), (4, 0.22), (6, np.nan), (8, 0.70), (10, 0.80), (12, 0.78), (14, np.nan)],
    })
