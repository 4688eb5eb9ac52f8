import math
import warnings
import multiprocessing
import concurrent.futures

import numpy as np
import pandas as pd
import scipy.optimize

import gc_utils
from fit_data import FitSettings, FailureReason, ConvergedFit, FailedFit, logistic_growth


FIT_TABLE_COLUMNS = ['is_valid', 'r', 'K', 'N0', 'r_std', 'K_std', 'N0_std', 'min_doubling_time', 'inflection_time',
                     'max_growth_slope', 'residual_sum_of_squares', 'n_observations', 'failure_reason']


def detect_death_phase(densities, relative_tolerance=0.0):
    '''
    Desrciption
    -----------
    Flag the observations that belong to the death phase of a single growth curve.
    The death phase starts at the first index i for which every observation from i to the end of the series
    is below the maximum density observed before i, a dip that is followed by a rebound is not a death phase.

    Parameters
    ----------
    densities : array-like of float
        The densities of a single group ordered by time. Must not contain missing values.
    relative_tolerance : float
        A point is considered a decline only if it is below the running maximum by more than relative_tolerance * running maximum.
        With the default of 0 any strict decrease counts.

    Returns
    -------
    numpy.ndarray of bool
        Same length and order as densities. False for all the points before the death phase and True from its start onwards.
    '''
    if relative_tolerance < 0:
        raise ValueError(f'relative_tolerance must be non negative, got {relative_tolerance}')

    densities = np.asarray(densities, dtype=float)
    flags = np.zeros(len(densities), dtype=bool)
    # A single point can't decline from anything
    if len(densities) < 2:
        return flags

    running_max = np.maximum.accumulate(densities)

    # Walk back from the end of the series for as long as the whole suffix stays under the peak that preceded it,
    # the highest point of the suffix is the one that decides
    death_phase_start = None
    suffix_max = -np.inf
    for i in range(len(densities) - 1, 0, -1):
        suffix_max = max(suffix_max, densities[i])
        peak = running_max[i - 1]
        if peak - suffix_max > relative_tolerance * peak:
            death_phase_start = i
        else:
            break

    if death_phase_start is not None:
        flags[death_phase_start:] = True
    return flags


def fit_logistic_growth(times, densities, settings=None):
    '''
    Desrciption
    -----------
    Fit N(t) = K * N0 * exp(r * t) / (K + N0 * (exp(r * t) - 1)) to the growth phase of a single group using nonlinear least squares.
    Failures are returned and never raised so that one bad group doesn't stop the analysis of the others.

    Parameters
    ----------
    times : array-like of float
        Measurement times of the observations outside of the death phase, in any consistent unit.
    densities : array-like of float
        Densities matching times. Missing (nan) values are ignored.
    settings : FitSettings
        Iteration budget, tolerance and initial guess parameters. Defaults are used when None.

    Returns
    -------
    ConvergedFit or FailedFit
        ConvergedFit holds r (in 1/time unit), K and N0 (in density units) at full precision.
        FailedFit holds the reason the group could not be fitted.
    '''
    if settings is None:
        settings = FitSettings()

    times = np.asarray(times, dtype=float)
    densities = np.asarray(densities, dtype=float)
    is_observed = np.isfinite(times) & np.isfinite(densities)
    times = times[is_observed]
    densities = densities[is_observed]
    n_observations = len(densities)

    if n_observations < settings.min_observations:
        return FailedFit(reason=FailureReason.INSUFFICIENT_DATA, n_observations=n_observations,
                         message=f'Only {n_observations} observations outside of the death phase, at least {settings.min_observations} are needed')

    max_density = np.max(densities)
    if np.ptp(densities) == 0:
        return FailedFit(reason=FailureReason.DEGENERATE_PARAMETERS, n_observations=n_observations,
                         message=f'The density did not change (all values are {densities[0]}), the growth rate can not be estimated')
    if max_density <= 0:
        return FailedFit(reason=FailureReason.DEGENERATE_PARAMETERS, n_observations=n_observations,
                         message=f'The max density is {max_density}, no growth was measured')

    initial_guess = _get_initial_guess(times, densities, settings)
    # r, K, N0. K is compared to the observed max after the fit, a bound on the noisy max would bias all three
    lower_bounds = [0, 0, 0]
    upper_bounds = [np.inf, np.inf, np.inf]

    try:
        # The covariance warning is handled below by reporting nan standard errors
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', scipy.optimize.OptimizeWarning)
            popt, pcov = scipy.optimize.curve_fit(logistic_growth, times, densities, p0=initial_guess, bounds=(lower_bounds, upper_bounds),
                                                  method='trf', max_nfev=settings.max_function_evaluations, ftol=settings.tolerance)
    # curve_fit raises RuntimeError when the evaluation budget runs out and ValueError when it can't start from the initial guess
    except (RuntimeError, ValueError) as e:
        return FailedFit(reason=FailureReason.NON_CONVERGENCE, n_observations=n_observations, message=f'Fitting failed: {e}')

    r, K, N0 = (float(value) for value in popt)
    if not np.all(np.isfinite(popt)) or min(r, K, N0) <= 0:
        return FailedFit(reason=FailureReason.DEGENERATE_PARAMETERS, n_observations=n_observations,
                         message=f'Fitted parameters must be finite and positive, got r={r}, K={K}, N0={N0}')

    residuals = densities - logistic_growth(times, r, K, N0)
    residual_sum_of_squares = float(np.sum(residuals ** 2))
    # The max observation sits above the plateau by the measurement noise, K may only be below it by that much
    residual_std = math.sqrt(residual_sum_of_squares / max(n_observations - len(popt), 1))
    if K < max_density - settings.capacity_noise_allowance * residual_std:
        return FailedFit(reason=FailureReason.DEGENERATE_PARAMETERS, n_observations=n_observations,
                         message=f'Carrying capacity {K} is below the max observed density {max_density}')

    with np.errstate(invalid='ignore'):
        standard_errors = np.sqrt(np.diag(pcov))
    standard_errors = np.where(np.isfinite(standard_errors), standard_errors, np.nan)

    # nan means the covariance could not be estimated (e.g. exactly 3 observations), not that K is unbounded
    if standard_errors[1] / K > settings.max_capacity_relative_error:
        return FailedFit(reason=FailureReason.DEGENERATE_PARAMETERS, n_observations=n_observations,
                         message=f'Carrying capacity {K} is not determined by the data (standard error {standard_errors[1]}), the curve never levels off')

    return ConvergedFit(r=r, K=K, N0=N0, r_std=float(standard_errors[0]), K_std=float(standard_errors[1]), N0_std=float(standard_errors[2]),
                        n_observations=n_observations, residual_sum_of_squares=residual_sum_of_squares)


def _get_initial_guess(times, densities, settings):
    max_density = np.max(densities)

    N0 = max(densities[0], settings.positive_floor)
    # Start a bit above the highest point, the plateau is usually not reached exactly
    K = max_density * settings.initial_capacity_scale

    # The logistic curve inflects at K / 2, before that it is close to exponential
    # so the slope of log(density) over the early points approximates r
    inflection_index = gc_utils.get_first_index(densities, lambda item: item > max_density / 2)
    early_times = times[:inflection_index + 1]
    early_densities = densities[:inflection_index + 1]
    is_positive = early_densities > 0
    early_times = early_times[is_positive]
    early_densities = early_densities[is_positive]

    r = settings.positive_floor
    if len(np.unique(early_times)) >= 2:
        slope = np.polyfit(early_times, np.log(early_densities), 1)[0]
        if np.isfinite(slope):
            r = max(slope, settings.positive_floor)

    return [r, K, N0]


class SampledCurve:
    '''
    Evenly spaced (time, predicted density) pairs of a fitted logistic curve.
    Densities are only computed while iterating and every new iteration starts from the first point.
    '''

    def __init__(self, fit, t_min, t_max, n_points=None, step=None):
        self.fit = fit
        self.t_min = t_min
        self.t_max = t_max
        self.n_points = n_points
        self.step = step

    @property
    def times(self):
        if self.n_points is not None:
            return np.linspace(self.t_min, self.t_max, self.n_points)
        # The small slack keeps t_max when the range is a multiple of the step up to floating point error
        n_steps = math.floor((self.t_max - self.t_min) / self.step + 1e-9)
        return self.t_min + np.arange(n_steps + 1) * self.step

    def __len__(self):
        return len(self.times)

    def __iter__(self):
        for t in self.times:
            yield float(t), float(self.fit.evaluate(t))

    def to_dataframe(self, time_column='time', density_column='predicted_OD'):
        times = self.times
        return pd.DataFrame({time_column: times, density_column: self.fit.evaluate(times)})


def sample_logistic_curve(fit, t_min, t_max, n_points=None, step=None):
    '''
    Desrciption
    -----------
    Reconstruct a fitted growth curve over a time range for plotting.
    The range is not limited to the times that were fitted, extrapolating is up to the caller.

    Parameters
    ----------
    fit : ConvergedFit
        The fit to sample.
    t_min, t_max : float
        Both ends of the time range, included in the samples.
    n_points : int
        Number of evenly spaced points. Exactly one of n_points and step must be given.
    step : float
        Spacing between consecutive points, starting at t_min and not exceeding t_max.

    Returns
    -------
    SampledCurve
    '''
    if not fit.is_valid:
        raise ValueError(f'Only converged fits can be sampled, the fit failed with: {fit.reason.value}')
    if (n_points is None) == (step is None):
        raise ValueError('Exactly one of n_points and step must be provided')
    if not (np.isfinite(t_min) and np.isfinite(t_max)) or t_min > t_max:
        raise ValueError(f'Invalid time range [{t_min}, {t_max}]')
    if n_points is not None and (int(n_points) != n_points or n_points < 1):
        raise ValueError(f'n_points must be a positive integer, got {n_points}')
    if step is not None and not (np.isfinite(step) and step > 0):
        raise ValueError(f'step must be a positive number, got {step}')

    return SampledCurve(fit, t_min, t_max, n_points=None if n_points is None else int(n_points), step=step)


def annotate_death_phase(raw_data_df, relative_tolerance=0.0, time_column='time', density_column='OD'):
    '''
    Desrciption
    -----------
    Add a death_phase column to the raw data, computed separately for every group.

    Parameters
    ----------
    raw_data_df : pandas.DataFrame
        Indexed by the group key columns as returned from gc_io.read_growth_table. Required columns:
        - ``time`` (:py:class:`float`)
        - ``OD`` (:py:class:`float`) may contain missing values
    relative_tolerance : float
        Passed to detect_death_phase

    Returns
    -------
    pandas.DataFrame
        The same rows and index with an added ``death_phase`` (:py:class:`bool`) column.
        Rows with a missing density take the flag of the previous observed row in their group.
    '''
    key_columns = list(raw_data_df.index.names)
    raw_data_df_unindexed = raw_data_df.reset_index()

    death_phase = pd.Series(False, index=raw_data_df_unindexed.index)
    for _, group_df in raw_data_df_unindexed.groupby(key_columns, sort=False):
        group_df = group_df.sort_values(time_column, kind='mergesort')
        is_observed = group_df[density_column].notna()

        # Detect on the observed points only, then carry the flags forward over the missing ones
        group_flags = pd.Series(np.nan, index=group_df.index)
        group_flags[is_observed] = detect_death_phase(group_df.loc[is_observed, density_column].to_numpy(dtype=float), relative_tolerance).astype(float)
        death_phase.loc[group_df.index] = group_flags.ffill().fillna(0).astype(bool)

    raw_data_df_unindexed['death_phase'] = death_phase
    return raw_data_df_unindexed.set_index(key_columns)


def fit_all_groups(annotated_data_df, settings=None, max_workers=None, time_column='time', density_column='OD'):
    '''
    Desrciption
    -----------
    Fit the logistic model to every group in the annotated data, leaving out the death phase and missing densities.
    Each group is an independent task, the tasks run in parallel on a process pool.

    Parameters
    ----------
    annotated_data_df : pandas.DataFrame
        The output of annotate_death_phase.
    settings : FitSettings
    max_workers : int
        Number of processes to use, defaults to the number of cores. With 1 the groups are fitted in the current process.

    Returns
    -------
    dict
        Group key tuple -> ConvergedFit or FailedFit, one entry for every group.
    '''
    if 'death_phase' not in annotated_data_df.columns:
        raise ValueError('The data has no death_phase column, run annotate_death_phase first')

    if settings is None:
        settings = FitSettings()

    key_columns = list(annotated_data_df.index.names)
    annotated_data_df_unindexed = annotated_data_df.reset_index()

    # One item per group with only the data needed for the fit so that pickling to the workers stays small
    items = []
    for group_key, group_df in annotated_data_df_unindexed.groupby(key_columns, sort=True):
        group_df = group_df.sort_values(time_column, kind='mergesort')
        growth_phase_df = group_df[~group_df['death_phase'] & group_df[density_column].notna()]
        items.append((group_key, growth_phase_df[time_column].to_numpy(dtype=float),
                      growth_phase_df[density_column].to_numpy(dtype=float), settings))

    if max_workers is None:
        max_workers = multiprocessing.cpu_count()

    if max_workers == 1:
        results = list(map(_fit_group, items))
    else:
        with concurrent.futures.ProcessPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(_fit_group, items))

    return dict(results)


def _fit_group(item):
    group_key, times, densities, settings = item
    return group_key, fit_logistic_growth(times, densities, settings)


def get_experiment_growth_parameters(annotated_data_df, settings=None, max_workers=None, time_column='time', density_column='OD'):
    '''
    Desrciption
    -----------
    Get a dataframe with the logistic growth parameters of every group in the experiment.

    Parameters
    ----------
    annotated_data_df : pandas.DataFrame
        The output of annotate_death_phase.
    settings : FitSettings
    max_workers : int
        See fit_all_groups

    Returns
    -------
    pandas.DataFrame
        One row per group indexed by the group key columns, see fit_results_to_dataframe for the columns.
    list of strings
        A log message for every group that could not be fitted
    '''
    key_columns = list(annotated_data_df.index.names)
    fit_results = fit_all_groups(annotated_data_df, settings, max_workers, time_column, density_column)

    log = []
    for group_key, fit_result in fit_results.items():
        if not fit_result.is_valid:
            log.append(f'{fit_result.reason.value}: {fit_result.message} for group: {gc_utils.format_group_key(group_key, key_columns)}')

    return fit_results_to_dataframe(fit_results, key_columns), log


def fit_results_to_dataframe(fit_results, key_columns=gc_utils.DEFAULT_GROUP_KEY_COLUMNS):
    '''
    Convert a group key -> fit result mapping to a table with one row per group.
    Failed groups are kept, their numeric columns are nan and failure_reason says why.
    Columns: is_valid, r, K, N0, r_std, K_std, N0_std, min_doubling_time, inflection_time,
    max_growth_slope, residual_sum_of_squares, n_observations, failure_reason.
    '''
    rows = []
    for group_key, fit_result in fit_results.items():
        row = dict(zip(key_columns, group_key))
        if fit_result.is_valid:
            row.update({
                'is_valid': True, 'r': fit_result.r, 'K': fit_result.K, 'N0': fit_result.N0,
                'r_std': fit_result.r_std, 'K_std': fit_result.K_std, 'N0_std': fit_result.N0_std,
                'min_doubling_time': fit_result.min_doubling_time, 'inflection_time': fit_result.inflection_time,
                'max_growth_slope': fit_result.max_growth_slope, 'residual_sum_of_squares': fit_result.residual_sum_of_squares,
                'n_observations': fit_result.n_observations, 'failure_reason': None,
            })
        else:
            row.update({column: np.nan for column in FIT_TABLE_COLUMNS})
            row.update({'is_valid': False, 'n_observations': fit_result.n_observations, 'failure_reason': fit_result.reason.value})
        rows.append(row)

    results_df = pd.DataFrame(rows, columns=list(key_columns) + FIT_TABLE_COLUMNS)
    results_df = results_df.set_index(list(key_columns))
    return results_df.sort_index()


def fit_results_from_dataframe(fit_data_df):
    '''Rebuild the group key -> fit result mapping from a fit table, e.g. one loaded from a previous run'''
    fit_results = {}
    for group_key, row in fit_data_df.iterrows():
        if not isinstance(group_key, tuple):
            group_key = (group_key,)
        n_observations = 0 if pd.isna(row['n_observations']) else int(row['n_observations'])
        if bool(row['is_valid']):
            fit_results[group_key] = ConvergedFit(r=float(row['r']), K=float(row['K']), N0=float(row['N0']),
                                                  r_std=float(row['r_std']), K_std=float(row['K_std']), N0_std=float(row['N0_std']),
                                                  n_observations=n_observations, residual_sum_of_squares=float(row['residual_sum_of_squares']))
        else:
            fit_results[group_key] = FailedFit(reason=FailureReason(row['failure_reason']), n_observations=n_observations)
    return fit_results


def get_fitted_curves(fit_results, t_min, t_max, n_points=None, step=None, key_columns=gc_utils.DEFAULT_GROUP_KEY_COLUMNS,
                      time_column='time', density_column='predicted_OD'):
    '''
    Desrciption
    -----------
    Sample the fitted curve of every converged group over the same time range, for overlaying on the raw data.
    Groups that failed fitting are skipped.

    Returns
    -------
    pandas.DataFrame
        Indexed by the group key columns with the columns ``time`` and ``predicted_OD``
    '''
    curve_dfs = []
    for group_key, fit_result in fit_results.items():
        if not fit_result.is_valid:
            continue
        curve_df = sample_logistic_curve(fit_result, t_min, t_max, n_points=n_points, step=step).to_dataframe(time_column, density_column)
        for column, value in zip(key_columns, group_key):
            curve_df[column] = value
        curve_dfs.append(curve_df)

    if not curve_dfs:
        return pd.DataFrame(columns=list(key_columns) + [time_column, density_column]).set_index(list(key_columns))

    curves_df = pd.concat(curve_dfs, ignore_index=True)
    return curves_df.set_index(list(key_columns))
