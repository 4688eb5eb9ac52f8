import enum
import math
from dataclasses import dataclass

import numpy as np


class FailureReason(enum.Enum):
    INSUFFICIENT_DATA = 'insufficient_data'
    NON_CONVERGENCE = 'non_convergence'
    DEGENERATE_PARAMETERS = 'degenerate_parameters'


@dataclass(frozen=True, kw_only=True, slots=True)
class FitSettings:
    # Groups with fewer usable observations than this are not fitted
    min_observations: int = 3
    # Upper bound on model evaluations done by the optimizer for a single group
    max_function_evaluations: int = 2000
    # Relative tolerance on the change of the residual sum of squares
    tolerance: float = 1e-8
    # K initial guess is the max observed density times this value
    initial_capacity_scale: float = 1.05
    # Replaces zero or negative initial guesses for N0 and r
    positive_floor: float = 1e-6
    # K may be below the max observed density by this many residual standard deviations
    capacity_noise_allowance: float = 5.0
    # Fits whose standard error on K is larger than this fraction of K are rejected
    max_capacity_relative_error: float = 1.0

    @classmethod
    def from_config(cls, config_section):
        '''Build the settings from the "fit" section of config.json, missing keys keep their defaults'''
        if config_section is None:
            return cls()
        return cls(**config_section)


def logistic_growth(t, r, K, N0):
    '''
    Desrciption
    -----------
    Evaluate N(t) = K * N0 * exp(r * t) / (K + N0 * (exp(r * t) - 1))

    The equivalent form K * N0 / (N0 + (K - N0) * exp(-r * t)) is used so that large values of r * t do not overflow.
    For very negative times the exponent overflows to inf and the result correctly goes to 0.
    '''
    t = np.asarray(t, dtype=float)
    with np.errstate(over='ignore'):
        return K * N0 / (N0 + (K - N0) * np.exp(-r * t))


@dataclass(frozen=True, kw_only=True, slots=True)
class ConvergedFit:
    r: float
    K: float
    N0: float
    # Standard errors from the covariance matrix, nan when it could not be estimated
    r_std: float = math.nan
    K_std: float = math.nan
    N0_std: float = math.nan
    n_observations: int = 0
    residual_sum_of_squares: float = math.nan

    @property
    def is_valid(self):
        return True

    @property
    def min_doubling_time(self):
        return math.log(2) / self.r

    @property
    def inflection_time(self):
        # The curve has no inflection point after t = 0 when it starts at or above K / 2,
        # for N0 >= K it has none at all
        if self.K <= self.N0:
            return math.nan
        return math.log((self.K - self.N0) / self.N0) / self.r

    @property
    def max_growth_slope(self):
        # dN/dt peaks at N = K / 2
        return self.r * self.K / 4

    def evaluate(self, t):
        return logistic_growth(t, self.r, self.K, self.N0)


@dataclass(frozen=True, kw_only=True, slots=True)
class FailedFit:
    reason: FailureReason
    message: str = ''
    n_observations: int = 0

    @property
    def is_valid(self):
        return False
