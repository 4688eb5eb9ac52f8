import numpy as np
import pytest

import gc_core


def test_non_decreasing_series_has_no_death_phase():
    flags = gc_core.detect_death_phase([0.05, 0.1, 0.1, 0.3, 0.6, 0.6, 0.61])
    assert not flags.any()


def test_sustained_decline_is_flagged(declining_series):
    _, densities = declining_series
    flags = gc_core.detect_death_phase(densities)
    assert flags.tolist() == [False] * 6 + [True, True]


def test_dip_with_rebound_above_max_is_not_death_phase():
    flags = gc_core.detect_death_phase([0.1, 0.5, 0.4, 0.5, 0.6])
    assert not flags.any()


def test_rebound_to_prior_max_resets_the_decline():
    flags = gc_core.detect_death_phase([0.2, 0.8, 0.5, 0.8, 0.7])
    assert flags.tolist() == [False, False, False, False, True]


def test_decline_right_after_first_point():
    flags = gc_core.detect_death_phase([1.0, 0.5, 0.4])
    assert flags.tolist() == [False, True, True]


@pytest.mark.parametrize('densities', [[], [0.4]])
def test_short_series_has_no_death_phase(densities):
    flags = gc_core.detect_death_phase(densities)
    assert len(flags) == len(densities)
    assert not flags.any()


def test_relative_tolerance_ignores_small_declines():
    densities = [0.1, 1.0, 0.98]
    assert gc_core.detect_death_phase(densities).tolist() == [False, False, True]
    assert not gc_core.detect_death_phase(densities, relative_tolerance=0.05).any()


def test_negative_tolerance_is_rejected():
    with pytest.raises(ValueError):
        gc_core.detect_death_phase([0.1, 0.2], relative_tolerance=-0.1)


def test_flags_are_always_monotone():
    rng = np.random.default_rng(7)
    for _ in range(200):
        densities = rng.uniform(0, 1, size=rng.integers(0, 20))
        flags = gc_core.detect_death_phase(densities).astype(int)
        assert np.all(np.diff(flags) >= 0)
        # Whatever is flagged must be below everything that came before it
        if flags.any():
            start = int(np.argmax(flags))
            assert densities[start:].max() < densities[:start].max()
