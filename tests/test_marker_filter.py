"""Tests for per-marker statistics, QC filters and configuration."""

import numpy as np
import pytest

from relmm.core.config import AssociationConfig, OptimizerConfig, TestType
from relmm.core.marker_filter import (
    check_marker,
    compute_marker_stats,
    impute_missing,
    missing_mask,
)
from relmm.errors import SkipReason


class TestMarkerStats:
    """compute_marker_stats() over observed entries."""

    def test_frequency_and_variance(self):
        stats = compute_marker_stats(np.array([0.0, 1.0, 2.0, 1.0]))
        assert stats.n_miss == 0
        assert stats.af == pytest.approx(0.5)
        assert stats.maf == pytest.approx(0.5)
        assert stats.variance == pytest.approx(0.5)

    def test_nan_and_mask_combined(self):
        dosages = np.array([np.nan, 2.0, 2.0, 0.0])
        mask = np.array([False, False, True, False])
        stats = compute_marker_stats(dosages, mask)
        assert stats.n_miss == 2
        assert stats.miss_rate == 0.5
        assert stats.mean == pytest.approx(1.0)

    def test_minor_allele_frequency_folds(self):
        stats = compute_marker_stats(np.array([2.0, 2.0, 2.0, 1.0]))
        assert stats.af == pytest.approx(0.875)
        assert stats.maf == pytest.approx(0.125)

    def test_all_missing(self):
        stats = compute_marker_stats(np.full(3, np.nan))
        assert stats.miss_rate == 1.0
        assert stats.variance == 0.0


class TestCheckMarker:
    """check_marker() ordering of skip reasons."""

    def test_missingness_checked_first(self):
        stats = compute_marker_stats(np.array([np.nan, 1.0, 1.0, 1.0]))
        assert check_marker(stats, 0.0, 0.05) is SkipReason.MISSINGNESS

    def test_monomorphic(self):
        stats = compute_marker_stats(np.ones(5))
        assert check_marker(stats, 0.0, 0.05) is SkipReason.MONOMORPHIC

    def test_low_maf(self):
        stats = compute_marker_stats(np.array([0.0] * 19 + [1.0]))
        assert check_marker(stats, 0.05, 0.05) is SkipReason.LOW_MAF
        assert check_marker(stats, 0.0, 0.05) is None

    def test_zero_threshold_disables_maf_filter(self):
        """Real-valued dosages with a negative mean reach the tester."""
        stats = compute_marker_stats(np.array([-1.2, 0.4, -0.3, 0.6, -0.5]))
        assert stats.maf < 0
        assert check_marker(stats, 0.0, 0.05) is None
        assert check_marker(stats, 0.01, 0.05) is SkipReason.LOW_MAF

    def test_missing_rate_at_threshold_passes(self):
        stats = compute_marker_stats(np.array([np.nan] + [0.0, 1.0] * 2 + [2.0] * 5))
        assert stats.miss_rate == pytest.approx(0.1)
        assert check_marker(stats, 0.0, 0.1) is None


def test_impute_missing_copies():
    dosages = np.array([0.0, np.nan, 2.0])
    out = impute_missing(dosages, missing_mask(dosages, None), 1.0)
    np.testing.assert_array_equal(out, [0.0, 1.0, 2.0])
    assert np.isnan(dosages[1])


class TestAssociationConfig:
    """Validation and -lmm mode mapping."""

    def test_from_lmm_mode(self):
        assert AssociationConfig.from_lmm_mode(2).tests == {TestType.LRT}
        assert AssociationConfig.from_lmm_mode(4).tests == set(TestType)

    def test_invalid_mode(self):
        with pytest.raises(ValueError, match="lmm mode"):
            AssociationConfig.from_lmm_mode(5)

    def test_tests_coerced_from_strings(self):
        config = AssociationConfig(tests={"wald", "score"})
        assert config.tests == {TestType.WALD, TestType.SCORE}

    def test_empty_tests_rejected(self):
        with pytest.raises(ValueError):
            AssociationConfig(tests=frozenset())

    @pytest.mark.parametrize(
        "kwargs",
        [{"miss_threshold": 1.5}, {"maf_threshold": 0.6}, {"n_workers": -1},
         {"max_in_flight": 0}],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            AssociationConfig(**kwargs)

    def test_marker_optimizer_defaults_to_null(self):
        config = AssociationConfig(null_optimizer=OptimizerConfig(n_grid=10))
        assert config.resolved_marker_optimizer.n_grid == 10
        config = AssociationConfig(
            null_optimizer=OptimizerConfig(n_grid=10),
            marker_optimizer=OptimizerConfig(n_grid=20),
        )
        assert config.resolved_marker_optimizer.n_grid == 20

    def test_needs_mle_null(self):
        assert AssociationConfig(tests={TestType.LRT}).needs_mle_null
        assert not AssociationConfig(tests={TestType.LRT}, reml=False).needs_mle_null
        assert not AssociationConfig().needs_mle_null
