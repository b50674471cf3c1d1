"""Tests for run_association and the ordered concurrent marker scan."""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest
from scipy import stats

from relmm.core.config import AssociationConfig, TestType
from relmm.errors import DimensionMismatchError, SkipReason
from relmm.io.markers import Marker, iter_matrix_markers
from relmm.lmm.eigen import eigendecompose_kinship
from relmm.lmm.io import ListSink
from relmm.lmm.optimize import OptimizerStatus
from relmm.lmm.runner import ScanCounts, run_association, scan_markers
from relmm.lmm.stats import AssocResult, SkipNotice


class SleepyTester:
    """Stand-in tester whose per-marker latency is random."""

    def __init__(self, seed: int = 0, fail_on: int | None = None):
        self.rng = np.random.default_rng(seed)
        self.delays = self.rng.uniform(0.0, 0.01, 1000)
        self.fail_on = fail_on
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def test(self, marker, index):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delays[index % len(self.delays)])
            if index == self.fail_on:
                raise RuntimeError("boom")
            if index % 7 == 3:
                return SkipNotice(index, marker.marker_id, SkipReason.MONOMORPHIC)
            return AssocResult(
                index=index,
                marker_id=marker.marker_id,
                chrom="1",
                pos=index,
                allele1="A",
                allele0="G",
                n_miss=0,
                af=0.25,
                beta=0.0,
                se=1.0,
                lambda_val=1.0,
                p_wald=0.5,
            )
        finally:
            with self._lock:
                self.active -= 1


def dummy_markers(n: int):
    for i in range(n):
        yield Marker(f"m{i}", np.zeros(3))


class TestScanMarkers:
    """Ordering and bookkeeping of scan_markers()."""

    @pytest.mark.parametrize("n_workers", [1, 2, 4])
    def test_output_in_input_order(self, n_workers):
        sink = ListSink()
        counts = scan_markers(SleepyTester(), dummy_markers(60), sink, n_workers=n_workers)
        assert [e.index for e in sink.events] == list(range(60))
        assert [e.marker_id for e in sink.events] == [f"m{i}" for i in range(60)]
        assert counts.n_markers == 60
        assert counts.n_skipped == sum(1 for i in range(60) if i % 7 == 3)
        assert counts.n_tested + counts.n_skipped == 60

    def test_in_flight_window_bounded(self):
        tester = SleepyTester()
        scan_markers(tester, dummy_markers(40), ListSink(), n_workers=4, max_in_flight=2)
        assert tester.max_active <= 2

    def test_tester_exception_becomes_error_notice(self):
        sink = ListSink()
        counts = scan_markers(SleepyTester(fail_on=5), dummy_markers(10), sink, n_workers=2)
        notice = sink.events[5]
        assert isinstance(notice, SkipNotice)
        assert notice.reason is SkipReason.ERROR
        assert "boom" in notice.detail
        assert counts.n_failed == 1
        assert len(sink) == 10

    def test_producer_exception_propagates(self):
        def broken():
            yield from dummy_markers(3)
            raise OSError("truncated file")

        sink = ListSink()
        with pytest.raises(OSError, match="truncated"):
            scan_markers(SleepyTester(), broken(), sink, n_workers=1)
        assert [e.index for e in sink.events] == [0, 1, 2]

    def test_sink_exception_propagates(self):
        class FailingSink(ListSink):
            def write(self, result):
                if result.index == 4:
                    raise OSError("disk full")
                super().write(result)

        sink = FailingSink()
        with pytest.raises(OSError, match="disk full"):
            scan_markers(SleepyTester(), dummy_markers(50), sink, n_workers=2)
        assert [e.index for e in sink.events] == [0, 1, 2, 3]


class TestScanCounts:
    """ScanCounts.record()."""

    def test_counts_by_outcome(self):
        counts = ScanCounts()
        counts.record(SkipNotice(0, "a", SkipReason.LOW_MAF))
        counts.record(SkipNotice(1, "b", SkipReason.NUMERICAL))
        counts.record(
            AssocResult(
                2, "c", "1", 1, "A", "G", 0, 0.3, 0.1, 0.2, 1.0,
                status=OptimizerStatus.GRID_FALLBACK,
            )
        )
        assert (counts.n_markers, counts.n_tested) == (3, 1)
        assert (counts.n_skipped, counts.n_failed, counts.n_not_converged) == (1, 1, 1)
        assert counts.skip_reasons[SkipReason.LOW_MAF] == 1


class TestRunAssociation:
    """End-to-end runs on synthetic data."""

    def test_basic_run(self, study):
        summary = run_association(iter_matrix_markers(study.G), study.y, study.K)
        sink = summary.sink
        assert summary.n_markers == study.G.shape[1]
        assert summary.n_tested == study.G.shape[1]
        assert summary.n_samples == summary.n_samples_total == len(study.y)
        assert summary.null_mle is None
        assert [r.marker_id for r in sink.results] == [
            f"m{j}" for j in range(study.G.shape[1])
        ]
        assert set(summary.timing) >= {"eigendecomp", "null_model", "scan", "total"}

    def test_skip_counts(self, study):
        G = study.G[:, :5].copy()
        G[:, 1] = 1.0
        G[:, 3] = study.covariates[:, 1]
        summary = run_association(
            iter_matrix_markers(G), study.y, study.K, study.covariates
        )
        assert summary.n_tested == 3
        assert summary.n_skipped == 1
        assert summary.n_failed == 1
        assert summary.skip_reasons[SkipReason.MONOMORPHIC] == 1
        assert summary.skip_reasons[SkipReason.SINGULAR_DESIGN] == 1
        assert [e.index for e in summary.sink.events] == [0, 1, 2, 3, 4]

    def test_failed_marker_leaves_batch_unaffected(self, study):
        G = study.G[:, :5].copy()
        G[:, 3] = study.covariates[:, 1]
        with_bad = run_association(
            iter_matrix_markers(G), study.y, study.K, study.covariates
        )
        without = run_association(
            iter_matrix_markers(G[:, [0, 1, 2, 4]], ids=["m0", "m1", "m2", "m4"]),
            study.y,
            study.K,
            study.covariates,
        )
        assert [r.marker_id for r in with_bad.sink.results] == ["m0", "m1", "m2", "m4"]
        assert [r.p_wald for r in with_bad.sink.results] == [
            r.p_wald for r in without.sink.results
        ]

    @pytest.mark.parametrize("n_workers", [1, 2])
    def test_rerun_is_bit_identical(self, study, n_workers):
        config = AssociationConfig(
            tests={TestType.WALD, TestType.LRT, TestType.SCORE}, n_workers=n_workers
        )

        def run():
            return run_association(
                iter_matrix_markers(study.G[:, :10]),
                study.y,
                study.K,
                study.covariates,
                config=config,
            ).sink.events

        assert run() == run()

    def test_lrt_fits_ml_null(self, study):
        config = AssociationConfig(tests={TestType.LRT})
        summary = run_association(
            iter_matrix_markers(study.G[:, :3]), study.y, study.K, config=config
        )
        assert summary.null_mle is not None
        assert not summary.null_mle.reml
        assert summary.null_model.reml

    def test_worker_count_does_not_change_results(self, study):
        def run(n_workers):
            config = AssociationConfig(tests={TestType.WALD, TestType.SCORE},
                                       n_workers=n_workers)
            summary = run_association(
                iter_matrix_markers(study.G), study.y, study.K, study.covariates,
                config=config,
            )
            return summary.sink.results

        serial, parallel = run(1), run(3)
        assert [r.marker_id for r in serial] == [r.marker_id for r in parallel]
        np.testing.assert_allclose(
            [r.p_wald for r in serial], [r.p_wald for r in parallel], rtol=1e-8
        )
        np.testing.assert_allclose(
            [r.beta for r in serial], [r.beta for r in parallel], rtol=1e-8
        )

    def test_missing_phenotypes_excluded(self, study):
        y = study.y.copy()
        y[:5] = -9.0
        y[5] = np.nan
        keep = np.ones(len(y), dtype=bool)
        keep[:6] = False

        full = run_association(iter_matrix_markers(study.G[:, :6]), y, study.K)
        subset = run_association(
            iter_matrix_markers(study.G[keep, :6]),
            study.y[keep],
            study.K[np.ix_(keep, keep)],
        )
        assert full.n_samples == len(y) - 6
        assert full.n_samples_total == len(y)
        np.testing.assert_allclose(
            [r.p_wald for r in full.sink.results],
            [r.p_wald for r in subset.sink.results],
            rtol=1e-8,
        )

    def test_missing_covariates_excluded(self, study):
        W = study.covariates.copy()
        W[2, 1] = np.nan
        summary = run_association(
            iter_matrix_markers(study.G[:, :2]), study.y, study.K, W
        )
        assert summary.n_samples == len(study.y) - 1

    def test_precomputed_eigensystem(self, study):
        eig = eigendecompose_kinship(study.K)
        a = run_association(iter_matrix_markers(study.G[:, :4]), study.y, eigensystem=eig)
        b = run_association(iter_matrix_markers(study.G[:, :4]), study.y, study.K)
        np.testing.assert_allclose(
            [r.p_wald for r in a.sink.results],
            [r.p_wald for r in b.sink.results],
            rtol=1e-8,
        )

    def test_eigensystem_size_mismatch(self, study):
        eig = eigendecompose_kinship(study.K[:50, :50])
        with pytest.raises(DimensionMismatchError):
            run_association(iter_matrix_markers(study.G), study.y, eigensystem=eig)

    def test_kinship_shape_mismatch(self, study):
        with pytest.raises(DimensionMismatchError):
            run_association(iter_matrix_markers(study.G), study.y, study.K[:-1, :-1])

    def test_kinship_required(self, study):
        with pytest.raises(ValueError, match="kinship or eigensystem"):
            run_association(iter_matrix_markers(study.G), study.y)

    def test_too_few_individuals(self):
        y = np.array([1.0, 2.0, -9.0])
        with pytest.raises(DimensionMismatchError, match="Too few"):
            run_association(iter(()), y, np.eye(3))

    def test_covariate_row_mismatch(self, study):
        with pytest.raises(DimensionMismatchError):
            run_association(
                iter_matrix_markers(study.G), study.y, study.K, study.covariates[:-1]
            )


@pytest.mark.slow
class TestCalibration:
    """Null p-values are uniform when no marker is causal."""

    def test_wald_p_values_uniform(self, make_study):
        data = make_study(seed=7, n_samples=200, n_test_markers=300)
        config = AssociationConfig(tests={TestType.WALD, TestType.LRT, TestType.SCORE})
        summary = run_association(
            iter_matrix_markers(data.G), data.y, data.K, data.covariates, config=config
        )
        results = summary.sink.results
        assert len(results) == 300
        for name in ("p_wald", "p_lrt", "p_score"):
            p = np.array([getattr(r, name) for r in results])
            assert stats.kstest(p, "uniform").pvalue > 1e-3
            assert 0.4 <= p.mean() <= 0.6
