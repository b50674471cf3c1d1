"""Association run orchestration and the concurrent marker scan.

run_association prepares the shared state once (sample filtering, kinship
eigendecomposition, rotation, null model fits) and then streams markers
through scan_markers.

scan_markers keeps a single producer (the marker iterable) and a bounded
window of in-flight futures. Futures are drained in submission order, so
the sink sees results in input order whatever order workers finish in,
and at most max_in_flight markers are held in memory.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
from loguru import logger

from relmm.core.config import AssociationConfig, TestType
from relmm.core.progress import progress_iterator
from relmm.core.threading import blas_threads, resolve_worker_count
from relmm.errors import DimensionMismatchError, SkipReason
from relmm.io.markers import Marker
from relmm.lmm.eigen import KinshipEigensystem, eigendecompose_kinship
from relmm.lmm.io import ListSink
from relmm.lmm.null_model import NullModel, fit_null_model
from relmm.lmm.project import project_null_data
from relmm.lmm.stats import AssocResult, SkipNotice
from relmm.lmm.tester import MarkerTester
from relmm.utils.logging import log_rss_memory

# GEMMA missing-phenotype code
MISSING_PHENOTYPE = -9.0


class AssociationSink(Protocol):
    """Receives per-marker outcomes in input order."""

    def write(self, result: AssocResult) -> None: ...

    def skip(self, notice: SkipNotice) -> None: ...


@dataclass
class ScanCounts:
    """Outcome counts of a marker scan."""

    n_markers: int = 0
    n_tested: int = 0
    n_skipped: int = 0
    n_failed: int = 0
    n_not_converged: int = 0
    skip_reasons: Counter = field(default_factory=Counter)

    def record(self, outcome: AssocResult | SkipNotice) -> None:
        self.n_markers += 1
        if isinstance(outcome, AssocResult):
            self.n_tested += 1
            if not outcome.converged:
                self.n_not_converged += 1
            return
        self.skip_reasons[outcome.reason] += 1
        if outcome.failed:
            self.n_failed += 1
        else:
            self.n_skipped += 1


@dataclass
class RunSummary:
    """Summary of a completed association run."""

    n_markers: int
    n_tested: int
    n_skipped: int
    n_failed: int
    n_not_converged: int
    skip_reasons: Counter
    null_model: NullModel
    null_mle: NullModel | None
    n_samples: int
    n_samples_total: int
    timing: dict[str, float]
    sink: AssociationSink | None = None


def _safe_test(tester: MarkerTester, marker: Marker, index: int) -> AssocResult | SkipNotice:
    try:
        return tester.test(marker, index)
    except Exception as e:
        logger.warning(f"Marker {marker.marker_id} (#{index}) failed: {e}")
        return SkipNotice(index, marker.marker_id, SkipReason.ERROR, f"{type(e).__name__}: {e}")


def _emit(sink: AssociationSink, counts: ScanCounts, outcome: AssocResult | SkipNotice) -> None:
    if isinstance(outcome, AssocResult):
        sink.write(outcome)
    else:
        sink.skip(outcome)
    counts.record(outcome)


def scan_markers(
    tester: MarkerTester,
    markers: Iterable[Marker],
    sink: AssociationSink,
    n_workers: int = 1,
    max_in_flight: int | None = None,
    show_progress: bool = False,
    n_markers: int | None = None,
) -> ScanCounts:
    """Test every marker of a stream and deliver outcomes to sink in input order.

    Args:
        tester: Configured MarkerTester.
        markers: Lazy, single-pass marker stream.
        sink: Receives AssocResult and SkipNotice objects.
        n_workers: Worker threads; 0 means one per physical core.
        max_in_flight: Bound on submitted but not yet emitted markers;
            defaults to 4 per worker.
        show_progress: Display a progress bar.
        n_markers: Stream length for the progress bar, if known.

    Returns:
        ScanCounts for the markers that reached the sink. On abort (producer
        or sink exception, KeyboardInterrupt) pending work is cancelled,
        already-emitted outcomes stay emitted and the exception propagates.
    """
    n_workers = resolve_worker_count(n_workers)
    counts = ScanCounts()
    stream: Iterable[Marker] = markers
    if show_progress:
        stream = progress_iterator(markers, total=n_markers, desc="LMM association")

    if n_workers == 1:
        for index, marker in enumerate(stream):
            _emit(sink, counts, _safe_test(tester, marker, index))
        return counts

    window = max_in_flight or 4 * n_workers
    pending: deque[Future] = deque()
    logger.debug(f"Marker scan: {n_workers} workers, window={window}")

    # threadpool_limits is process-wide, so workers inherit the single BLAS thread
    with blas_threads(1):
        executor = ThreadPoolExecutor(
            max_workers=n_workers, thread_name_prefix="relmm-marker"
        )
        try:
            for index, marker in enumerate(stream):
                pending.append(executor.submit(_safe_test, tester, marker, index))
                while len(pending) >= window:
                    _emit(sink, counts, pending.popleft().result())
            while pending:
                _emit(sink, counts, pending.popleft().result())
        except BaseException:
            for future in pending:
                future.cancel()
            logger.warning(
                f"Marker scan aborted after {counts.n_markers} markers; "
                f"{len(pending)} pending cancelled"
            )
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    return counts


def _analysed_mask(
    y: np.ndarray, W: np.ndarray | None
) -> np.ndarray:
    mask = np.isfinite(y) & (y != MISSING_PHENOTYPE)
    if W is not None:
        mask &= np.all(np.isfinite(W), axis=1)
    return mask


def run_association(
    markers: Iterable[Marker],
    phenotypes: np.ndarray,
    kinship: np.ndarray | None = None,
    covariates: np.ndarray | None = None,
    *,
    eigensystem: KinshipEigensystem | None = None,
    config: AssociationConfig | None = None,
    sink: AssociationSink | None = None,
    show_progress: bool = False,
    n_markers: int | None = None,
) -> RunSummary:
    """Run a genome-wide LMM association scan.

    Individuals with a missing phenotype (NaN or -9) or any missing
    covariate are excluded before any computation. Marker dosage vectors
    cover all individuals in phenotype order; the same exclusion is applied
    to them.

    Args:
        markers: Marker stream.
        phenotypes: (n_total,) phenotype vector.
        kinship: (n_total, n_total) kinship matrix; ignored when
            eigensystem is given.
        covariates: Optional (n_total, c) covariates; None means intercept only.
        eigensystem: Precomputed decomposition of the kinship matrix of the
            analysed individuals.
        config: Association settings.
        sink: Destination for outcomes; defaults to a new ListSink.
        show_progress: Display a progress bar during the scan.
        n_markers: Stream length for the progress bar, if known.

    Returns:
        RunSummary.

    Raises:
        DimensionMismatchError: On inconsistent inputs, before any marker
            is processed.
        DecompositionError: If the kinship matrix is malformed.
    """
    config = config or AssociationConfig()
    sink = sink if sink is not None else ListSink()
    timing: dict[str, float] = {}
    start_time = time.perf_counter()

    y = np.asarray(phenotypes, dtype=np.float64).ravel()
    n_total = y.shape[0]
    W = None
    if covariates is not None:
        W = np.asarray(covariates, dtype=np.float64)
        if W.ndim == 1:
            W = W.reshape(-1, 1)
        if W.shape[0] != n_total:
            raise DimensionMismatchError(
                f"Covariates have {W.shape[0]} rows but phenotype has {n_total}"
            )

    mask = _analysed_mask(y, W)
    n_analysed = int(mask.sum())
    n_cvt = 1 if W is None else W.shape[1]
    if n_analysed - n_cvt - 1 < 1:
        raise DimensionMismatchError(
            f"Too few analysed individuals ({n_analysed}) for {n_cvt} covariate(s)"
        )
    all_samples = n_analysed == n_total

    logger.info("## Performing LMM Association Test")
    logger.info(f"number of total individuals = {n_total}")
    logger.info(f"number of analyzed individuals = {n_analysed}")
    logger.info(f"number of covariates = {n_cvt}")
    logger.info(f"tests = {sorted(t.value for t in config.tests)}, reml = {config.reml}")

    t0 = time.perf_counter()
    if eigensystem is None:
        if kinship is None:
            raise ValueError("Either kinship or eigensystem must be provided")
        K = np.asarray(kinship, dtype=np.float64)
        if K.shape != (n_total, n_total):
            raise DimensionMismatchError(
                f"Kinship shape {K.shape} does not match {n_total} individuals"
            )
        if not all_samples:
            K = K[np.ix_(mask, mask)]
        eigensystem = eigendecompose_kinship(K, overwrite=not all_samples)
    elif eigensystem.n_samples != n_analysed:
        raise DimensionMismatchError(
            f"Eigensystem has {eigensystem.n_samples} samples, "
            f"expected {n_analysed} analysed individuals"
        )
    timing["eigendecomp"] = time.perf_counter() - t0
    log_rss_memory("lmm", "after_eigendecomp")

    t0 = time.perf_counter()
    projector, null_data = project_null_data(
        eigensystem, y[mask], None if W is None else W[mask]
    )
    null_model = fit_null_model(null_data, reml=config.reml, config=config.null_optimizer)
    null_mle = None
    if TestType.LRT in config.tests:
        null_mle = (
            fit_null_model(null_data, reml=False, config=config.null_optimizer)
            if config.reml
            else null_model
        )
    timing["null_model"] = time.perf_counter() - t0

    tester = MarkerTester(
        projector,
        null_data,
        null_model,
        config,
        null_mle=null_mle,
        sample_mask=None if all_samples else mask,
    )

    t0 = time.perf_counter()
    counts = scan_markers(
        tester,
        markers,
        sink,
        n_workers=config.n_workers,
        max_in_flight=config.max_in_flight,
        show_progress=show_progress,
        n_markers=n_markers,
    )
    timing["scan"] = time.perf_counter() - t0
    timing["total"] = time.perf_counter() - start_time

    summary = RunSummary(
        n_markers=counts.n_markers,
        n_tested=counts.n_tested,
        n_skipped=counts.n_skipped,
        n_failed=counts.n_failed,
        n_not_converged=counts.n_not_converged,
        skip_reasons=counts.skip_reasons,
        null_model=null_model,
        null_mle=null_mle,
        n_samples=n_analysed,
        n_samples_total=n_total,
        timing=timing,
        sink=sink,
    )

    logger.info("## LMM Association completed")
    logger.info(
        f"markers = {summary.n_markers}, tested = {summary.n_tested}, "
        f"skipped = {summary.n_skipped}, failed = {summary.n_failed}, "
        f"not converged = {summary.n_not_converged}"
    )
    if summary.skip_reasons:
        reasons = ", ".join(f"{r.value}={c}" for r, c in sorted(summary.skip_reasons.items()))
        logger.info(f"skip reasons: {reasons}")
    logger.info(f"time elapsed = {timing['total']:.2f} seconds")
    return summary
