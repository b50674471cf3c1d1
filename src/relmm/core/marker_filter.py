"""Per-marker statistics and quality control filters.

Markers arrive one at a time from a lazy stream, so the filters here work on
a single dosage vector rather than a genotype matrix. Thresholds follow
GEMMA: a marker is tested when its missing rate is at most miss_threshold,
its minor allele frequency is at least maf_threshold and it is polymorphic
among the analysed individuals.
"""

from typing import NamedTuple

import numpy as np

from relmm.errors import SkipReason


class MarkerStats(NamedTuple):
    """Summary of one marker over the analysed individuals."""

    n_miss: int
    miss_rate: float
    af: float
    maf: float
    mean: float
    variance: float


def missing_mask(dosages: np.ndarray, missing: np.ndarray | None) -> np.ndarray:
    """Combine an explicit missing mask with NaN dosages."""
    mask = np.isnan(dosages)
    if missing is not None:
        mask = mask | np.asarray(missing, dtype=bool)
    return mask


def compute_marker_stats(
    dosages: np.ndarray, missing: np.ndarray | None = None
) -> MarkerStats:
    """Compute missingness, allele frequency and variance of one marker.

    Statistics are taken over observed entries only. An all-missing marker
    reports zero frequency and zero variance.

    Args:
        dosages: Allele dosages in [0, 2] for the analysed individuals.
        missing: Optional boolean mask of missing entries (NaN is also missing).

    Returns:
        MarkerStats for the marker.
    """
    dosages = np.asarray(dosages, dtype=np.float64)
    mask = missing_mask(dosages, missing)
    n = dosages.shape[0]
    n_miss = int(mask.sum())
    observed = dosages[~mask]

    if observed.size == 0:
        mean = 0.0
        variance = 0.0
    else:
        mean = float(observed.mean())
        variance = float(observed.var())

    af = mean / 2.0
    return MarkerStats(
        n_miss=n_miss,
        miss_rate=n_miss / n if n else 1.0,
        af=af,
        maf=min(af, 1.0 - af),
        mean=mean,
        variance=variance,
    )


def check_marker(
    stats: MarkerStats, maf_threshold: float, miss_threshold: float
) -> SkipReason | None:
    """Return the reason a marker should be skipped, or None to test it."""
    if stats.miss_rate >= 1.0 or stats.miss_rate > miss_threshold:
        return SkipReason.MISSINGNESS
    if stats.variance <= 0.0:
        return SkipReason.MONOMORPHIC
    # maf can fall outside [0, 0.5] for real-valued dosages; a zero threshold
    # disables the filter
    if maf_threshold > 0.0 and stats.maf < maf_threshold:
        return SkipReason.LOW_MAF
    return None


def impute_missing(
    dosages: np.ndarray, mask: np.ndarray, fill: float
) -> np.ndarray:
    """Return a copy of dosages with missing entries set to fill."""
    out = np.array(dosages, dtype=np.float64, copy=True)
    out[mask] = fill
    return out
