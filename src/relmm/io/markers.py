"""Marker records and in-memory marker streams."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import NamedTuple

import numpy as np


class Marker(NamedTuple):
    """One marker's dosages over all individuals in the input.

    Attributes:
        marker_id: Marker identifier (rs ID).
        dosages: (n_total,) allele dosages; NaN marks a missing call.
        missing: Optional boolean mask of missing calls.
        chrom: Chromosome label.
        pos: Base-pair position.
        allele1: Counted (minor) allele.
        allele0: Other allele.
    """

    marker_id: str
    dosages: np.ndarray
    missing: np.ndarray | None = None
    chrom: str = "-9"
    pos: int = -9
    allele1: str = "-"
    allele0: str = "-"


def iter_matrix_markers(
    genotypes: np.ndarray, ids: Sequence[str] | None = None
) -> Iterator[Marker]:
    """Yield one Marker per column of an (n_samples, n_markers) dosage matrix.

    Args:
        genotypes: Dosage matrix with NaN for missing.
        ids: Optional marker IDs; defaults to "m0", "m1", ...
    """
    genotypes = np.asarray(genotypes, dtype=np.float64)
    if genotypes.ndim != 2:
        raise ValueError(f"genotypes must be 2-D, got shape {genotypes.shape}")
    n_markers = genotypes.shape[1]
    if ids is not None and len(ids) != n_markers:
        raise ValueError(f"Got {len(ids)} marker IDs for {n_markers} markers")
    for j in range(n_markers):
        marker_id = str(ids[j]) if ids is not None else f"m{j}"
        yield Marker(marker_id=marker_id, dosages=genotypes[:, j])
