"""Eigendecomposition of the kinship matrix.

The kinship matrix is decomposed once per analysis as K = U diag(eval) U^T.
Every later step (null model, per-marker tests) works in the rotated space
defined by U, where the LMM covariance lambda*K + I becomes diagonal.

Uses scipy.linalg.eigh (LAPACK) with explicit driver selection. Thread
control is handled by relmm.core.threading via threadpool_limits.

Driver selection:
- dsyevd (driver='evd'): Divide-and-conquer, fastest but O(n^2) workspace.
- dsyevr (driver='evr'): Relatively robust representations, O(n) workspace fallback.
"""

from __future__ import annotations

import time
import warnings
from dataclasses import dataclass

import numpy as np
import scipy.linalg
from loguru import logger
from threadpoolctl import threadpool_info

from relmm.core.memory import (
    check_memory_available,
    estimate_eigendecomp_memory,
    log_memory_snapshot,
    select_eigendecomp_driver,
)
from relmm.core.threading import blas_threads, get_blas_thread_count
from relmm.errors import DecompositionError

# Relative asymmetry tolerated before the matrix is rejected
SYMMETRY_RTOL = 1e-8


@dataclass(frozen=True)
class KinshipEigensystem:
    """Eigenvalues and eigenvectors of a kinship matrix.

    Attributes:
        eigenvalues: (n,) ascending, non-negative.
        eigenvectors: (n, n) orthonormal columns, column i pairs with eigenvalues[i].
    """

    eigenvalues: np.ndarray
    eigenvectors: np.ndarray

    def __post_init__(self) -> None:
        for name in ("eigenvalues", "eigenvectors"):
            arr = np.asarray(getattr(self, name), dtype=np.float64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        n = self.eigenvalues.shape[0]
        if self.eigenvectors.shape != (n, n):
            raise DecompositionError(
                f"eigenvectors shape {self.eigenvectors.shape} does not match "
                f"{n} eigenvalues"
            )

    @property
    def n_samples(self) -> int:
        return self.eigenvalues.shape[0]

    @property
    def n_zero(self) -> int:
        """Number of eigenvalues that were zeroed."""
        return int(np.sum(self.eigenvalues == 0.0))

    def reconstruct(self) -> np.ndarray:
        """Return U diag(eval) U^T."""
        U = self.eigenvectors
        return (U * self.eigenvalues) @ U.T


def _validate_kinship(K: np.ndarray) -> None:
    if K.ndim != 2 or K.shape[0] != K.shape[1]:
        raise DecompositionError(f"Kinship matrix must be square, got shape {K.shape}")
    if K.shape[0] == 0:
        raise DecompositionError("Kinship matrix is empty")
    if not np.all(np.isfinite(K)):
        raise DecompositionError("Kinship matrix contains NaN or infinite values")
    scale = max(float(np.max(np.abs(K))), 1.0)
    asym = float(np.max(np.abs(K - K.T)))
    if asym > SYMMETRY_RTOL * scale:
        raise DecompositionError(
            f"Kinship matrix is not symmetric (max |K - K^T| = {asym:.3e})"
        )


def eigendecompose_kinship(
    K: np.ndarray, threshold: float = 1e-10, overwrite: bool = False
) -> KinshipEigensystem:
    """Eigendecompose kinship matrix, zeroing small eigenvalues.

    GEMMA behavior from EigenDecomp_Zeroed:
    - Eigenvalues with |eval| < threshold are set to 0
    - Warning if >1 zero eigenvalue
    - Warning if negative eigenvalues remain after thresholding; they are
      clamped to zero so every weight 1/(lambda*eval + 1) stays positive

    Args:
        K: Symmetric kinship matrix (n_samples, n_samples).
        threshold: Eigenvalues below this in magnitude are zeroed.
        overwrite: Allow LAPACK to destroy K to avoid an internal copy.
            The caller must not use K afterwards.

    Returns:
        KinshipEigensystem with eigenvalues sorted ascending.

    Raises:
        DecompositionError: If K is not square, not finite or not symmetric.
        MemoryError: If the decomposition would not fit in available memory.
    """
    K = np.asarray(K, dtype=np.float64)
    _validate_kinship(K)
    n_samples = K.shape[0]

    logger.info(f"Eigendecomposing kinship matrix ({n_samples:,} x {n_samples:,})")

    # Fail fast before LAPACK allocates
    required_gb = estimate_eigendecomp_memory(n_samples, copy_input=not overwrite)
    check_memory_available(
        required_gb,
        safety_margin=0.1,
        operation=f"eigendecomposition of {n_samples:,}x{n_samples:,} kinship matrix",
    )
    log_memory_snapshot(f"before_eigendecomp_{n_samples}samples")

    n_threads = get_blas_thread_count()
    for lib in threadpool_info():
        if lib.get("user_api") == "blas":
            logger.debug(
                f"BLAS: {lib.get('internal_api')}, "
                f"current={lib.get('num_threads')}, target={n_threads}"
            )

    driver = select_eigendecomp_driver(n_samples)
    logger.debug(f"Eigendecomp using driver={driver}, {n_threads} BLAS threads")

    if overwrite and not K.flags["F_CONTIGUOUS"]:
        K = np.asfortranarray(K)

    start_time = time.perf_counter()
    try:
        with blas_threads(n_threads):
            eigenvalues, eigenvectors = scipy.linalg.eigh(
                K,
                driver=driver,
                overwrite_a=overwrite,
                check_finite=False,
            )
    except MemoryError:
        logger.error(
            f"MemoryError during eigendecomposition of {n_samples:,}x{n_samples:,} "
            f"matrix (driver={driver}). Estimated memory: ~{required_gb:.1f} GB."
        )
        raise
    except np.linalg.LinAlgError as e:
        raise DecompositionError(f"Eigendecomposition failed: {e}") from e

    elapsed = time.perf_counter() - start_time
    logger.info(f"Eigendecomposition completed in {elapsed:.2f} seconds")
    log_memory_snapshot(f"after_eigendecomp_{n_samples}samples")

    n_negative = int(np.sum(eigenvalues < -threshold))
    if n_negative > 0:
        logger.warning(
            f"Kinship matrix has {n_negative} negative eigenvalue(s) "
            f"(min {eigenvalues.min():.3e}); clamping to zero"
        )
        warnings.warn(
            f"Kinship matrix has {n_negative} negative eigenvalue(s). "
            "Matrix may not be positive semi-definite.",
            RuntimeWarning,
            stacklevel=2,
        )

    eigenvalues = np.where(np.abs(eigenvalues) < threshold, 0.0, eigenvalues)
    eigenvalues = np.maximum(eigenvalues, 0.0)

    n_zero = int(np.sum(eigenvalues == 0.0))
    if n_zero > 1:
        warnings.warn(
            f"Kinship matrix has {n_zero} eigenvalues close to zero. "
            "Matrix may be rank-deficient.",
            RuntimeWarning,
            stacklevel=2,
        )

    return KinshipEigensystem(eigenvalues=eigenvalues, eigenvectors=eigenvectors)
