"""Rotation of phenotype, covariates and genotypes into the kinship eigenspace.

With K = U diag(eval) U^T, the rotated data U^T y, U^T W, U^T x have
independent entries under the LMM with variances proportional to
lambda*eval + 1. The null-model data is rotated once; each marker costs one
O(n^2) matrix-vector product.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from relmm.errors import DimensionMismatchError
from relmm.lmm.eigen import KinshipEigensystem
from relmm.lmm.likelihood import compute_Uab


class EigenProjector:
    """Applies U^T to vectors and matrices.

    U^T is cached in C order so each rotation is a single contiguous GEMV.
    The cached matrix is read-only and safe to share across worker threads.

    Args:
        eigenvectors: (n, n) matrix whose columns are kinship eigenvectors.
    """

    def __init__(self, eigenvectors: np.ndarray) -> None:
        eigenvectors = np.asarray(eigenvectors, dtype=np.float64)
        if eigenvectors.ndim != 2 or eigenvectors.shape[0] != eigenvectors.shape[1]:
            raise DimensionMismatchError(
                f"eigenvectors must be square, got shape {eigenvectors.shape}"
            )
        self._UT = np.ascontiguousarray(eigenvectors.T)
        self._UT.setflags(write=False)

    @property
    def n_samples(self) -> int:
        return self._UT.shape[0]

    def rotate(self, X: np.ndarray) -> np.ndarray:
        """Return U^T X for a vector (n,) or matrix (n, k)."""
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 0 or X.shape[0] != self.n_samples:
            raise DimensionMismatchError(
                f"Cannot rotate array with leading dimension "
                f"{X.shape[0] if X.ndim else 0}; expected {self.n_samples}"
            )
        return self._UT @ X


@dataclass(frozen=True)
class RotatedNullData:
    """Null-model data in the eigenspace.

    Attributes:
        eigenvalues: (n,) kinship eigenvalues.
        UtW: (n, n_cvt) rotated covariates.
        Uty: (n,) rotated phenotype.
        Uab_null: Packed pair products without a marker column.
    """

    eigenvalues: np.ndarray
    UtW: np.ndarray
    Uty: np.ndarray
    Uab_null: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        for name in ("eigenvalues", "UtW", "Uty"):
            arr = np.array(getattr(self, name), dtype=np.float64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        Uab = compute_Uab(self.UtW, self.Uty)
        Uab.setflags(write=False)
        object.__setattr__(self, "Uab_null", Uab)

    @property
    def n_samples(self) -> int:
        return self.Uty.shape[0]

    @property
    def n_cvt(self) -> int:
        return self.UtW.shape[1]


def build_covariate_matrix(
    covariates: np.ndarray | None, n_samples: int
) -> np.ndarray:
    """Construct covariate matrix W.

    If covariates is None, uses intercept-only model. Warns if provided
    covariates lack an intercept column.
    """
    if covariates is None:
        return np.ones((n_samples, 1))
    W = np.asarray(covariates, dtype=np.float64)
    if W.ndim == 1:
        W = W.reshape(-1, 1)
    if W.shape[0] != n_samples:
        raise DimensionMismatchError(
            f"Covariates have {W.shape[0]} rows, expected {n_samples} samples"
        )
    if not np.all(np.isfinite(W)):
        raise DimensionMismatchError("Covariate matrix contains non-finite values")
    if not np.allclose(W[:, 0], 1.0):
        logger.warning(
            "Covariate matrix does not have intercept column "
            "(first column is not all 1s). "
            "Model will NOT include an intercept term."
        )
    return W


def project_null_data(
    eigensystem: KinshipEigensystem,
    phenotypes: np.ndarray,
    covariates: np.ndarray | None = None,
) -> tuple[EigenProjector, RotatedNullData]:
    """Rotate phenotype and covariates into the kinship eigenspace.

    Args:
        eigensystem: Decomposed kinship matrix for the analysed individuals.
        phenotypes: (n,) phenotype values, all finite.
        covariates: Optional (n, c) covariates; None means intercept only.

    Returns:
        Tuple of (projector, rotated null data).

    Raises:
        DimensionMismatchError: If row counts disagree or values are non-finite.
    """
    y = np.asarray(phenotypes, dtype=np.float64).ravel()
    n = eigensystem.n_samples
    if y.shape[0] != n:
        raise DimensionMismatchError(
            f"Phenotype has {y.shape[0]} samples but kinship has {n}"
        )
    if not np.all(np.isfinite(y)):
        raise DimensionMismatchError("Phenotype contains non-finite values")

    W = build_covariate_matrix(covariates, n)
    projector = EigenProjector(eigensystem.eigenvectors)
    null_data = RotatedNullData(
        eigenvalues=eigensystem.eigenvalues,
        UtW=projector.rotate(W),
        Uty=projector.rotate(y),
    )
    logger.debug(f"Projected null data: n={n}, n_cvt={null_data.n_cvt}")
    return projector, null_data
