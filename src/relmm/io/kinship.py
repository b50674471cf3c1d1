"""Kinship matrix I/O in GEMMA format."""

from pathlib import Path

import numpy as np

from relmm.errors import DecompositionError, DimensionMismatchError


def read_kinship_matrix(path: Path, n_samples: int | None = None) -> np.ndarray:
    """Read kinship matrix from GEMMA .cXX.txt format.

    Args:
        path: Path to kinship matrix file (tab or space separated, no header).
        n_samples: Expected number of samples (optional validation).

    Returns:
        Kinship matrix as numpy array (n x n).

    Raises:
        DecompositionError: If the matrix is not square.
        DimensionMismatchError: If the dimension differs from n_samples.
    """
    K = np.loadtxt(path, dtype=np.float64, ndmin=2)

    if K.shape[0] != K.shape[1]:
        raise DecompositionError(f"Kinship matrix must be square, got shape {K.shape}")

    if n_samples is not None and K.shape[0] != n_samples:
        raise DimensionMismatchError(
            f"Kinship matrix dimension {K.shape[0]} does not match "
            f"expected n_samples={n_samples}"
        )

    return K


def write_kinship_matrix(K: np.ndarray, path: Path) -> None:
    """Write kinship matrix in GEMMA .cXX.txt format (.10g, tab separated)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for row in K:
            f.write("\t".join(f"{v:.10g}" for v in row) + "\n")
