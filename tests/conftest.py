"""Pytest fixtures for the relmm test suite.

Synthetic data follows the LMM generative model: genotypes from
Hardy-Weinberg binomial draws, a standardized-genotype kinship matrix,
and phenotypes y = g + e with Var(g) = h2 * K and Var(e) = (1 - h2) * I.
"""

from __future__ import annotations

from pathlib import Path
from typing import NamedTuple

import numpy as np
import progressbar.utils  # noqa: F401  snapshot the session's stdout, not a CliRunner's
import pytest

from relmm.core import configure_jax


class SyntheticData(NamedTuple):
    K: np.ndarray
    y: np.ndarray
    G: np.ndarray
    covariates: np.ndarray


def simulate_genotypes(
    rng: np.random.Generator, n_samples: int, n_markers: int, maf_low: float = 0.1
) -> np.ndarray:
    """Dosage matrix (n_samples, n_markers) with HWE genotypes."""
    mafs = rng.uniform(maf_low, 0.5, n_markers)
    return rng.binomial(2, mafs, size=(n_samples, n_markers)).astype(np.float64)


def centered_kinship(G: np.ndarray) -> np.ndarray:
    """GEMMA-style centered relatedness matrix."""
    Gc = G - G.mean(axis=0)
    return Gc @ Gc.T / G.shape[1]


def simulate_study(
    seed: int = 42,
    n_samples: int = 200,
    n_kinship_markers: int = 500,
    n_test_markers: int = 40,
    h2: float = 0.5,
) -> SyntheticData:
    rng = np.random.default_rng(seed)
    # Related samples: a few founder families share haplotype structure
    n_families = 20
    founders = simulate_genotypes(rng, n_families, n_kinship_markers)
    family = rng.integers(0, n_families, n_samples)
    noise = rng.random((n_samples, n_kinship_markers)) < 0.3
    resampled = simulate_genotypes(rng, n_samples, n_kinship_markers)
    G_kin = np.where(noise, resampled, founders[family])
    K = centered_kinship(G_kin)

    eigvals, eigvecs = np.linalg.eigh(K)
    eigvals = np.clip(eigvals, 0.0, None)
    g = eigvecs @ (np.sqrt(eigvals * h2) * rng.standard_normal(n_samples))
    e = np.sqrt(1.0 - h2) * rng.standard_normal(n_samples)
    covariates = np.column_stack(
        [np.ones(n_samples), rng.standard_normal(n_samples)]
    )
    y = 1.0 + 0.3 * covariates[:, 1] + g + e

    G = simulate_genotypes(rng, n_samples, n_test_markers)
    return SyntheticData(K=K, y=y, G=G, covariates=covariates)


@pytest.fixture(autouse=True, scope="session")
def setup_jax():
    """Configure JAX with 64-bit precision for the test session."""
    configure_jax(enable_x64=True)


@pytest.fixture(scope="session")
def study() -> SyntheticData:
    """Shared synthetic study: n=200, h2=0.5, 40 null test markers."""
    return simulate_study()


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Create temporary output directory for test results."""
    out = tmp_path / "output"
    out.mkdir()
    return out


@pytest.fixture(scope="session")
def make_study():
    """Factory for studies with non-default size or seed."""
    return simulate_study


def write_plink(prefix: Path, G: np.ndarray, y: np.ndarray) -> Path:
    """Write dosages and phenotypes as a PLINK .bed/.bim/.fam fileset."""
    from bed_reader import to_bed

    n_samples, n_markers = G.shape
    to_bed(
        Path(f"{prefix}.bed"),
        np.ascontiguousarray(G),
        properties={
            "iid": [f"ind{i}" for i in range(n_samples)],
            "sid": [f"rs{j}" for j in range(n_markers)],
            "chromosome": ["1"] * n_markers,
            "bp_position": [1000 * (j + 1) for j in range(n_markers)],
            "allele_1": ["A"] * n_markers,
            "allele_2": ["G"] * n_markers,
        },
    )
    # Phenotypes written directly so -9 and NA stay verbatim
    with open(f"{prefix}.fam", "w") as f:
        for i, value in enumerate(y):
            token = "NA" if np.isnan(value) else f"{value:.10g}"
            f.write(f"fam{i} ind{i} 0 0 0 {token}\n")
    return prefix


@pytest.fixture
def plink_study(tmp_path: Path, study: SyntheticData) -> dict:
    """PLINK fileset plus GEMMA kinship file for the first 8 study markers."""
    from relmm.io.kinship import write_kinship_matrix

    y = study.y.copy()
    y[0] = -9.0
    bfile = write_plink(tmp_path / "study", study.G[:, :8], y)
    kinship = tmp_path / "study.cXX.txt"
    write_kinship_matrix(study.K, kinship)
    return {"bfile": bfile, "kinship": kinship, "n_markers": 8, "y": y}
