"""Association test statistics and per-marker result records.

Implements the Wald, likelihood-ratio and Score tests from GEMMA's
CalcRLWald, LRT and CalcRLScore. Uses JAX's betainc for the F-distribution
survival function and jax.scipy.stats.chi2 for the LRT.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from jax import config
from jax.scipy.special import betainc
from jax.scipy.stats import chi2

from relmm.core.config import LMM_MODES, TestType
from relmm.errors import SkipReason
from relmm.lmm.likelihood import get_ab_index
from relmm.lmm.optimize import OptimizerStatus

# Small p-values underflow to 0 in float32
config.update("jax_enable_x64", True)

__all__ = [
    "LMM_MODES",
    "AssocResult",
    "SkipNotice",
    "TestType",
    "calc_lrt_test",
    "calc_score_test",
    "calc_wald_test",
    "f_sf",
]


def _safe_sqrt(d: float) -> float:
    """Safe square root following GEMMA's safe_sqrt behavior.

    If |d| < 0.001 the absolute value is used to tolerate small negative
    values from rounding; larger negatives give NaN.
    """
    if abs(d) < 0.001:
        d = abs(d)
    if d < 0.0:
        return float("nan")
    return float(np.sqrt(d))


@dataclass(frozen=True)
class AssocResult:
    """Association test result for a single marker.

    Fields not produced by the requested tests are None.
    """

    index: int
    marker_id: str
    chrom: str
    pos: int
    allele1: str
    allele0: str
    n_miss: int
    af: float
    beta: float
    se: float
    lambda_val: float  # lambda used for Wald / Score
    logl_H1: float | None = None
    p_wald: float | None = None
    l_mle: float | None = None
    p_lrt: float | None = None
    p_score: float | None = None
    # worst optimizer outcome among the lambdas the statistics were computed at
    status: OptimizerStatus = OptimizerStatus.CONVERGED

    @property
    def converged(self) -> bool:
        """False when a lambda fell back to the grid-search estimate."""
        return self.status is not OptimizerStatus.GRID_FALLBACK


@dataclass(frozen=True)
class SkipNotice:
    """A marker that was not tested, in stream order."""

    index: int
    marker_id: str
    reason: SkipReason
    detail: str = ""

    @property
    def failed(self) -> bool:
        """True when testing was attempted and failed."""
        return self.reason.is_failure


def f_sf(x: float, df1: float, df2: float) -> float:
    """F-distribution survival function P(F > x).

    SF(x) = I_{df2/(df2 + df1*x)}(df2/2, df1/2) where I is the
    regularized incomplete beta function.
    """
    if x <= 0:
        return 1.0
    if not np.isfinite(x):
        return 0.0
    z = df2 / (df2 + df1 * x)
    return float(betainc(df2 / 2.0, df1 / 2.0, z))


def _pab_entries(Pab: np.ndarray, n_cvt: int) -> tuple[float, float, float, float]:
    index_yy = get_ab_index(n_cvt + 2, n_cvt + 2, n_cvt)
    index_xx = get_ab_index(n_cvt + 1, n_cvt + 1, n_cvt)
    index_xy = get_ab_index(n_cvt + 2, n_cvt + 1, n_cvt)
    Px_yy = Pab[n_cvt + 1, index_yy]
    if 0.0 <= Px_yy < 1e-8:
        Px_yy = 1e-8
    return Pab[n_cvt, index_yy], Pab[n_cvt, index_xx], Pab[n_cvt, index_xy], Px_yy


def calc_wald_test(Pab: np.ndarray, n_cvt: int, n: int) -> tuple[float, float, float]:
    """Wald test following GEMMA's CalcRLWald.

    - P_yy, P_xx, P_xy at level n_cvt (covariates projected out)
    - Px_yy at level n_cvt+1 (covariates and marker projected out)
    - beta = P_xy / P_xx, tau = df / Px_yy, se = sqrt(1 / (tau P_xx))
    - p = F_sf((P_yy - Px_yy) tau, 1, df), df = n - n_cvt - 1

    Args:
        Pab: Pab matrix at the chosen lambda (n_cvt+2, n_index).
        n_cvt: Number of covariates.
        n: Number of analysed individuals.

    Returns:
        (beta, se, p_wald); all NaN when P_xx <= 0.
    """
    df = n - n_cvt - 1
    P_yy, P_xx, P_xy, Px_yy = _pab_entries(Pab, n_cvt)
    if P_xx <= 0.0:
        return float("nan"), float("nan"), float("nan")

    beta = P_xy / P_xx
    tau = float(df) / Px_yy
    se = _safe_sqrt(1.0 / (tau * P_xx))
    f_stat = (P_yy - Px_yy) * tau
    return float(beta), se, f_sf(f_stat, 1.0, float(df))


def calc_score_test(
    Pab: np.ndarray, n_cvt: int, n: int
) -> tuple[float, float, float]:
    """Score test following GEMMA's CalcRLScore.

    F = n P_xy^2 / (P_yy P_xx), all at level n_cvt, against F(1, df).
    beta and se are informational.

    Returns:
        (beta, se, p_score); all NaN when P_xx <= 0.
    """
    df = n - n_cvt - 1
    P_yy, P_xx, P_xy, Px_yy = _pab_entries(Pab, n_cvt)
    if P_xx <= 0.0:
        return float("nan"), float("nan"), float("nan")

    beta = P_xy / P_xx
    tau = float(df) / Px_yy
    se = _safe_sqrt(1.0 / (tau * P_xx))
    f_stat = float(n) * (P_xy * P_xy) / (P_yy * P_xx)
    return float(beta), se, f_sf(f_stat, 1.0, float(df))


def calc_lrt_test(logl_H1: float, logl_H0: float) -> float:
    """LRT p-value: 2 (logl_H1 - logl_H0) against chi-squared with df=1.

    Both log-likelihoods must be ML. A negative statistic gives 1.0.
    """
    lrt_stat = 2.0 * (logl_H1 - logl_H0)
    if lrt_stat < 0:
        return 1.0
    return float(chi2.sf(lrt_stat, df=1))
