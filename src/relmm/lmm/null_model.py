"""Null model fit: variance components without any marker effect.

The null model is fitted once per run. Its lambda is reused by the Score
test and by EMMAX-style scans (no per-marker re-estimation), and its ML
log-likelihood is the reference for the likelihood-ratio test.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from relmm.errors import ConvergenceWarning, RelmmError
from relmm.lmm.likelihood import calc_pab, compute_Hi_eval, get_ab_index
from relmm.lmm.optimize import (
    LambdaEstimate,
    OptimizerConfig,
    OptimizerStatus,
    estimate_lambda,
)
from relmm.lmm.project import RotatedNullData


@dataclass(frozen=True)
class NullModel:
    """Fitted null model.

    Attributes:
        lambda_val: Variance ratio sigma_g^2 / sigma_e^2.
        logl: (RE)ML log-likelihood at lambda_val.
        vg: Genetic variance component.
        ve: Residual variance component.
        pve: Proportion of phenotypic variance explained by the kinship term.
        pve_se: Delta-method standard error of pve.
        beta: GLS covariate effects (n_cvt,).
        beta_se: Standard errors of beta (n_cvt,).
        reml: Whether REML was used.
        estimate: Raw optimizer result.
    """

    lambda_val: float
    logl: float
    vg: float
    ve: float
    pve: float
    pve_se: float
    beta: np.ndarray
    beta_se: np.ndarray
    reml: bool
    estimate: LambdaEstimate
    n_samples: int
    n_cvt: int
    eigenvalues: np.ndarray = field(repr=False)

    @property
    def converged(self) -> bool:
        return self.estimate.converged

    @property
    def status(self) -> OptimizerStatus:
        return self.estimate.status

    @property
    def Hi_eval(self) -> np.ndarray:
        """1 / (lambda * eigenvalues + 1) at the null lambda."""
        return compute_Hi_eval(self.lambda_val, self.eigenvalues)


def _gls_effects(
    UtW: np.ndarray, Uty: np.ndarray, Hi_eval: np.ndarray, ve: float
) -> tuple[np.ndarray, np.ndarray]:
    """(W^T H^-1 W)^-1 W^T H^-1 y and its standard errors."""
    WtHi = UtW.T * Hi_eval
    WtHiW = WtHi @ UtW
    WtHiy = WtHi @ Uty
    try:
        WtHiW_inv = np.linalg.inv(WtHiW)
    except np.linalg.LinAlgError as e:
        raise RelmmError(f"Covariate matrix is singular: {e}") from e
    beta = WtHiW_inv @ WtHiy
    beta_se = np.sqrt(np.abs(np.diag(WtHiW_inv)) * ve)
    return beta, beta_se


def fit_null_model(
    null_data: RotatedNullData,
    reml: bool = True,
    config: OptimizerConfig | None = None,
) -> NullModel:
    """Fit the null LMM y = W alpha + g + e.

    Args:
        null_data: Rotated phenotype and covariates.
        reml: Estimate lambda by REML (True) or ML (False).
        config: Optimizer settings.

    Returns:
        NullModel with variance components and covariate effects.

    Raises:
        RelmmError: If the covariate matrix is singular.
    """
    eigenvalues = null_data.eigenvalues
    n = null_data.n_samples
    n_cvt = null_data.n_cvt
    method = "REML" if reml else "ML"

    est = estimate_lambda(
        eigenvalues, null_data.Uab_null, n_cvt, reml=reml, calc_null=True, config=config
    )
    lam = est.lambda_val

    if est.status is OptimizerStatus.GRID_FALLBACK:
        msg = (
            f"Null model {method} Newton-Raphson did not converge; "
            f"using grid-search lambda={lam:.6g}"
        )
        logger.warning(msg)
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
    elif est.status is OptimizerStatus.BOUNDARY:
        logger.info(f"Null model {method} lambda at search bound ({lam:.6g})")
    if est.multimodal:
        logger.warning(
            f"Null model {method} likelihood has {est.n_modes} local maxima on the grid"
        )

    Hi_eval = compute_Hi_eval(lam, eigenvalues)
    Pab = calc_pab(n_cvt, Hi_eval, null_data.Uab_null)
    P_yy = Pab[n_cvt, get_ab_index(n_cvt + 2, n_cvt + 2, n_cvt)]
    df = n - n_cvt if reml else n
    ve = float(P_yy / df)
    vg = lam * ve

    tr = float(np.mean(eigenvalues))
    pve = tr * lam / (tr * lam + 1.0)
    hessian = est.hessian
    if hessian < 0:
        pve_se = tr / (tr * lam + 1.0) ** 2 * float(np.sqrt(-1.0 / hessian))
    else:
        pve_se = float("nan")

    beta, beta_se = _gls_effects(null_data.UtW, null_data.Uty, Hi_eval, ve)

    logger.info(
        f"Null model ({method}): lambda={lam:.6g}, logl={est.logl:.6f}, "
        f"vg={vg:.6g}, ve={ve:.6g}, pve={pve:.4f} (se {pve_se:.4f})"
    )

    return NullModel(
        lambda_val=lam,
        logl=est.logl,
        vg=vg,
        ve=ve,
        pve=pve,
        pve_se=pve_se,
        beta=beta,
        beta_se=beta_se,
        reml=reml,
        estimate=est,
        n_samples=n,
        n_cvt=n_cvt,
        eigenvalues=eigenvalues,
    )
