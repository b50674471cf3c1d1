"""Lambda optimization: grid search, golden-section refinement, Newton-Raphson.

Implements the two-tier search GEMMA uses for the variance ratio:
1. Log-spaced grid scan over [l_min, l_max] (JAX, one compiled call)
   to bracket the maximum and detect multiple local maxima
2. Golden-section refinement inside the bracket, giving the bounded
   grid-search estimate
3. Newton-Raphson on the score d logL / d lambda from that estimate;
   on any failure the grid-search estimate is reported instead

No exception is raised on non-convergence; the outcome is carried in
LambdaEstimate.status.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

import numpy as np

from relmm.core.config import OptimizerConfig
from relmm.lmm.likelihood import (
    calc_iab,
    log_likelihood,
    log_likelihood_derivatives,
)
from relmm.lmm.likelihood_jax import grid_log_likelihood

__all__ = [
    "LambdaEstimate",
    "NewtonResult",
    "OptimizerConfig",
    "OptimizerStatus",
    "count_local_maxima",
    "estimate_lambda",
    "golden_section_maximize",
    "newton_raphson",
    "worst_status",
]


class OptimizerStatus(str, Enum):
    """How the reported lambda was obtained."""

    CONVERGED = "converged"
    GRID_FALLBACK = "grid_fallback"
    BOUNDARY = "boundary"


@dataclass(frozen=True)
class LambdaEstimate:
    """Result of one lambda optimization.

    Attributes:
        lambda_val: Estimated variance ratio.
        logl: Log-likelihood at lambda_val.
        status: CONVERGED, GRID_FALLBACK or BOUNDARY.
        score: First derivative of logL at lambda_val.
        hessian: Second derivative of logL at lambda_val.
        n_iter: Newton-Raphson iterations performed.
        n_modes: Local maxima seen on the grid.
    """

    lambda_val: float
    logl: float
    status: OptimizerStatus
    score: float = float("nan")
    hessian: float = float("nan")
    n_iter: int = 0
    n_modes: int = 1

    @property
    def converged(self) -> bool:
        return self.status is OptimizerStatus.CONVERGED

    @property
    def constraint_active(self) -> bool:
        """True when the estimate sits on a search bound."""
        return self.status is OptimizerStatus.BOUNDARY

    @property
    def multimodal(self) -> bool:
        return self.n_modes > 1


class NewtonResult(NamedTuple):
    x: float
    converged: bool
    n_iter: int
    dev1: float
    dev2: float
    reason: str


def count_local_maxima(values: np.ndarray) -> int:
    """Count strict local maxima of a sampled curve, endpoints included."""
    v = np.where(np.isfinite(values), values, -np.inf)
    if v.size == 0 or not np.any(np.isfinite(v)):
        return 0
    if v.size == 1:
        return 1
    left = np.concatenate(([-np.inf], v[:-1]))
    right = np.concatenate((v[1:], [-np.inf]))
    return int(np.sum((v > left) & (v > right) & np.isfinite(v)))


_STATUS_ORDER = (
    OptimizerStatus.CONVERGED,
    OptimizerStatus.BOUNDARY,
    OptimizerStatus.GRID_FALLBACK,
)


def worst_status(statuses: Iterable[OptimizerStatus]) -> OptimizerStatus:
    """Least favourable status: GRID_FALLBACK over BOUNDARY over CONVERGED."""
    return max(statuses, key=_STATUS_ORDER.index, default=OptimizerStatus.CONVERGED)


def golden_section_maximize(
    func: Callable[[float], float],
    a: float,
    b: float,
    n_iter: int = 20,
) -> tuple[float, float]:
    """Maximize a unimodal scalar function on [a, b] by golden-section search.

    After 20 iterations the bracket shrinks by 0.618^20 ~ 6.6e-5.

    Args:
        func: Function to maximize.
        a: Lower end of the bracket.
        b: Upper end of the bracket.
        n_iter: Number of bracket reductions.

    Returns:
        (x_opt, f_opt)
    """
    phi = 0.6180339887498949  # Golden ratio - 1

    if a > b:
        a, b = b, a
    c = b - phi * (b - a)
    d = a + phi * (b - a)
    fc = func(c)
    fd = func(d)

    for _ in range(n_iter):
        if fc > fd:
            b = d
            d = c
            fd = fc
            c = b - phi * (b - a)
            fc = func(c)
        else:
            a = c
            c = d
            fc = fd
            d = a + phi * (b - a)
            fd = func(d)

    x_opt = (a + b) / 2.0
    return x_opt, func(x_opt)


def newton_raphson(
    derivs: Callable[[float], tuple[float, float]],
    x0: float,
    lower: float,
    upper: float,
    tol: float = 1e-5,
    max_iter: int = 100,
) -> NewtonResult:
    """Solve score(x) = 0 by Newton-Raphson inside [lower, upper].

    Failure is reported, not raised. A run fails when a step leaves the
    bracket, when the second derivative is non-negative or non-finite, or
    when steps change sign without shrinking.

    Args:
        derivs: Returns (first, second) derivative of the objective at x.
        x0: Starting point.
        lower: Lower end of the admissible bracket.
        upper: Upper end of the admissible bracket.
        tol: Convergence tolerance on |first derivative|.
        max_iter: Maximum number of steps.

    Returns:
        NewtonResult with the final point and a reason string on failure.
    """
    x = x0
    prev_step = None
    dev1 = dev2 = float("nan")

    for it in range(max_iter + 1):
        dev1, dev2 = derivs(x)
        if not (math.isfinite(dev1) and math.isfinite(dev2)):
            return NewtonResult(x, False, it, dev1, dev2, "non-finite derivative")
        if abs(dev1) < tol:
            return NewtonResult(x, True, it, dev1, dev2, "")
        if it == max_iter:
            break
        if dev2 >= 0.0:
            return NewtonResult(x, False, it, dev1, dev2, "not concave")

        step = -dev1 / dev2
        x_new = x + step
        if not lower <= x_new <= upper:
            return NewtonResult(x, False, it, dev1, dev2, "step left bracket")
        if (
            prev_step is not None
            and np.sign(step) != np.sign(prev_step)
            and abs(step) >= abs(prev_step)
        ):
            return NewtonResult(x, False, it, dev1, dev2, "oscillation")
        prev_step = step
        x = x_new

    return NewtonResult(x, False, max_iter, dev1, dev2, "max_iter reached")


def estimate_lambda(
    eigenvalues: np.ndarray,
    Uab: np.ndarray,
    n_cvt: int,
    reml: bool = True,
    calc_null: bool = False,
    config: OptimizerConfig | None = None,
) -> LambdaEstimate:
    """Estimate the variance ratio lambda maximizing the (RE)ML likelihood.

    Args:
        eigenvalues: Kinship eigenvalues (n_samples,).
        Uab: Packed pair products (n_samples, n_index).
        n_cvt: Number of covariates.
        reml: REML (True) or ML (False) likelihood.
        calc_null: Null model (marker excluded from the fixed effects).
        config: Search settings; defaults to OptimizerConfig().

    Returns:
        LambdaEstimate. Status BOUNDARY when the maximum is at a search bound
        with the score pointing outward, GRID_FALLBACK when Newton-Raphson
        did not converge, CONVERGED otherwise.
    """
    config = config or OptimizerConfig()
    Iab = calc_iab(n_cvt, Uab) if reml else None

    def logl_at(lam: float) -> float:
        return log_likelihood(lam, eigenvalues, Uab, n_cvt, reml, calc_null, Iab=Iab)

    def derivs(lam: float) -> tuple[float, float]:
        return log_likelihood_derivatives(
            lam, eigenvalues, Uab, n_cvt, reml, calc_null
        )

    lambdas = np.logspace(
        math.log10(config.l_min), math.log10(config.l_max), config.n_grid
    )
    logls = grid_log_likelihood(n_cvt, reml, calc_null, lambdas, eigenvalues, Uab)
    finite = np.isfinite(logls)
    n_modes = count_local_maxima(logls)

    if not np.any(finite):
        return LambdaEstimate(
            lambda_val=float(lambdas[0]),
            logl=float("nan"),
            status=OptimizerStatus.GRID_FALLBACK,
            n_modes=0,
        )

    best = int(np.argmax(np.where(finite, logls, -np.inf)))
    last = config.n_grid - 1

    if best in (0, last):
        lam = float(lambdas[best])
        dev1, dev2 = derivs(lam)
        outward = dev1 <= 0.0 if best == 0 else dev1 >= 0.0
        if outward:
            return LambdaEstimate(
                lambda_val=lam,
                logl=logl_at(lam),
                status=OptimizerStatus.BOUNDARY,
                score=dev1,
                hessian=dev2,
                n_modes=n_modes,
            )

    lo = float(lambdas[max(best - 1, 0)])
    hi = float(lambdas[min(best + 1, last)])
    log_opt, grid_logl = golden_section_maximize(
        lambda t: logl_at(math.exp(t)), math.log(lo), math.log(hi), config.n_golden
    )
    grid_lambda = math.exp(log_opt)

    nr = newton_raphson(derivs, grid_lambda, lo, hi, config.tol, config.max_iter)
    if nr.converged:
        nr_logl = logl_at(nr.x)
        if nr_logl >= grid_logl - 1e-10 * max(1.0, abs(grid_logl)):
            return LambdaEstimate(
                lambda_val=nr.x,
                logl=nr_logl,
                status=OptimizerStatus.CONVERGED,
                score=nr.dev1,
                hessian=nr.dev2,
                n_iter=nr.n_iter,
                n_modes=n_modes,
            )

    dev1, dev2 = derivs(grid_lambda)
    return LambdaEstimate(
        lambda_val=grid_lambda,
        logl=grid_logl,
        status=OptimizerStatus.GRID_FALLBACK,
        score=dev1,
        hessian=dev2,
        n_iter=nr.n_iter,
        n_modes=n_modes,
    )
