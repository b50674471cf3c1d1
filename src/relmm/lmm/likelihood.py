"""REML/ML log-likelihood and its derivatives following GEMMA's algorithm.

Implements the restricted (REML) and full (ML) likelihood of the LMM
y = W alpha + x beta + g + e with Var(y) = sigma_e^2 (lambda K + I), in the
rotated eigenspace where the covariance is diagonal. This closely follows
GEMMA's lmm.cpp CalcPab, LogRL_f, LogRL_dev1 and LogRL_dev2.

Key data structures:
- Uab: 2D matrix (n_samples x n_index) storing element-wise products of rotated vectors
- Pab: 2D matrix (n_cvt+2 x n_index) storing a^T P_p b for projection level p
- PPab, PPPab: same layout for a^T P_p P_p b and a^T P_p P_p P_p b
- Hi_eval: 1/(lambda * eigenvalues + 1) weighting vector

Vector numbering is 1-based as in GEMMA: 1..n_cvt are covariates, n_cvt+1
is the marker and n_cvt+2 the phenotype.

Reference: Zhou & Stephens (2012) Nature Genetics, Supplementary Information
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np

P_YY_MIN = 1e-8


def get_ab_index(a: int, b: int, n_cvt: int) -> int:
    """Compute index for accessing Uab/Pab elements using GEMMA's GetabIndex.

    GEMMA uses upper triangular storage with 1-based indices:
    index = (2 * cols - a1 + 2) * (a1 - 1) / 2 + b1 - a1

    where cols = n_cvt + 2, and a1 <= b1 (swapped if necessary).
    """
    cols = n_cvt + 2
    a1, b1 = (a, b) if a <= b else (b, a)
    return (2 * cols - a1 + 2) * (a1 - 1) // 2 + b1 - a1


def n_index(n_cvt: int) -> int:
    """Number of packed (a, b) pairs for n_cvt covariates."""
    return (n_cvt + 3) * (n_cvt + 2) // 2


@lru_cache(maxsize=64)
def _projection_steps(n_cvt: int) -> tuple[tuple[int, int, int, int, int], ...]:
    """(p, index_ab, index_aw, index_bw, index_ww) for every recursion step."""
    steps = []
    for p in range(1, n_cvt + 2):
        index_ww = get_ab_index(p, p, n_cvt)
        for a in range(p + 1, n_cvt + 3):
            for b in range(a, n_cvt + 3):
                steps.append(
                    (
                        p,
                        get_ab_index(a, b, n_cvt),
                        get_ab_index(a, p, n_cvt),
                        get_ab_index(b, p, n_cvt),
                        index_ww,
                    )
                )
    return tuple(steps)


def compute_Uab(
    UtW: np.ndarray, Uty: np.ndarray, Utx: np.ndarray | None = None
) -> np.ndarray:
    """Compute Uab matrix following GEMMA's CalcUab.

    Each column stores the product u_a * u_b for the pair (a, b). Pairs that
    involve the marker are left at zero when Utx is None.

    Args:
        UtW: Rotated covariates (n_samples, n_cvt)
        Uty: Rotated phenotype (n_samples,)
        Utx: Rotated genotype for current marker (n_samples,), optional

    Returns:
        Uab matrix (n_samples, n_index)
    """
    n = len(Uty)
    UtW = UtW.reshape(n, -1)
    n_cvt = UtW.shape[1]
    Uab = np.zeros((n, n_index(n_cvt)), dtype=np.float64)

    x = Utx if Utx is not None else np.zeros(n)
    vectors = np.column_stack([UtW, x, Uty])

    for a in range(1, n_cvt + 3):
        for b in range(a, n_cvt + 3):
            if Utx is None and (a == n_cvt + 1 or b == n_cvt + 1):
                continue
            Uab[:, get_ab_index(a, b, n_cvt)] = vectors[:, a - 1] * vectors[:, b - 1]

    return Uab


def set_marker_columns(Uab_null: np.ndarray, Utx: np.ndarray, UtW: np.ndarray,
                       Uty: np.ndarray) -> np.ndarray:
    """Return a copy of a null Uab with the marker pairs filled in.

    Cheaper than compute_Uab when the covariate and phenotype pairs are
    already available: only the n_cvt + 2 marker columns are computed.
    """
    n_cvt = UtW.shape[1]
    Uab = Uab_null.copy()
    x_col = n_cvt + 1
    for a in range(1, n_cvt + 1):
        Uab[:, get_ab_index(a, x_col, n_cvt)] = UtW[:, a - 1] * Utx
    Uab[:, get_ab_index(x_col, x_col, n_cvt)] = Utx * Utx
    Uab[:, get_ab_index(x_col, n_cvt + 2, n_cvt)] = Utx * Uty
    return Uab


def compute_Hi_eval(lambda_val: float, eigenvalues: np.ndarray) -> np.ndarray:
    """Return 1 / (lambda * eigenvalues + 1)."""
    return 1.0 / (lambda_val * eigenvalues + 1.0)


def calc_pab(n_cvt: int, Hi_eval: np.ndarray, Uab: np.ndarray) -> np.ndarray:
    """Compute Pab matrix following GEMMA's CalcPab.

    For p=0 (row 0):
        Pab[0, ab] = dot(Hi_eval, Uab[:, ab])

    For p>0 (rows 1..n_cvt+1):
        Pab[p, ab] = Pab[p-1, ab] - Pab[p-1, aw] * Pab[p-1, bw] / Pab[p-1, ww]

    where w = p (the vector being projected out). When Pab[p-1, ww] is zero
    the previous level is carried through unchanged.

    Args:
        n_cvt: Number of covariates
        Hi_eval: 1 / (lambda * eigenvalues + 1) vector (n_samples,)
        Uab: Matrix products from compute_Uab (n_samples, n_index)

    Returns:
        Pab matrix (n_cvt+2, n_index)
    """
    Pab = np.zeros((n_cvt + 2, Uab.shape[1]), dtype=np.float64)
    Pab[0, :] = Hi_eval @ Uab

    for p, ab, aw, bw, ww in _projection_steps(n_cvt):
        ps_ww = Pab[p - 1, ww]
        if ps_ww != 0:
            Pab[p, ab] = Pab[p - 1, ab] - Pab[p - 1, aw] * Pab[p - 1, bw] / ps_ww
        else:
            Pab[p, ab] = Pab[p - 1, ab]

    return Pab


def calc_ppab(
    n_cvt: int, HiHi_eval: np.ndarray, Uab: np.ndarray, Pab: np.ndarray
) -> np.ndarray:
    """Compute PPab (a^T P P b at each projection level), GEMMA's CalcPPab."""
    PPab = np.zeros_like(Pab)
    PPab[0, :] = HiHi_eval @ Uab

    for p, ab, aw, bw, ww in _projection_steps(n_cvt):
        ps_ww = Pab[p - 1, ww]
        if ps_ww == 0:
            PPab[p, ab] = PPab[p - 1, ab]
            continue
        ps_aw = Pab[p - 1, aw]
        ps_bw = Pab[p - 1, bw]
        pp_ab = PPab[p - 1, ab]
        pp_aw = PPab[p - 1, aw]
        pp_bw = PPab[p - 1, bw]
        pp_ww = PPab[p - 1, ww]
        PPab[p, ab] = (
            pp_ab
            - pp_aw * ps_bw / ps_ww
            - ps_aw * pp_bw / ps_ww
            + ps_aw * ps_bw * pp_ww / (ps_ww * ps_ww)
        )

    return PPab


def calc_pppab(
    n_cvt: int,
    HiHiHi_eval: np.ndarray,
    Uab: np.ndarray,
    Pab: np.ndarray,
    PPab: np.ndarray,
) -> np.ndarray:
    """Compute PPPab (a^T P P P b at each projection level), GEMMA's CalcPPPab."""
    PPPab = np.zeros_like(Pab)
    PPPab[0, :] = HiHiHi_eval @ Uab

    for p, ab, aw, bw, ww in _projection_steps(n_cvt):
        c = Pab[p - 1, ww]
        if c == 0:
            PPPab[p, ab] = PPPab[p - 1, ab]
            continue
        ps_aw = Pab[p - 1, aw]
        ps_bw = Pab[p - 1, bw]
        pp_aw = PPab[p - 1, aw]
        pp_bw = PPab[p - 1, bw]
        pp_ww = PPab[p - 1, ww]
        ppp_ab = PPPab[p - 1, ab]
        ppp_aw = PPPab[p - 1, aw]
        ppp_bw = PPPab[p - 1, bw]
        ppp_ww = PPPab[p - 1, ww]
        c2 = c * c
        PPPab[p, ab] = (
            ppp_ab
            - ppp_aw * ps_bw / c
            - pp_aw * pp_bw / c
            - ps_aw * ppp_bw / c
            + pp_aw * pp_ww * ps_bw / c2
            + ps_aw * ps_bw * ppp_ww / c2
            + ps_aw * pp_ww * pp_bw / c2
            - ps_aw * ps_bw * pp_ww * pp_ww / (c2 * c)
        )

    return PPPab


def calc_iab(n_cvt: int, Uab: np.ndarray) -> np.ndarray:
    """Identity-weighted Pab, used for the |W^T W| term of the REML logdet."""
    return calc_pab(n_cvt, np.ones(Uab.shape[0], dtype=np.float64), Uab)


def _clamp_p_yy(P_yy: float) -> float:
    if 0.0 <= P_yy < P_YY_MIN:
        return P_YY_MIN
    return P_yy


def log_likelihood(
    lambda_val: float,
    eigenvalues: np.ndarray,
    Uab: np.ndarray,
    n_cvt: int,
    reml: bool = True,
    calc_null: bool = False,
    Iab: np.ndarray | None = None,
) -> float:
    """Compute the REML or ML log-likelihood at lambda (GEMMA LogRL_f / LogL_f).

    REML:
        f = c - 0.5 logdet_h - 0.5 logdet_hiw - 0.5 df log(P_yy)
        c = 0.5 df (log(df) - log(2 pi) - 1), df = n - nc_total
    ML:
        f = c - 0.5 logdet_h - 0.5 n log(P_yy)
        c = 0.5 n (log(n) - log(2 pi) - 1)

    where nc_total = n_cvt for the null model and n_cvt + 1 when the marker
    is part of the fixed effects, logdet_h = sum(log(lambda*eval + 1)) and
    logdet_hiw = log|W^T H^-1 W| - log|W^T W| over the fixed-effect columns.

    Args:
        lambda_val: Variance ratio sigma_g^2 / sigma_e^2.
        eigenvalues: Kinship eigenvalues (n_samples,).
        Uab: Packed pair products (n_samples, n_index).
        n_cvt: Number of covariates.
        reml: REML (True) or ML (False).
        calc_null: Exclude the marker from the fixed effects.
        Iab: Optional precomputed calc_iab(n_cvt, Uab); it does not depend
            on lambda.

    Returns:
        Log-likelihood value.
    """
    n = len(eigenvalues)
    nc_total = n_cvt if calc_null else n_cvt + 1

    v_temp = lambda_val * eigenvalues + 1.0
    Hi_eval = 1.0 / v_temp
    logdet_h = float(np.sum(np.log(np.abs(v_temp))))

    Pab = calc_pab(n_cvt, Hi_eval, Uab)
    index_yy = get_ab_index(n_cvt + 2, n_cvt + 2, n_cvt)
    P_yy = _clamp_p_yy(Pab[nc_total, index_yy])

    if not reml:
        c = 0.5 * n * (np.log(n) - np.log(2 * np.pi) - 1.0)
        return float(c - 0.5 * logdet_h - 0.5 * n * np.log(P_yy))

    df = n - nc_total
    if Iab is None:
        Iab = calc_iab(n_cvt, Uab)

    logdet_hiw = 0.0
    for i in range(nc_total):
        index_ww = get_ab_index(i + 1, i + 1, n_cvt)
        d_pab = Pab[i, index_ww]
        d_iab = Iab[i, index_ww]
        if d_pab > 0:
            logdet_hiw += np.log(d_pab)
        if d_iab > 0:
            logdet_hiw -= np.log(d_iab)

    c = 0.5 * df * (np.log(df) - np.log(2 * np.pi) - 1.0)
    return float(c - 0.5 * logdet_h - 0.5 * logdet_hiw - 0.5 * df * np.log(P_yy))


def log_likelihood_derivatives(
    lambda_val: float,
    eigenvalues: np.ndarray,
    Uab: np.ndarray,
    n_cvt: int,
    reml: bool = True,
    calc_null: bool = False,
) -> tuple[float, float]:
    """First and second derivatives of the log-likelihood with respect to lambda.

    Follows GEMMA's LogRL_dev1/LogRL_dev2 (REML) and LogL_dev1/LogL_dev2 (ML).
    With m = df for REML and n for ML:

        dev1 = -0.5 tr(PK) + 0.5 m (y^T PKP y) / (y^T P y)
        dev2 = 0.5 tr(PKPK)
               - 0.5 m (2 (y^T PKPKP y)(y^T P y) - (y^T PKP y)^2) / (y^T P y)^2

    For ML, P is replaced by H^-1 in the traces.

    Returns:
        Tuple (dev1, dev2).
    """
    n = len(eigenvalues)
    nc_total = n_cvt if calc_null else n_cvt + 1
    m = n - nc_total if reml else n

    Hi_eval = compute_Hi_eval(lambda_val, eigenvalues)
    HiHi_eval = Hi_eval * Hi_eval
    HiHiHi_eval = HiHi_eval * Hi_eval

    Pab = calc_pab(n_cvt, Hi_eval, Uab)
    PPab = calc_ppab(n_cvt, HiHi_eval, Uab, Pab)
    PPPab = calc_pppab(n_cvt, HiHiHi_eval, Uab, Pab, PPab)

    trace_P = float(np.sum(Hi_eval))
    trace_PP = float(np.sum(HiHi_eval))
    if reml:
        for i in range(nc_total):
            index_ww = get_ab_index(i + 1, i + 1, n_cvt)
            ps_ww = Pab[i, index_ww]
            if ps_ww == 0:
                continue
            ps2_ww = PPab[i, index_ww]
            ps3_ww = PPPab[i, index_ww]
            trace_P -= ps2_ww / ps_ww
            trace_PP += ps2_ww * ps2_ww / (ps_ww * ps_ww) - 2.0 * ps3_ww / ps_ww

    index_yy = get_ab_index(n_cvt + 2, n_cvt + 2, n_cvt)
    P_yy = _clamp_p_yy(Pab[nc_total, index_yy])
    PP_yy = PPab[nc_total, index_yy]
    PPP_yy = PPPab[nc_total, index_yy]

    trace_PK = (m - trace_P) / lambda_val
    trace_PKPK = (m + trace_PP - 2.0 * trace_P) / (lambda_val * lambda_val)
    yPKPy = (P_yy - PP_yy) / lambda_val
    yPKPKPy = (P_yy + PPP_yy - 2.0 * PP_yy) / (lambda_val * lambda_val)

    dev1 = -0.5 * trace_PK + 0.5 * m * yPKPy / P_yy
    dev2 = 0.5 * trace_PKPK - 0.5 * m * (
        2.0 * yPKPKPy * P_yy - yPKPy * yPKPy
    ) / (P_yy * P_yy)
    return float(dev1), float(dev2)
