"""Per-marker association testing.

MarkerTester holds the shared, read-only state of a run (projector,
rotated null data, fitted null models) and turns one Marker into either an
AssocResult or a SkipNotice. test() is safe to call concurrently from
several threads: it only reads shared state and allocates per-marker
arrays that are dropped when it returns.
"""

from __future__ import annotations

import math

import numpy as np
from loguru import logger

from relmm.core.config import AssociationConfig, TestType
from relmm.core.marker_filter import (
    check_marker,
    compute_marker_stats,
    impute_missing,
    missing_mask,
)
from relmm.errors import DimensionMismatchError, MarkerSkipped, SkipReason
from relmm.io.markers import Marker
from relmm.lmm.likelihood import (
    calc_pab,
    compute_Hi_eval,
    get_ab_index,
    log_likelihood,
    set_marker_columns,
)
from relmm.lmm.null_model import NullModel
from relmm.lmm.optimize import OptimizerStatus, estimate_lambda, worst_status
from relmm.lmm.project import EigenProjector, RotatedNullData
from relmm.lmm.stats import (
    AssocResult,
    SkipNotice,
    calc_lrt_test,
    calc_score_test,
    calc_wald_test,
)

# Relative x^T P x below which the marker is collinear with the covariates
COLLINEARITY_TOL = 1e-9


class MarkerTester:
    """Tests single markers against a fitted null model.

    Args:
        projector: Rotation into the kinship eigenspace.
        null_data: Rotated phenotype and covariates.
        null_model: Null fit with the configured likelihood (REML or ML).
        config: Association settings.
        null_mle: ML null fit, required for the LRT when null_model is REML.
        sample_mask: Boolean mask selecting analysed individuals from each
            marker's full dosage vector; None when all are analysed.
    """

    def __init__(
        self,
        projector: EigenProjector,
        null_data: RotatedNullData,
        null_model: NullModel,
        config: AssociationConfig,
        null_mle: NullModel | None = None,
        sample_mask: np.ndarray | None = None,
    ) -> None:
        if TestType.LRT in config.tests:
            if null_mle is None and not null_model.reml:
                null_mle = null_model
            if null_mle is None or null_mle.reml:
                raise ValueError("LRT requires an ML null model (null_mle)")
        self.projector = projector
        self.null_data = null_data
        self.null_model = null_model
        self.null_mle = null_mle
        self.config = config
        self.sample_mask = None if sample_mask is None else np.asarray(sample_mask, bool)
        self.n_total = (
            null_data.n_samples if sample_mask is None else self.sample_mask.shape[0]
        )
        self._Hi_null = null_model.Hi_eval
        self._opt = config.resolved_marker_optimizer

    def test(self, marker: Marker, index: int) -> AssocResult | SkipNotice:
        """Test one marker; never raises for per-marker problems."""
        try:
            return self._test(marker, index)
        except MarkerSkipped as e:
            return SkipNotice(index, marker.marker_id, e.reason, e.detail)

    def _select(self, marker: Marker) -> tuple[np.ndarray, np.ndarray | None]:
        dosages = np.asarray(marker.dosages, dtype=np.float64)
        if dosages.shape != (self.n_total,):
            raise DimensionMismatchError(
                f"Marker {marker.marker_id} has {dosages.shape[0]} dosages, "
                f"expected {self.n_total}"
            )
        missing = marker.missing
        if self.sample_mask is not None:
            dosages = dosages[self.sample_mask]
            if missing is not None:
                missing = np.asarray(missing, dtype=bool)[self.sample_mask]
        return dosages, missing

    def _test(self, marker: Marker, index: int) -> AssocResult:
        cfg = self.config
        nd = self.null_data
        n, n_cvt = nd.n_samples, nd.n_cvt
        eigenvalues = nd.eigenvalues

        dosages, missing = self._select(marker)
        stats = compute_marker_stats(dosages, missing)
        reason = check_marker(stats, cfg.maf_threshold, cfg.miss_threshold)
        if reason is not None:
            raise MarkerSkipped(
                reason,
                f"miss_rate={stats.miss_rate:.4f}, maf={stats.maf:.4f}",
            )
        x = impute_missing(dosages, missing_mask(dosages, missing), stats.mean)

        Utx = self.projector.rotate(x)
        Uab = set_marker_columns(nd.Uab_null, Utx, nd.UtW, nd.Uty)

        # Collinearity: x^T P x after projecting out covariates, relative to x^T H^-1 x
        Pab_null = calc_pab(n_cvt, self._Hi_null, Uab)
        index_xx = get_ab_index(n_cvt + 1, n_cvt + 1, n_cvt)
        P0_xx = Pab_null[0, index_xx]
        Pc_xx = Pab_null[n_cvt, index_xx]
        if not P0_xx > 0 or Pc_xx / P0_xx < COLLINEARITY_TOL:
            raise MarkerSkipped(
                SkipReason.SINGULAR_DESIGN,
                "marker is collinear with the covariates",
            )

        beta = se = float("nan")
        lambda_val = self.null_model.lambda_val
        logl_H1 = p_wald = l_mle = p_lrt = p_score = None
        statuses = []
        est = None

        if TestType.WALD in cfg.tests:
            if cfg.reestimate_lambda:
                est = estimate_lambda(
                    eigenvalues, Uab, n_cvt, reml=cfg.reml, config=self._opt
                )
                lambda_val = est.lambda_val
                logl_H1 = est.logl
                statuses.append(est.status)
                Pab = calc_pab(n_cvt, compute_Hi_eval(lambda_val, eigenvalues), Uab)
            else:
                Pab = Pab_null
                logl_H1 = log_likelihood(
                    lambda_val, eigenvalues, Uab, n_cvt, reml=cfg.reml
                )
                statuses.append(self.null_model.status)
            beta, se, p_wald = calc_wald_test(Pab, n_cvt, n)

        if TestType.SCORE in cfg.tests:
            statuses.append(self.null_model.status)
            b, s, p_score = calc_score_test(Pab_null, n_cvt, n)
            if TestType.WALD not in cfg.tests:
                beta, se = b, s

        if TestType.LRT in cfg.tests:
            if cfg.reestimate_lambda:
                if est is not None and not cfg.reml:
                    est_mle = est
                else:
                    est_mle = estimate_lambda(
                        eigenvalues, Uab, n_cvt, reml=False, config=self._opt
                    )
                l_mle = est_mle.lambda_val
                logl_mle = est_mle.logl
                statuses.append(est_mle.status)
            else:
                l_mle = self.null_mle.lambda_val
                logl_mle = log_likelihood(l_mle, eigenvalues, Uab, n_cvt, reml=False)
                statuses.append(self.null_mle.status)
            p_lrt = calc_lrt_test(logl_mle, self.null_mle.logl)
            if TestType.WALD not in cfg.tests and TestType.SCORE not in cfg.tests:
                Pab = calc_pab(n_cvt, compute_Hi_eval(l_mle, eigenvalues), Uab)
                beta, se, _ = calc_wald_test(Pab, n_cvt, n)

        for name, value in (
            ("beta", beta),
            ("p_wald", p_wald),
            ("p_lrt", p_lrt),
            ("p_score", p_score),
            ("logl_H1", logl_H1),
        ):
            if value is not None and not math.isfinite(value):
                raise MarkerSkipped(SkipReason.NUMERICAL, f"non-finite {name}")

        status = worst_status(statuses)
        if status is OptimizerStatus.GRID_FALLBACK:
            logger.debug(
                f"Marker {marker.marker_id}: lambda Newton-Raphson did not converge, "
                "using grid-search estimate"
            )

        return AssocResult(
            index=index,
            marker_id=marker.marker_id,
            chrom=marker.chrom,
            pos=marker.pos,
            allele1=marker.allele1,
            allele0=marker.allele0,
            n_miss=stats.n_miss,
            af=stats.af,
            beta=beta,
            se=se,
            lambda_val=lambda_val,
            logl_H1=logl_H1,
            p_wald=p_wald,
            l_mle=l_mle,
            p_lrt=p_lrt,
            p_score=p_score,
            status=status,
        )
