"""Configuration dataclasses for relmm.

OptimizerConfig controls the two-tier lambda search, AssociationConfig the
per-marker testing engine, and OutputConfig where result and log files go.
All are validated on construction so a bad setting fails before the
eigendecomposition starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class TestType(str, Enum):
    """Association test statistic."""

    WALD = "wald"
    LRT = "lrt"
    SCORE = "score"


ALL_TESTS = frozenset({TestType.WALD, TestType.LRT, TestType.SCORE})

# GEMMA-style -lmm codes
LMM_MODES: dict[int, frozenset[TestType]] = {
    1: frozenset({TestType.WALD}),
    2: frozenset({TestType.LRT}),
    3: frozenset({TestType.SCORE}),
    4: ALL_TESTS,
}


@dataclass(frozen=True)
class OptimizerConfig:
    """Settings for the grid + Newton-Raphson lambda optimizer.

    Attributes:
        l_min: Lower bound of the lambda search interval (strictly positive).
        l_max: Upper bound of the lambda search interval.
        n_grid: Number of log-spaced grid points.
        n_golden: Golden-section iterations refining the best grid bracket.
        tol: Convergence tolerance on |d logL / d lambda|.
        max_iter: Maximum Newton-Raphson iterations.
    """

    l_min: float = 1e-5
    l_max: float = 1e5
    n_grid: int = 50
    n_golden: int = 20
    tol: float = 1e-5
    max_iter: int = 100

    def __post_init__(self) -> None:
        if not (0.0 < self.l_min < self.l_max):
            raise ValueError(
                f"lambda bounds must satisfy 0 < l_min < l_max, "
                f"got [{self.l_min}, {self.l_max}]"
            )
        if self.n_grid < 3:
            raise ValueError(f"n_grid must be >= 3, got {self.n_grid}")
        if self.n_golden < 0 or self.max_iter < 0:
            raise ValueError("n_golden and max_iter must be non-negative")
        if self.tol <= 0.0:
            raise ValueError(f"tol must be positive, got {self.tol}")


@dataclass(frozen=True)
class AssociationConfig:
    """Configuration of the per-marker association engine.

    Attributes:
        reml: Estimate lambda by REML (True) or ML (False). LRT always uses ML.
        tests: Which statistics to compute.
        reestimate_lambda: Re-optimize lambda for every marker (exact) or
            reuse the null-model lambda (EMMAX-style, faster).
        miss_threshold: Maximum missing-genotype fraction for a marker.
        maf_threshold: Minimum minor allele frequency for a marker.
        null_optimizer: Optimizer settings for the null model.
        marker_optimizer: Optimizer settings for per-marker re-estimation;
            None shares null_optimizer.
        n_workers: Worker threads for the marker loop (0 = physical cores).
        max_in_flight: Markers queued ahead of the output cursor; None
            means 4 per worker.
    """

    reml: bool = True
    tests: frozenset[TestType] = field(
        default_factory=lambda: frozenset({TestType.WALD})
    )
    reestimate_lambda: bool = True
    miss_threshold: float = 0.05
    maf_threshold: float = 0.0
    null_optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    marker_optimizer: OptimizerConfig | None = None
    n_workers: int = 1
    max_in_flight: int | None = None

    def __post_init__(self) -> None:
        tests = frozenset(TestType(t) for t in self.tests)
        if not tests:
            raise ValueError("At least one test statistic must be requested")
        object.__setattr__(self, "tests", tests)
        if not 0.0 <= self.miss_threshold <= 1.0:
            raise ValueError(
                f"miss_threshold must be in [0, 1], got {self.miss_threshold}"
            )
        if not 0.0 <= self.maf_threshold <= 0.5:
            raise ValueError(
                f"maf_threshold must be in [0, 0.5], got {self.maf_threshold}"
            )
        if self.n_workers < 0:
            raise ValueError(f"n_workers must be >= 0, got {self.n_workers}")
        if self.max_in_flight is not None and self.max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {self.max_in_flight}")

    @classmethod
    def from_lmm_mode(cls, mode: int, **kwargs) -> AssociationConfig:
        """Build a config from a GEMMA-style -lmm code (1=Wald, 2=LRT, 3=Score, 4=All)."""
        if mode not in LMM_MODES:
            raise ValueError(
                f"lmm mode must be 1 (Wald), 2 (LRT), 3 (Score), or 4 (All), got {mode}"
            )
        return cls(tests=LMM_MODES[mode], **kwargs)

    @property
    def resolved_marker_optimizer(self) -> OptimizerConfig:
        """Optimizer settings used for per-marker lambda re-estimation."""
        return self.marker_optimizer or self.null_optimizer

    @property
    def needs_mle_null(self) -> bool:
        """Whether an ML null model is needed in addition to the primary one."""
        return TestType.LRT in self.tests and self.reml


@dataclass
class OutputConfig:
    """Configuration for output files and directories.

    Attributes:
        outdir: Output directory for result files. Created if it doesn't exist.
        prefix: Prefix for output filenames (e.g., "result" produces "result.log.txt").
        verbose: Enable verbose/debug output to console.
    """

    outdir: Path = field(default_factory=lambda: Path("output"))
    prefix: str = "result"
    verbose: bool = False

    @property
    def log_path(self) -> Path:
        """Path to {outdir}/{prefix}.log.txt."""
        return self.outdir / f"{self.prefix}.log.txt"

    @property
    def assoc_path(self) -> Path:
        """Path to {outdir}/{prefix}.assoc.txt."""
        return self.outdir / f"{self.prefix}.assoc.txt"

    def ensure_outdir(self) -> None:
        """Create output directory if it doesn't exist."""
        self.outdir.mkdir(parents=True, exist_ok=True)
