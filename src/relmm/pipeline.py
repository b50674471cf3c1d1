"""Pipeline orchestration for file-based association runs.

PipelineRunner wires the file adapters to run_association: PLINK genotypes
and .fam phenotypes, a GEMMA kinship matrix, an optional covariate file,
and writes results plus a skip sidecar to the output directory. The CLI
delegates to it.

Example:
    >>> from relmm.pipeline import PipelineConfig, PipelineRunner
    >>> config = PipelineConfig(bfile=Path("data/study"), kinship_file=Path("k.txt"))
    >>> result = PipelineRunner(config).run()
    >>> print(f"Tested {result.summary.n_tested} markers")
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from loguru import logger

from relmm.core.config import LMM_MODES, AssociationConfig, OptimizerConfig
from relmm.io.covariate import read_covariate_file
from relmm.io.kinship import read_kinship_matrix
from relmm.io.plink import get_plink_metadata, iter_plink_markers, read_fam_phenotypes
from relmm.lmm.io import IncrementalAssocWriter
from relmm.lmm.runner import RunSummary, run_association


@dataclass
class PipelineConfig:
    """Configuration for a pipeline run.

    Attributes:
        bfile: PLINK binary file prefix (without .bed/.bim/.fam).
        kinship_file: Kinship matrix file in GEMMA .cXX.txt format.
        covariate_file: GEMMA-format covariate file, or None for intercept-only.
        lmm_mode: 1=Wald, 2=LRT, 3=Score, 4=All.
        maf: Minor allele frequency threshold.
        miss: Missing rate threshold.
        reml: REML (True) or ML (False) for lambda estimation.
        reestimate_lambda: Per-marker lambda (True) or null lambda (False).
        optimizer: Lambda search settings.
        n_workers: Worker threads for the marker scan (0 = physical cores).
        phenotype_column: 1-based .fam phenotype column.
        chunk_size: Markers per windowed .bed read.
        output_dir: Directory for output files.
        output_prefix: Prefix for output filenames.
        show_progress: Show a progress bar.
    """

    bfile: Path
    kinship_file: Path
    covariate_file: Path | None = None
    lmm_mode: int = 1
    maf: float = 0.0
    miss: float = 0.05
    reml: bool = True
    reestimate_lambda: bool = True
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    n_workers: int = 1
    phenotype_column: int = 1
    chunk_size: int = 10_000
    output_dir: Path = field(default_factory=lambda: Path("output"))
    output_prefix: str = "result"
    show_progress: bool = True


@dataclass
class PipelineResult:
    """Result of a pipeline run."""

    summary: RunSummary
    n_markers_total: int
    assoc_path: Path
    skip_path: Path
    timing: dict[str, float] = field(default_factory=dict)


class PipelineRunner:
    """Runs a complete association analysis from files.

    Raises exceptions (ValueError, FileNotFoundError, MemoryError,
    RelmmError) rather than exiting; the CLI converts them to messages.
    """

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def validate_inputs(self) -> None:
        """Check that input files exist and the mode is valid.

        Raises:
            FileNotFoundError: If a PLINK, kinship or covariate file is missing.
            ValueError: If lmm_mode is not in 1..4.
        """
        bfile = self.config.bfile
        for ext in (".bed", ".bim", ".fam"):
            p = Path(f"{bfile}{ext}")
            if not p.exists():
                raise FileNotFoundError(f"PLINK {ext} file not found: {p}")

        if self.config.lmm_mode not in LMM_MODES:
            raise ValueError(
                f"lmm_mode must be 1 (Wald), 2 (LRT), 3 (Score), or 4 (All), "
                f"got {self.config.lmm_mode}"
            )

        if not self.config.kinship_file.exists():
            raise FileNotFoundError(
                f"Kinship matrix file not found: {self.config.kinship_file}"
            )

        if (
            self.config.covariate_file is not None
            and not self.config.covariate_file.exists()
        ):
            raise FileNotFoundError(
                f"Covariate file not found: {self.config.covariate_file}"
            )

    def load_phenotypes(self) -> np.ndarray:
        """Read phenotypes from the .fam file.

        Raises:
            ValueError: If no individual has a valid phenotype.
        """
        phenotypes = read_fam_phenotypes(self.config.bfile, self.config.phenotype_column)
        n_valid = int(np.sum(np.isfinite(phenotypes)))
        if n_valid == 0:
            raise ValueError("No samples with valid phenotypes")
        logger.info(
            f"Analyzing up to {n_valid} samples with valid phenotypes "
            f"({len(phenotypes) - n_valid} filtered)"
        )
        return phenotypes

    def load_kinship(self, n_samples: int) -> np.ndarray:
        logger.info(f"Loading kinship from {self.config.kinship_file}")
        return read_kinship_matrix(self.config.kinship_file, n_samples=n_samples)

    def load_covariates(self, n_samples: int) -> np.ndarray | None:
        """Load the covariate file, or None for intercept-only.

        Raises:
            ValueError: If the covariate row count differs from n_samples.
        """
        if self.config.covariate_file is None:
            return None

        logger.info(f"Loading covariates from {self.config.covariate_file}")
        covariates = read_covariate_file(self.config.covariate_file)
        if covariates.shape[0] != n_samples:
            raise ValueError(
                f"Covariate file has {covariates.shape[0]} rows "
                f"but PLINK data has {n_samples} samples. "
                f"Covariate rows must match sample count exactly."
            )
        logger.info(f"Loaded {covariates.shape[1]} covariates")
        return covariates

    def association_config(self) -> AssociationConfig:
        c = self.config
        return AssociationConfig.from_lmm_mode(
            c.lmm_mode,
            reml=c.reml,
            reestimate_lambda=c.reestimate_lambda,
            miss_threshold=c.miss,
            maf_threshold=c.maf,
            null_optimizer=c.optimizer,
            n_workers=c.n_workers,
        )

    def run(self) -> PipelineResult:
        """Execute the pipeline.

        Steps: validate inputs, read metadata and phenotypes, load kinship
        and covariates, stream markers through run_association into the
        result writer.
        """
        t_start = time.perf_counter()
        self.validate_inputs()
        assoc_config = self.association_config()

        meta = get_plink_metadata(self.config.bfile)
        n_samples = meta["n_samples"]
        n_snps = meta["n_snps"]

        phenotypes = self.load_phenotypes()
        K = self.load_kinship(n_samples)
        covariates = self.load_covariates(n_samples)
        load_s = time.perf_counter() - t_start

        self.config.output_dir.mkdir(parents=True, exist_ok=True)
        assoc_path = self.config.output_dir / f"{self.config.output_prefix}.assoc.txt"

        with IncrementalAssocWriter(assoc_path, tests=assoc_config.tests) as writer:
            summary = run_association(
                iter_plink_markers(self.config.bfile, chunk_size=self.config.chunk_size),
                phenotypes,
                K,
                covariates,
                config=assoc_config,
                sink=writer,
                show_progress=self.config.show_progress,
                n_markers=n_snps,
            )
        logger.info(
            f"Wrote {writer.count:,} results to {assoc_path} "
            f"and {writer.skip_count:,} skip notices to {writer.skip_path}"
        )

        timing = {"load": load_s, **summary.timing}
        timing["total"] = time.perf_counter() - t_start
        return PipelineResult(
            summary=summary,
            n_markers_total=n_snps,
            assoc_path=assoc_path,
            skip_path=writer.skip_path,
            timing=timing,
        )
