"""Logging utilities for relmm.

This module provides loguru-based logging configuration and GEMMA-style
log file output.
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import psutil
from loguru import logger

if TYPE_CHECKING:
    from relmm.core.config import OutputConfig
    from relmm.lmm.null_model import NullModel
    from relmm.lmm.runner import RunSummary


def setup_logging(
    verbose: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure loguru for relmm.

    Sets up console logging with INFO level (or DEBUG if verbose), and
    optional file logging with JSON serialization.

    Args:
        verbose: If True, set console logging to DEBUG level.
        log_file: Optional path to log file. If provided, DEBUG-level
            logs are written with JSON serialization.
    """
    logger.remove()

    level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stdout,
        level=level,
        format="{time:HH:mm:ss} | <level>{level: <8}</level> | {message}",
        colorize=True,
    )

    if log_file:
        logger.add(log_file, serialize=True, level="DEBUG")


def _null_model_lines(label: str, null: NullModel) -> list[str]:
    return [
        f"## {label} ({'REML' if null.reml else 'ML'}):",
        f"## lambda = {null.lambda_val:.6g} ({null.status.value})",
        f"## logl = {null.logl:.6f}",
        f"## vg = {null.vg:.6g}, ve = {null.ve:.6g}",
        f"## pve = {null.pve:.6g}, se(pve) = {null.pve_se:.6g}",
        "##",
    ]


def _outcome_lines(summary: RunSummary) -> list[str]:
    lines = [
        "## Marker Outcomes:",
        f"## n_markers = {summary.n_markers}",
        f"## n_tested = {summary.n_tested}",
        f"## n_skipped = {summary.n_skipped}",
        f"## n_failed = {summary.n_failed}",
        f"## n_not_converged = {summary.n_not_converged}",
    ]
    for reason, count in sorted(summary.skip_reasons.items()):
        kind = "failed" if reason.is_failure else "skipped"
        lines.append(f"## {kind}: {reason.value} = {count}")
    lines.append("##")
    return lines


def write_run_log(
    output_config: OutputConfig,
    params: dict,
    timing: dict,
    command_line: str,
    summary: RunSummary | None = None,
) -> Path:
    """Write a GEMMA-style log file with ## prefixed lines.

    With a RunSummary the log also records the fitted null model(s) and how
    every marker ended: tested, skipped by QC, or failed, broken down by
    skip reason.

    Args:
        output_config: Output configuration specifying directory and prefix.
        params: Run parameters, written under "Summary Statistics".
        timing: Timing information in seconds, keyed by phase.
        command_line: The command line used to invoke the program.
        summary: Completed association run, if any.

    Returns:
        Path to the written log file.

    Example output format:
        ##
        ## relmm Version = 0.1.0
        ## Date = 2024-01-31T10:30:00
        ##
        ## Command Line Input = relmm lmm -bfile data -k data.cXX.txt
        ##
        ## Summary Statistics:
        ## n_total_individuals = 1940
        ## n_analyzed_individuals = 1938
        ##
        ## Null Model (REML):
        ## lambda = 0.84 (converged)
        ## ...
        ## Marker Outcomes:
        ## n_markers = 12226
        ## n_tested = 12001
        ## skipped: monomorphic = 225
        ##
        ## Computation Time:
        ## total time = 1.23 seconds
        ##
    """
    from relmm import __version__

    lines = [
        "##",
        f"## relmm Version = {__version__}",
        f"## Date = {datetime.now().isoformat()}",
        "##",
        f"## Command Line Input = {command_line}",
        "##",
        "## Summary Statistics:",
    ]
    lines += [f"## {key} = {value}" for key, value in params.items()]
    lines.append("##")

    if summary is not None:
        lines += _null_model_lines("Null Model", summary.null_model)
        if summary.null_mle is not None and summary.null_mle is not summary.null_model:
            lines += _null_model_lines("LRT Null Model", summary.null_mle)
        lines += _outcome_lines(summary)

    lines.append("## Computation Time:")
    for key, value in timing.items():
        if isinstance(value, float):
            lines.append(f"## {key} time = {value:.2f} seconds")
        else:
            lines.append(f"## {key} time = {value} seconds")
    lines.append("##")

    output_config.ensure_outdir()
    log_path = output_config.log_path
    log_path.write_text("\n".join(lines) + "\n")
    return log_path


def log_rss_memory(phase: str, checkpoint: str) -> float:
    """Log current RSS memory usage with phase context.

    Uses loguru's bind() so readings can be filtered by phase and checkpoint.

    Returns:
        Current RSS in GB.
    """
    rss_gb = psutil.Process().memory_info().rss / 1e9
    logger.bind(phase=phase, checkpoint=checkpoint).debug(
        f"RSS memory: {rss_gb:.2f}GB (phase={phase}, checkpoint={checkpoint})"
    )
    return rss_gb
