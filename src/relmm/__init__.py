"""relmm: linear mixed model association for genome-wide studies.

Tests each genetic marker for association with a quantitative phenotype
while accounting for relatedness through a kinship matrix. The kinship
matrix is eigendecomposed once; the variance ratio is estimated by REML or
ML, and each marker gets a Wald, likelihood-ratio and/or Score test.

Example:
    >>> from relmm import AssociationConfig, iter_matrix_markers, run_association
    >>> summary = run_association(iter_matrix_markers(G), y, K)
    >>> print(summary.n_tested, summary.null_model.pve)
"""

import sys
from importlib.metadata import version

from loguru import logger

__version__ = version("relmm")

# Configure loguru with sensible defaults on import
# Users can override by calling logger.remove()/add() or setup_logging()
logger.remove()
logger.add(
    sys.stdout,
    level="INFO",
    format="{time:HH:mm:ss} | <level>{level: <8}</level> | {message}",
    colorize=True,
)

from relmm.core.config import (  # noqa: E402
    AssociationConfig,
    OptimizerConfig,
    OutputConfig,
    TestType,
)
from relmm.io.markers import Marker, iter_matrix_markers  # noqa: E402
from relmm.lmm.runner import RunSummary, run_association  # noqa: E402

__all__ = [
    "AssociationConfig",
    "Marker",
    "OptimizerConfig",
    "OutputConfig",
    "RunSummary",
    "TestType",
    "__version__",
    "iter_matrix_markers",
    "run_association",
]
