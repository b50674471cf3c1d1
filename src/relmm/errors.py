"""Exception and warning taxonomy for relmm.

Fatal errors (DecompositionError, DimensionMismatchError) abort a run before
any marker is processed. Per-marker problems are raised as MarkerSkipped
inside the tester and converted into skip notices, so they never abort the
batch. ConvergenceWarning flags a Newton-Raphson failure that was recovered
by falling back to the grid-search estimate.
"""

from enum import Enum


class SkipReason(str, Enum):
    """Reason code attached to an untested marker."""

    MONOMORPHIC = "monomorphic"
    MISSINGNESS = "missingness"
    LOW_MAF = "low_maf"
    SINGULAR_DESIGN = "singular_design"
    NUMERICAL = "numerical"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        """True for reasons where the test was attempted and failed."""
        return self in _FAILURE_REASONS


_FAILURE_REASONS = frozenset(
    {SkipReason.SINGULAR_DESIGN, SkipReason.NUMERICAL, SkipReason.ERROR}
)


class RelmmError(Exception):
    """Base class for relmm errors."""


class DecompositionError(RelmmError, ValueError):
    """Kinship matrix is malformed (not square, not symmetric, non-finite)."""


class DimensionMismatchError(RelmmError, ValueError):
    """Phenotype, covariate, kinship or genotype row counts disagree."""


class ConvergenceWarning(RuntimeWarning):
    """Newton-Raphson did not converge; the grid-search estimate was used."""


class MarkerSkipped(RelmmError):
    """A single marker cannot be tested.

    Args:
        reason: Reason code reported in the output stream.
        detail: Human-readable explanation.
    """

    def __init__(self, reason: SkipReason, detail: str = "") -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail
