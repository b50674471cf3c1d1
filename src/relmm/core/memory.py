"""Memory estimation and checking for the kinship eigendecomposition.

The O(n^3) eigendecomposition is the only step whose footprint scales with
n^2 several times over (input copy, eigenvectors, LAPACK workspace), so it
gets a pre-flight check that fails fast instead of letting the OOM killer
terminate the process.
"""

from typing import NamedTuple

import psutil
from loguru import logger


def _dsyevd_workspace_gb(n: int) -> float:
    """DSYEVD workspace: LWORK=(1+6N+2N^2) doubles, LIWORK=(3+5N) ints."""
    lwork_bytes = (1 + 6 * n + 2 * n * n) * 8  # float64
    liwork_bytes = (3 + 5 * n) * 4  # int32
    return (lwork_bytes + liwork_bytes) / 1e9


def _dsyevr_workspace_gb(n: int) -> float:
    """DSYEVR workspace: LWORK=26N doubles, LIWORK=10N ints."""
    return (26 * n * 8 + 10 * n * 4) / 1e9


def estimate_eigendecomp_memory(n_samples: int, copy_input: bool = True) -> float:
    """Estimate peak memory (GB) for eigendecomposition of a kinship matrix.

    Peak memory during eigendecomposition with the divide-and-conquer driver:
    - K working copy: n^2 * 8 bytes (skipped when overwriting the input)
    - U (output eigenvectors): n^2 * 8 bytes
    - workspace (DSYEVD O(n^2))

    Args:
        n_samples: Number of samples (individuals).
        copy_input: Whether the decomposition works on a copy of K.

    Returns:
        Estimated peak memory in GB.

    Example:
        >>> round(estimate_eigendecomp_memory(10_000), 1)
        3.2
    """
    matrix_gb = n_samples**2 * 8 / 1e9
    kinship_gb = matrix_gb if copy_input else 0.0
    return kinship_gb + matrix_gb + _dsyevd_workspace_gb(n_samples)


def select_eigendecomp_driver(n_samples: int) -> str:
    """Select LAPACK driver based on available memory.

    dsyevd (divide-and-conquer): O(n^2) workspace, fastest.
    dsyevr (relatively robust representations): O(n) workspace, slower.

    Args:
        n_samples: Number of samples (matrix dimension).

    Returns:
        'evd' if dsyevd workspace fits in available memory, 'evr' otherwise.
    """
    available_gb = psutil.virtual_memory().available / 1e9
    workspace_gb = _dsyevd_workspace_gb(n_samples)
    total_needed = n_samples**2 * 8 / 1e9 + workspace_gb

    if total_needed * 1.1 < available_gb:
        return "evd"
    logger.warning(
        f"dsyevd workspace ({workspace_gb:.1f}GB) too large for "
        f"available memory ({available_gb:.1f}GB), "
        f"falling back to dsyevr (slower but O(n) workspace, "
        f"~{_dsyevr_workspace_gb(n_samples):.2f}GB)"
    )
    return "evr"


def check_memory_available(
    required_gb: float,
    safety_margin: float = 0.1,
    operation: str = "operation",
) -> bool:
    """Check if sufficient memory is available, raise if not.

    Args:
        required_gb: Memory required in GB.
        safety_margin: Additional margin (0.1 = 10%).
        operation: Description for error message.

    Returns:
        True if sufficient memory available.

    Raises:
        MemoryError: If insufficient memory with detailed message.
    """
    available_gb = psutil.virtual_memory().available / 1e9
    required_with_margin = required_gb * (1 + safety_margin)

    if required_with_margin > available_gb:
        raise MemoryError(
            f"Insufficient memory for {operation}. "
            f"Need {required_gb:.1f}GB (+{safety_margin * 100:.0f}% margin = "
            f"{required_with_margin:.1f}GB), but only {available_gb:.1f}GB available."
        )

    return True


class MemorySnapshot(NamedTuple):
    """Snapshot of current memory state. All values in GB."""

    rss_gb: float
    available_gb: float
    total_gb: float
    percent_used: float


def get_memory_snapshot() -> MemorySnapshot:
    """Get current memory usage snapshot."""
    rss = psutil.Process().memory_info().rss
    vm = psutil.virtual_memory()

    return MemorySnapshot(
        rss_gb=rss / 1e9,
        available_gb=vm.available / 1e9,
        total_gb=vm.total / 1e9,
        percent_used=((vm.total - vm.available) / vm.total) * 100,
    )


def log_memory_snapshot(label: str = "", level: str = "DEBUG") -> MemorySnapshot:
    """Log current memory state with optional label.

    Args:
        label: Optional label for this snapshot (e.g., "after_eigendecomp").
        level: Log level ("DEBUG", "INFO", "WARNING").

    Returns:
        MemorySnapshot for chaining/assertions.
    """
    snap = get_memory_snapshot()
    label_str = f" [{label}]" if label else ""
    logger.log(
        level,
        f"Memory{label_str}: RSS={snap.rss_gb:.2f}GB, "
        f"Available={snap.available_gb:.1f}GB/{snap.total_gb:.1f}GB "
        f"({snap.percent_used:.1f}% used)",
    )
    return snap
