"""Core infrastructure for relmm.

- config: Configuration dataclasses
- jax_config: JAX configuration
- marker_filter: Per-marker QC statistics and filters
- memory: Memory estimation for the eigendecomposition
- progress: Progress bars
- threading: BLAS and worker thread control
"""

from relmm.core.config import (
    LMM_MODES,
    AssociationConfig,
    OptimizerConfig,
    OutputConfig,
    TestType,
)
from relmm.core.jax_config import configure_jax, get_jax_info
from relmm.core.memory import (
    MemorySnapshot,
    check_memory_available,
    get_memory_snapshot,
    log_memory_snapshot,
)

__all__ = [
    "LMM_MODES",
    "AssociationConfig",
    "MemorySnapshot",
    "OptimizerConfig",
    "OutputConfig",
    "TestType",
    "check_memory_available",
    "configure_jax",
    "get_jax_info",
    "get_memory_snapshot",
    "log_memory_snapshot",
]
