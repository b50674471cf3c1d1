"""BLAS and worker thread management.

relmm has two sources of parallelism that must not oversubscribe the CPU:
- BLAS threads used by numpy/scipy (eigendecomposition, U^T x rotations),
  controlled by threadpool_limits.
- The per-marker worker pool. While it runs with more than one worker, each
  worker's BLAS calls are pinned to a single thread.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager

import psutil
from loguru import logger
from threadpoolctl import threadpool_limits


def _env_thread_count(var: str, max_threads: int) -> int | None:
    value = os.environ.get(var)
    if value is None:
        return None
    try:
        n = int(value)
    except ValueError:
        logger.warning(
            f"{var}={value!r} is not a valid integer, "
            "falling back to physical core count"
        )
        return None
    return max(1, min(n, max_threads))


def get_blas_thread_count() -> int:
    """Determine the number of BLAS threads to use for numpy operations.

    Priority:
    1. RELMM_BLAS_THREADS env var (explicit override)
    2. Physical core count via psutil (avoids hyperthreading oversubscription)

    Returns:
        Positive integer thread count, capped at os.cpu_count().
    """
    max_threads = os.cpu_count() or 64

    n = _env_thread_count("RELMM_BLAS_THREADS", max_threads)
    if n is not None:
        logger.debug(f"BLAS threads from RELMM_BLAS_THREADS: {n}")
        return n

    n = psutil.cpu_count(logical=False) or max_threads
    return max(1, min(n, max_threads))


def resolve_worker_count(n_workers: int | None) -> int:
    """Resolve the per-marker worker pool size.

    Args:
        n_workers: Requested worker count. None or 0 means one worker per
            physical core.

    Returns:
        Positive worker count, capped at os.cpu_count().
    """
    max_threads = os.cpu_count() or 64
    if not n_workers:
        return max(1, min(psutil.cpu_count(logical=False) or 1, max_threads))
    return max(1, min(n_workers, max_threads))


@contextmanager
def blas_threads(n_threads: int | None = None) -> Generator[None, None, None]:
    """Context manager for scoped BLAS thread control.

    Args:
        n_threads: Number of BLAS threads. None uses get_blas_thread_count().

    Example:
        >>> with blas_threads(1):
        ...     Utx = UT @ x
    """
    if n_threads is None:
        n_threads = get_blas_thread_count()

    with threadpool_limits(limits=n_threads, user_api="blas"):
        yield
