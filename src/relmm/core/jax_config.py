"""JAX configuration utilities for relmm.

JAX evaluates the vectorised likelihood grid and the F / chi-squared
reference distributions. Both need 64-bit precision; default JAX uses
32-bit, so configure_jax() enables x64 before any JAX computation runs.
"""

from __future__ import annotations

from typing import Any

import jax
from loguru import logger


def configure_jax(enable_x64: bool = True, platform: str | None = None) -> None:
    """Configure JAX for relmm computations.

    Args:
        enable_x64: Enable 64-bit floating point precision. Defaults to True.
        platform: Optional platform name ("cpu", "gpu"). If None, JAX
            auto-selects the best available platform.

    Example:
        >>> configure_jax()
        >>> configure_jax(platform="cpu")
    """
    if enable_x64:
        jax.config.update("jax_enable_x64", True)

    if platform is not None:
        jax.config.update("jax_platform_name", platform)
        logger.debug(f"JAX platform set to: {platform}")

    info = get_jax_info()
    logger.debug(
        f"JAX configured: version={info['version']}, "
        f"backend={info['backend']}, x64={info['x64_enabled']}"
    )


def get_jax_info() -> dict[str, Any]:
    """Get information about the current JAX configuration.

    Returns:
        Dictionary with keys version, backend, devices, x64_enabled.
    """
    return {
        "version": jax.__version__,
        "backend": jax.default_backend(),
        "devices": [str(d) for d in jax.devices()],
        "x64_enabled": jax.config.jax_enable_x64,
    }
