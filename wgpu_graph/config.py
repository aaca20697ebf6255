"""
Compile-time constants and environment-driven settings.

Environment variables:
    WGPU_GRAPH_POWER_PREFERENCE  adapter preference ("high-performance" or "low-power")
    WGPU_GRAPH_LOG_LEVEL         attach a stream handler to the package logger at this level
    WGPU_GRAPH_DUMP_SHADERS      log every generated kernel source at INFO when truthy
"""

import os
import logging
from typing import Optional

# ============================================================================
# Kernel Constants
# ============================================================================

# Every generated kernel uses this workgroup width; dispatch = ceil(n / 64)
WORKGROUP_SIZE = 64

# Normalization layers add this to the variance before the square root
NORM_EPSILON = 1e-4

# Probabilities are clamped to [PROB_EPSILON, 1 - PROB_EPSILON] before log/div
PROB_EPSILON = 1e-7

DEFAULT_LEAKY_ALPHA = 0.01

# Buffer the root kernel writes the forward result into
OUTPUT_BUFFER = "graph_output"

# Gathers the output and every parameter gradient edge for one readback per run
READBACK_BUFFER = "graph_readback"

# ============================================================================
# Environment Settings
# ============================================================================

POWER_PREFERENCE = os.environ.get("WGPU_GRAPH_POWER_PREFERENCE", "high-performance")
LOG_LEVEL = os.environ.get("WGPU_GRAPH_LOG_LEVEL")
DUMP_SHADERS = os.environ.get("WGPU_GRAPH_DUMP_SHADERS", "").lower() in ("1", "true", "yes")

# Name of the stream handler configure_logging() installs
HANDLER_NAME = "wgpu_graph"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a stream handler to the ``wgpu_graph`` logger.

    Args:
        level: Level name such as "DEBUG". Defaults to WGPU_GRAPH_LOG_LEVEL,
            then "INFO".

    Returns:
        The package logger.
    """
    logger = logging.getLogger("wgpu_graph")
    level = (level or LOG_LEVEL or "INFO").upper()
    logger.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) and h.get_name() == HANDLER_NAME
               for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s"))
        logger.addHandler(handler)
    return logger
