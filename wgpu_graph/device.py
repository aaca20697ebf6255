"""GPU device singleton for wgpu-native compute.

One adapter and device are requested per process and shared by every graph.
Backward kernels bind many storage buffers at once, so the device is
requested with the adapter's full storage-buffer-per-stage limit instead of
the WebGPU default of 8.
"""

import atexit
import logging

import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from wgpu_graph import config
from wgpu_graph.errors import DeviceError

logger = logging.getLogger(__name__)

# ============================================================================
# Device Singleton
# ============================================================================

_device = None
_STORAGE_LIMIT = "max-storage-buffers-per-shader-stage"


def _request_adapter():
    return wgpu.gpu.request_adapter_sync(power_preference=config.POWER_PREFERENCE)


def get_device():
    """Get or create the wgpu device singleton."""
    global _device
    if _device is None:
        try:
            adapter = _request_adapter()
        except Exception as e:
            raise DeviceError(f"Could not acquire a GPU adapter: {e}") from e
        if adapter is None:
            raise DeviceError("Could not acquire a GPU adapter")

        limits = {}
        if _STORAGE_LIMIT in adapter.limits:
            limits[_STORAGE_LIMIT] = adapter.limits[_STORAGE_LIMIT]
        _device = adapter.request_device_sync(required_limits=limits)
        info = adapter.info
        logger.info(
            "Using adapter %s (%s, %s), %s storage buffers per stage",
            info.get("device"), info.get("adapter_type"), info.get("backend_type"),
            limits.get(_STORAGE_LIMIT, "default"),
        )
    return _device


def has_adapter() -> bool:
    """Return True when a compute-capable adapter is available."""
    if _device is not None:
        return True
    try:
        return _request_adapter() is not None
    except Exception as e:
        logger.debug("No adapter: %s", e)
        return False


def _cleanup():
    """Release the device on interpreter exit."""
    global _device
    if _device is not None:
        logger.debug("Destroying wgpu device")
        _device.destroy()
        _device = None


atexit.register(_cleanup)
