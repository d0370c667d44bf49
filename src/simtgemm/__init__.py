"""
Simtgemm - A tiled shared-memory matrix multiply on a simulated SIMT device.

This package provides a behavioral GPU execution model (warps, thread
blocks, barriers, shared tile buffers, streams) running the classic
shared-memory tiled GEMM, with Amaranth HDL models of the barrier and
shared tile buffer.
"""

from .config import (
    DEFAULT_DEVICE_CONFIG,
    DeviceConfig,
    GridOrder,
    MatrixMulConfig,
    SchedulingPolicy,
    TileMapping,
)
from .errors import SimtGemmError
from .host import HostOrchestrator
from .runtime import DeviceContext

__version__ = "0.1.0"
__all__ = [
    "DeviceConfig",
    "MatrixMulConfig",
    "DEFAULT_DEVICE_CONFIG",
    "SchedulingPolicy",
    "GridOrder",
    "TileMapping",
    "DeviceContext",
    "HostOrchestrator",
    "SimtGemmError",
    "__version__",
]
