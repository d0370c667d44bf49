"""
Error taxonomy for the tiled matrix multiply engine.

All fatal conditions derive from SimtGemmError and are raised as close to
their source as possible. A result that misses the tolerance is not an
exception: see validate.CorrectnessViolation.
"""


class SimtGemmError(Exception):
    """Base class for all engine errors."""


class AllocationError(SimtGemmError, MemoryError):
    """Host or device memory could not be obtained."""


class DimensionError(SimtGemmError, ValueError):
    """Matrix dimensions are unusable."""


class DimensionMismatchError(DimensionError):
    """Inner dimensions of A and B disagree (A.width != B.height)."""

    def __init__(self, width_a: int, height_b: int):
        self.width_a = width_a
        self.height_b = height_b
        super().__init__(
            f"outer matrix dimensions must be equal. ({width_a} != {height_b})"
        )


class TileAlignmentError(DimensionError):
    """A dimension is not a multiple of the tile size."""


class ResourceExhaustionError(SimtGemmError):
    """The block geometry exceeds the device's per-block resources."""


class TransferError(SimtGemmError):
    """A host/device copy failed."""

    def __init__(self, operation: str, status: str):
        self.operation = operation
        self.status = status
        super().__init__(f"{operation} failed: {status}")


class LaunchError(SimtGemmError):
    """A kernel launch failed at the runtime boundary."""


class SharedMemoryRaceError(LaunchError):
    """Two warps touched the same shared cell between barriers."""

    def __init__(self, hazard: str, tile: str, cell: tuple[int, int], warps: tuple[int, int]):
        self.hazard = hazard
        self.tile = tile
        self.cell = cell
        self.warps = warps
        super().__init__(
            f"{hazard} hazard on shared tile {tile}{list(cell)} "
            f"between warp {warps[0]} and warp {warps[1]}"
        )


class UnsupportedBlockSizeError(SimtGemmError, ValueError):
    """No kernel instance exists for the requested tile size."""
