"""
Device and Benchmark Configuration.

Configuration dataclasses for the simulated SIMT device that hosts the tiled
matrix multiply, and for the benchmark that drives it.

Resource Model:
    A thread block (group) is admitted only if it fits the device:

        threads per block      = BLOCK_SIZE²           <= max_threads_per_block
        shared bytes per block = 2 × BLOCK_SIZE² × 4   <= shared_memory_kb × 1024
        registers per block    = threads × regs/thread <= registers_per_block

    Blocks that do not fit fail the launch before any work executes.
"""

from dataclasses import dataclass
from enum import IntEnum, auto

SUPPORTED_BLOCK_SIZES = (16, 32)
"""Tile sizes the kernel is instantiated for."""


class SchedulingPolicy(IntEnum):
    """Warp scheduling policy inside a thread block."""

    ROUND_ROBIN = 0
    GREEDY_THEN_OLDEST = auto()  # GTO
    RANDOM = auto()  # Seeded random interleaving


class GridOrder(IntEnum):
    """Order in which the grid scheduler dispatches thread blocks."""

    ROW_MAJOR = 0
    REVERSED = auto()
    SHUFFLED = auto()  # Seeded permutation


class TileMapping(IntEnum):
    """Thread-to-tile-cell mapping used by the tiled kernel."""

    REFERENCE = 0  # As[tx][ty] / Bs[tx][ty], the mapping of the CUDA sample
    CANONICAL = auto()  # As[ty][tx] / Bs[ty][tx], textbook row/column blocking


@dataclass
class DeviceConfig:
    """
    Configuration for the simulated SIMT device.

    Models the parts of a GPU that matter to a shared-memory tiled GEMM:
    - Warps of lock-step lanes, scheduled inside each thread block
    - A bounded pool of streaming multiprocessors running blocks
    - Per-block shared memory (banked) and register budgets
    - A finite global memory for device allocations
    """

    name: str = "simt-default"
    """Human-readable device name."""

    # =========================================================================
    # Execution Resources
    # =========================================================================

    warp_size: int = 32
    """Number of threads per warp (lock-step execution width)."""

    num_sms: int = 4
    """Number of streaming multiprocessors (concurrent thread blocks)."""

    max_threads_per_block: int = 1024
    """Maximum threads in one thread block."""

    registers_per_block: int = 65536
    """32-bit registers available to one thread block."""

    # =========================================================================
    # Memory
    # =========================================================================

    shared_memory_kb: int = 48
    """Shared memory available to one thread block in KB."""

    shared_memory_banks: int = 32
    """Number of shared memory banks (4-byte words interleaved)."""

    global_memory_mb: int = 256
    """Device (global) memory capacity in MB."""

    # =========================================================================
    # Simulation Behavior
    # =========================================================================

    warp_policy: SchedulingPolicy = SchedulingPolicy.ROUND_ROBIN
    """How the block scheduler picks the next ready warp."""

    grid_order: GridOrder = GridOrder.ROW_MAJOR
    """Order in which blocks are handed to the multiprocessors."""

    seed: int = 0
    """Seed for the RANDOM warp policy and SHUFFLED grid order."""

    racecheck: bool = False
    """Track shared memory accesses per barrier interval and fail on races."""

    track_bank_conflicts: bool = True
    """Count shared memory bank-conflict replays."""

    # =========================================================================
    # Derived Properties
    # =========================================================================

    @property
    def shared_memory_bytes(self) -> int:
        """Shared memory per block in bytes."""
        return self.shared_memory_kb * 1024

    @property
    def global_memory_bytes(self) -> int:
        """Global memory capacity in bytes."""
        return self.global_memory_mb * 1024 * 1024

    def __post_init__(self):
        """Validate configuration parameters."""
        assert self.warp_size > 0, "warp_size must be positive"
        assert self.num_sms > 0, "num_sms must be positive"
        assert self.max_threads_per_block > 0, "max_threads_per_block must be positive"
        assert self.registers_per_block > 0, "registers_per_block must be positive"
        assert self.shared_memory_kb > 0, "shared_memory_kb must be positive"
        assert self.shared_memory_banks > 0, "shared_memory_banks must be positive"
        assert self.global_memory_mb > 0, "global_memory_mb must be positive"


@dataclass
class MatrixMulConfig:
    """
    Configuration for the matrix multiply benchmark.

    The operand constants make the expected result analytically known:
    every element of C equals A.width × val_b when val_a is 1.0.
    """

    block_size: int = 32
    """Tile edge (and thread block edge); one of SUPPORTED_BLOCK_SIZES."""

    iterations: int = 300
    """Number of timed kernel invocations after the warm-up."""

    val_a: float = 1.0
    """Constant fill value for matrix A."""

    val_b: float = 0.01
    """Constant fill value for matrix B."""

    epsilon: float = 1e-6
    """Relative error tolerance of the result check."""

    mapping: TileMapping = TileMapping.REFERENCE
    """Thread-to-tile-cell mapping of the kernel."""

    def __post_init__(self):
        """Validate configuration parameters."""
        assert self.block_size in SUPPORTED_BLOCK_SIZES, (
            f"block_size must be one of {SUPPORTED_BLOCK_SIZES}"
        )
        assert self.iterations > 0, "iterations must be positive"
        assert self.epsilon > 0, "epsilon must be positive"


# Pre-defined device configurations
DEFAULT_DEVICE_CONFIG = DeviceConfig()
"""Default device: 48KB shared memory, 1024 threads per block."""

SMALL_DEVICE_CONFIG = DeviceConfig(
    name="simt-small",
    num_sms=2,
    max_threads_per_block=256,
    registers_per_block=16384,
    shared_memory_kb=16,
    global_memory_mb=64,
)
"""Small device: only 16×16 blocks fit."""

LARGE_DEVICE_CONFIG = DeviceConfig(
    name="simt-large",
    num_sms=8,
    registers_per_block=65536,
    shared_memory_kb=100,
    global_memory_mb=1024,
)
"""Large device with more multiprocessors and shared memory."""

DEVICE_CONFIGS = (DEFAULT_DEVICE_CONFIG, SMALL_DEVICE_CONFIG, LARGE_DEVICE_CONFIG)
"""Devices addressable by index (``-device=<n>``)."""


def get_device_config(device_id: int) -> DeviceConfig:
    """
    Look up a device configuration by index.

    Args:
        device_id: Index into DEVICE_CONFIGS

    Returns:
        The device configuration

    Raises:
        ValueError: If no device has that index
    """
    if device_id < 0 or device_id >= len(DEVICE_CONFIGS):
        raise ValueError(
            f"invalid device {device_id}, expected 0..{len(DEVICE_CONFIGS) - 1}"
        )
    return DEVICE_CONFIGS[device_id]
