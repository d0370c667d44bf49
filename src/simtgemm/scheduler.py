"""
Grid Scheduler.

Covers the output matrix with a 2D grid of thread blocks and dispatches the
blocks onto the device's streaming multiprocessors. Blocks are independent:
no block reads anything another block writes, so any order and any degree
of concurrency gives the same result.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                        GRID (wB/BS × hA/BS)                      │
    │   ┌──────┬──────┬──────┬──────┐                                  │
    │   │(0,0) │(1,0) │(2,0) │ ...  │   ── plan (row-major, reversed,  │
    │   ├──────┼──────┼──────┼──────┤       or seeded shuffle)         │
    │   │(0,1) │(1,1) │(2,1) │ ...  │                                  │
    │   └──────┴──────┴──────┴──────┘                                  │
    │                │                                                 │
    │                ▼                                                 │
    │   ┌────────┐ ┌────────┐ ┌────────┐ ┌────────┐                    │
    │   │  SM 0  │ │  SM 1  │ │  SM 2  │ │  SM 3  │  (thread pool)     │
    │   └────────┘ └────────┘ └────────┘ └────────┘                    │
    └─────────────────────────────────────────────────────────────────┘
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from functools import partial
from typing import Any

import numpy as np

from .config import DeviceConfig, GridOrder
from .errors import ResourceExhaustionError
from .kernel import GemmArgs, TiledMultiplyKernel
from .memory import Dim3, LaunchConfig
from .warp import ThreadBlockSim

logger = logging.getLogger(__name__)


@dataclass
class LaunchStatistics:
    """Counters accumulated over the blocks of one launch."""

    blocks: int = 0
    warps: int = 0
    barriers: int = 0
    global_loads: int = 0
    global_stores: int = 0
    shared_reads: int = 0
    shared_writes: int = 0
    bank_conflicts: int = 0

    def add_block(self, block_stats: dict[str, Any]) -> None:
        """Fold one block's statistics into the totals."""
        self.blocks += 1
        for f in fields(self):
            if f.name != "blocks":
                setattr(self, f.name, getattr(self, f.name) + block_stats[f.name])

    def get_statistics(self) -> dict[str, Any]:
        """Totals as a dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def launch_geometry(width_b: int, height_a: int, block_size: int) -> LaunchConfig:
    """
    Grid and block geometry covering C (height_a × width_b) with tiles.

    Args:
        width_b: Width of B (and C)
        height_a: Height of A (and C)
        block_size: Tile edge

    Returns:
        LaunchConfig with grid (wB/BS, hA/BS) and block (BS, BS)
    """
    block = Dim3(block_size, block_size)
    grid = Dim3(width_b // block.x, height_a // block.y)
    return LaunchConfig(grid=grid, block=block)


class GridScheduler:
    """
    Assigns output tiles to thread blocks and runs them.

    Blocks run one after another when the device has a single SM (or no
    executor is supplied), otherwise on the executor's worker threads.
    """

    def __init__(self, config: DeviceConfig, executor: ThreadPoolExecutor | None = None):
        """
        Initialize grid scheduler.

        Args:
            config: Device configuration
            executor: Worker pool standing in for the multiprocessors
        """
        self.config = config
        self.executor = executor
        self._lock = threading.Lock()
        self.total_launches = 0

    def check_resources(self, kernel: TiledMultiplyKernel, launch: LaunchConfig) -> None:
        """
        Verify that one block of the launch fits the device.

        Raises:
            ResourceExhaustionError: If threads, shared memory or registers
                per block exceed the device limits
        """
        cfg = self.config
        threads = launch.threads_per_block
        if threads > cfg.max_threads_per_block:
            raise ResourceExhaustionError(
                f"{kernel.name}: {threads} threads per block exceed the limit of "
                f"{cfg.max_threads_per_block} on {cfg.name}"
            )
        if kernel.shared_memory_bytes > cfg.shared_memory_bytes:
            raise ResourceExhaustionError(
                f"{kernel.name}: {kernel.shared_memory_bytes} bytes of shared memory per "
                f"block exceed the {cfg.shared_memory_bytes} bytes available on {cfg.name}"
            )
        registers = threads * kernel.registers_per_thread
        if registers > cfg.registers_per_block:
            raise ResourceExhaustionError(
                f"{kernel.name}: {registers} registers per block exceed the "
                f"{cfg.registers_per_block} available on {cfg.name}"
            )

    def plan(self, grid: Dim3) -> list[Dim3]:
        """
        Order the blocks of a grid for dispatch.

        Args:
            grid: Grid extent

        Returns:
            Block indices in dispatch order
        """
        blocks = [Dim3(x, y) for y in range(grid.y) for x in range(grid.x)]
        if self.config.grid_order == GridOrder.REVERSED:
            blocks.reverse()
        elif self.config.grid_order == GridOrder.SHUFFLED:
            order = np.random.default_rng(self.config.seed).permutation(len(blocks))
            blocks = [blocks[i] for i in order]
        return blocks

    def _run_block(
        self,
        kernel: TiledMultiplyKernel,
        launch: LaunchConfig,
        args: GemmArgs,
        stats: LaunchStatistics,
        block_idx: Dim3,
    ) -> None:
        block = ThreadBlockSim(
            config=self.config,
            block_idx=block_idx,
            block_dim=launch.block,
            block_size=kernel.block_size,
            seed=self.config.seed + block_idx.y * launch.grid.x + block_idx.x,
        )
        block.run(partial(kernel.program, args=args))
        block_stats = block.get_statistics()
        with self._lock:
            stats.add_block(block_stats)

    def dispatch(
        self, kernel: TiledMultiplyKernel, launch: LaunchConfig, args: GemmArgs
    ) -> LaunchStatistics:
        """
        Run every block of a launch to completion.

        Args:
            kernel: Specialized kernel
            launch: Grid and block geometry
            args: Kernel arguments

        Returns:
            Statistics summed over all blocks

        Raises:
            ResourceExhaustionError: If a block does not fit the device
            LaunchError: If a block fails while running
        """
        self.check_resources(kernel, launch)
        blocks = self.plan(launch.grid)
        stats = LaunchStatistics()
        run_block = partial(self._run_block, kernel, launch, args, stats)

        logger.debug(
            "dispatch %s grid=%s block=%s on %d SM(s)",
            kernel.name, launch.grid, launch.block, self.config.num_sms,
        )
        if self.executor is None or self.config.num_sms == 1:
            for block_idx in blocks:
                run_block(block_idx)
        else:
            # Consuming the iterator re-raises the first block failure
            for _ in self.executor.map(run_block, blocks):
                pass

        self.total_launches += 1
        return stats

    def get_statistics(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "total_launches": self.total_launches,
            "num_sms": self.config.num_sms,
            "grid_order": self.config.grid_order.name,
        }
