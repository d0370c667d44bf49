"""
Warp Execution for one SIMT thread block.

A thread block of BS × BS threads is split into warps of ``warp_size``
consecutive thread IDs (tid = ty * BS + tx). The lanes of a warp execute in
lock step, so a warp's program is written once over NumPy lane vectors. Each
warp runs as a generator that yields SyncOp.BARRIER at __syncthreads(); the
block scheduler interleaves warps and only lets them past a barrier once
every warp has arrived.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                     THREAD BLOCK (group)                         │
    │                                                                  │
    │  ┌───────────────────────────────────────────────────────────┐  │
    │  │                    WARP TABLE                              │  │
    │  │  ┌─────┬─────┬─────┬─────┬─────┬─────┬─────┬─────┐       │  │
    │  │  │ W0  │ W1  │ W2  │ W3  │ W4  │ W5  │ W6  │ W7  │       │  │
    │  │  │READY│BAR  │READY│DONE │BAR  │READY│BAR  │READY│       │  │
    │  │  └──┬──┴──┬──┴──┬──┴──┬──┴──┬──┴──┬──┴──┬──┴──┬──┘       │  │
    │  └─────┼─────┼─────┼─────┼─────┼─────┼─────┼─────┼───────────┘  │
    │        └─────┴─────┴─────┴──┬──┴─────┴─────┴─────┘              │
    │                             │                                    │
    │        ┌────────────────────┴─────────────────────┐             │
    │        │  ISSUE LOGIC (Round-Robin / GTO / Random) │             │
    │        └────────────────────┬─────────────────────┘             │
    │                             │                                    │
    │     ┌───────────────────────┼───────────────────────┐           │
    │     ▼                       ▼                       ▼           │
    │  SHARED TILE BUFFER     BARRIER UNIT          GLOBAL MEMORY      │
    └─────────────────────────────────────────────────────────────────┘
"""

from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from enum import IntEnum, auto
from typing import Any

import numpy as np

from .barrier import BarrierUnitSim
from .config import DeviceConfig, SchedulingPolicy
from .errors import LaunchError
from .memory import DeviceBuffer, Dim3
from .shared_tile import SharedTileBufferSim


class WarpState(IntEnum):
    """State of a warp in the block scheduler."""

    READY = 0  # Ready to issue
    STALLED_BARRIER = auto()  # Waiting at __syncthreads()
    DONE = auto()  # Program finished


class SyncOp(IntEnum):
    """Operations a warp program yields to the block scheduler."""

    BARRIER = 0  # __syncthreads()


@dataclass
class WarpContext:
    """
    Execution context of one warp.

    Lane vectors ``tx`` and ``ty`` hold the thread coordinates of the lanes;
    everything a kernel computes per thread is a vector over these lanes.
    """

    warp_id: int
    block_idx: Dim3
    block_dim: Dim3
    tid: np.ndarray
    shared: SharedTileBufferSim
    state: WarpState = WarpState.READY

    # Statistics
    global_loads: int = 0
    global_stores: int = 0
    barriers_passed: int = 0

    @property
    def tx(self) -> np.ndarray:
        """threadIdx.x of each lane."""
        return self.tid % self.block_dim.x

    @property
    def ty(self) -> np.ndarray:
        """threadIdx.y of each lane."""
        return self.tid // self.block_dim.x

    @property
    def lanes(self) -> int:
        """Number of active lanes."""
        return int(self.tid.size)

    def load_global(self, buffer: DeviceBuffer, indices: np.ndarray) -> np.ndarray:
        """Warp-wide gather from global memory."""
        self.global_loads += int(np.size(indices))
        return buffer.gather(indices)

    def store_global(self, buffer: DeviceBuffer, indices: np.ndarray, values: np.ndarray) -> None:
        """Warp-wide scatter to global memory."""
        self.global_stores += int(np.size(indices))
        buffer.scatter(indices, values)


WarpProgram = Callable[[WarpContext], Generator[SyncOp, None, None]]
"""A kernel body: called once per warp, yields at each barrier."""


@dataclass
class ThreadBlockSim:
    """
    Behavioral simulation of one thread block (cooperating group).

    Owns the block's shared tile buffer and barrier unit for its lifetime
    and runs all of its warps to completion.
    """

    config: DeviceConfig
    block_idx: Dim3
    block_dim: Dim3
    block_size: int
    seed: int = 0

    warps: list[WarpContext] = field(default_factory=list)
    shared: SharedTileBufferSim = field(init=False)
    barrier_unit: BarrierUnitSim = field(init=False)

    # Scheduler state
    last_issued: int = -1
    issue_count: int = 0

    def __post_init__(self) -> None:
        """Create shared memory and split the block into warps."""
        self.shared = SharedTileBufferSim(
            block_size=self.block_size,
            num_banks=self.config.shared_memory_banks,
            racecheck=self.config.racecheck,
            track_bank_conflicts=self.config.track_bank_conflicts,
        )
        threads = self.block_dim.volume
        warp_size = self.config.warp_size
        self.warps = [
            WarpContext(
                warp_id=w,
                block_idx=self.block_idx,
                block_dim=self.block_dim,
                tid=np.arange(start, min(start + warp_size, threads)),
                shared=self.shared,
            )
            for w, start in enumerate(range(0, threads, warp_size))
        ]
        self.barrier_unit = BarrierUnitSim(expected_warps=len(self.warps))
        self._rng = np.random.default_rng(self.seed)

    def _select(self, ready: list[WarpContext]) -> WarpContext:
        """Pick the next warp to issue according to the scheduling policy."""
        policy = self.config.warp_policy
        if policy == SchedulingPolicy.GREEDY_THEN_OLDEST:
            for warp in ready:
                if warp.warp_id == self.last_issued:
                    return warp
            return ready[0]
        if policy == SchedulingPolicy.RANDOM:
            return ready[int(self._rng.integers(len(ready)))]
        # Round-robin: first ready warp after the last one issued
        for warp in ready:
            if warp.warp_id > self.last_issued:
                return warp
        return ready[0]

    def _release(self) -> None:
        for warp_id in self.barrier_unit.release():
            warp = self.warps[warp_id]
            warp.state = WarpState.READY
            warp.barriers_passed += 1
        self.shared.new_epoch()

    def run(self, program: WarpProgram) -> None:
        """
        Run every warp of the block to completion.

        Args:
            program: Kernel body, instantiated once per warp

        Raises:
            LaunchError: If warps wait at a barrier that can never complete
            SharedMemoryRaceError: If race checking is enabled and warps
                conflict between barriers
        """
        streams = {warp.warp_id: program(warp) for warp in self.warps}

        while True:
            ready = [w for w in self.warps if w.state == WarpState.READY]
            if not ready:
                if all(w.state == WarpState.DONE for w in self.warps):
                    return
                waiting = self.barrier_unit.waiting_warps()
                raise LaunchError(
                    f"block {self.block_idx}: barrier deadlock, warps {waiting} wait "
                    f"for warps that already exited"
                )

            warp = self._select(ready)
            self.last_issued = warp.warp_id
            self.issue_count += 1

            try:
                op = next(streams[warp.warp_id])
            except StopIteration:
                warp.state = WarpState.DONE
                continue

            if op != SyncOp.BARRIER:
                raise LaunchError(f"warp {warp.warp_id} yielded unknown operation {op!r}")
            warp.state = WarpState.STALLED_BARRIER
            if self.barrier_unit.arrive(warp.warp_id):
                self._release()

    def get_statistics(self) -> dict[str, Any]:
        """Get block execution statistics."""
        shared_stats = self.shared.get_statistics()
        return {
            "warps": len(self.warps),
            "issues": self.issue_count,
            "barriers": self.barrier_unit.total_barriers_executed,
            "global_loads": sum(w.global_loads for w in self.warps),
            "global_stores": sum(w.global_stores for w in self.warps),
            "shared_reads": shared_stats["total_reads"],
            "shared_writes": shared_stats["total_writes"],
            "bank_conflicts": shared_stats["total_bank_conflicts"],
        }
