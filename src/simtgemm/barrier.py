"""
Barrier Synchronization Unit for a SIMT thread block.

Implements __syncthreads() for the warps of one thread block. Every warp of
the block must arrive before any of them proceeds past the barrier.

Architecture:
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    BARRIER SYNCHRONIZATION UNIT                      │
    │                                                                      │
    │   arrive ──► ┌──────────────────────────────┐                        │
    │              │ ARRIVAL MASK [W7 .. W0]       │  0b00101101 (4/8)     │
    │              └──────────────┬───────────────┘                        │
    │                             │ popcount                               │
    │                             ▼                                        │
    │                   count == expected ? ──► release, released_mask     │
    │                                           mask cleared               │
    │                                                                      │
    │  Block scheduler:                                                    │
    │    1. Warp yields at __syncthreads() and becomes STALLED_BARRIER     │
    │    2. Its arrival is recorded in the mask                            │
    │    3. The last arrival completes the barrier                         │
    │    4. Every stalled warp is made READY again                         │
    └─────────────────────────────────────────────────────────────────────┘

The tiled kernel passes two barriers per tile iteration; the same mask is
reused for all of them.
"""

from dataclasses import dataclass
from typing import Any

from amaranth import Module, Signal, unsigned
from amaranth.lib.wiring import Component, In, Out

from .errors import LaunchError


class BarrierUnit(Component):
    """
    RTL barrier for one thread block.

    Each cycle, any subset of warps may assert its bit in ``arrive``. Arrivals
    accumulate in an internal mask; on the cycle the population count reaches
    ``expected`` the unit pulses ``release`` for one cycle, reports the full
    mask on ``released_mask`` and clears itself for the next barrier.

    Ports:
        arrive: Bitmask of warps arriving this cycle
        expected: Number of warps that must arrive
        arrived: Current arrival mask
        release: One-cycle pulse when the barrier completes
        released_mask: Warps released by the last completion
    """

    def __init__(self, num_warps: int = 32):
        """
        Initialize barrier unit.

        Args:
            num_warps: Maximum number of warps in a block
        """
        self.num_warps = num_warps
        count_bits = num_warps.bit_length()

        super().__init__(
            {
                "arrive": In(unsigned(num_warps)),
                "expected": In(unsigned(count_bits)),
                "arrived": Out(unsigned(num_warps)),
                "release": Out(1),
                "released_mask": Out(unsigned(num_warps)),
            }
        )

    def elaborate(self, _platform):
        m = Module()

        mask = Signal(unsigned(self.num_warps))
        next_mask = Signal(unsigned(self.num_warps))
        count = Signal(unsigned(self.num_warps.bit_length()))

        m.d.comb += [
            next_mask.eq(mask | self.arrive),
            count.eq(sum(next_mask[i] for i in range(self.num_warps))),
            self.arrived.eq(mask),
        ]

        with m.If(self.arrive.any() & (self.expected != 0) & (count >= self.expected)):
            m.d.sync += [
                mask.eq(0),
                self.release.eq(1),
                self.released_mask.eq(next_mask),
            ]
        with m.Else():
            m.d.sync += [
                mask.eq(next_mask),
                self.release.eq(0),
            ]

        return m


# =============================================================================
# Simulation Model
# =============================================================================


@dataclass
class BarrierUnitSim:
    """
    Behavioral model of the block-wide barrier.

    Follows BarrierUnit: arrivals set bits in a warp mask, and the arrival
    that brings the count to ``expected_warps`` completes the barrier. The
    block scheduler then calls release(), which clears the mask for the
    next __syncthreads().
    """

    expected_warps: int
    arrived_mask: int = 0
    complete: bool = False

    # Statistics
    total_barriers_executed: int = 0
    total_warp_arrivals: int = 0

    @property
    def arrived_count(self) -> int:
        """Number of warps waiting at the barrier."""
        return bin(self.arrived_mask).count("1")

    def arrive(self, warp_id: int) -> bool:
        """
        Record a warp reaching the barrier.

        Args:
            warp_id: Arriving warp

        Returns:
            True if this arrival completed the barrier

        Raises:
            LaunchError: If the warp is not part of the block
        """
        if not 0 <= warp_id < self.expected_warps:
            raise LaunchError(
                f"warp {warp_id} arrived at a barrier of {self.expected_warps} warps"
            )
        self.total_warp_arrivals += 1
        self.arrived_mask |= 1 << warp_id

        if not self.complete and self.arrived_count == self.expected_warps:
            self.complete = True
            self.total_barriers_executed += 1
            return True
        return False

    def waiting_warps(self) -> list[int]:
        """Warps that have arrived and not yet been released, ascending."""
        return [w for w in range(self.expected_warps) if (self.arrived_mask >> w) & 1]

    def release(self) -> list[int]:
        """
        Release a completed barrier.

        Returns:
            Warp IDs to resume (empty if the barrier is not complete)
        """
        if not self.complete:
            return []
        released = self.waiting_warps()
        self.arrived_mask = 0
        self.complete = False
        return released

    def get_statistics(self) -> dict[str, Any]:
        """Get barrier statistics."""
        return {
            "total_barriers_executed": self.total_barriers_executed,
            "total_warp_arrivals": self.total_warp_arrivals,
            "waiting_warps": self.arrived_count,
        }
