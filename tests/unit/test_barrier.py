"""
Unit tests for the barrier synchronization unit.

These tests verify:
1. Arrival tracking and completion in the simulation model
2. Release and reuse across successive barriers
3. RTL arrival accumulation and the release pulse
"""

import pytest
from amaranth.sim import Simulator

from simtgemm.barrier import BarrierUnit, BarrierUnitSim
from simtgemm.errors import LaunchError


class TestBarrierUnitSim:
    """Test the barrier simulation model."""

    @pytest.fixture
    def unit(self):
        return BarrierUnitSim(expected_warps=4)

    def test_arrivals_accumulate(self, unit):
        for warp_id in (3, 1, 0):
            assert not unit.arrive(warp_id)
        assert unit.arrived_count == 3
        assert unit.waiting_warps() == [0, 1, 3]
        assert unit.release() == []

    def test_last_arrival_completes(self, unit):
        for warp_id in (3, 1, 0):
            unit.arrive(warp_id)
        assert unit.arrive(2)
        assert unit.complete
        assert unit.release() == [0, 1, 2, 3]
        assert not unit.complete
        assert unit.waiting_warps() == []

    def test_repeated_arrival_counts_once(self, unit):
        """A warp arriving twice does not complete the barrier for others."""
        unit.arrive(0)
        assert not unit.arrive(0)
        assert unit.arrived_count == 1

    def test_reused_across_barriers(self, unit):
        for _ in range(3):
            for warp_id in range(4):
                unit.arrive(warp_id)
            assert unit.release() == [0, 1, 2, 3]

        stats = unit.get_statistics()
        assert stats["total_barriers_executed"] == 3
        assert stats["total_warp_arrivals"] == 12
        assert stats["waiting_warps"] == 0

    @pytest.mark.parametrize("warp_id", [-1, 4])
    def test_warp_outside_block(self, unit, warp_id):
        with pytest.raises(LaunchError, match="barrier of 4 warps"):
            unit.arrive(warp_id)


class TestBarrierUnit:
    """Test the RTL barrier unit."""

    def test_has_correct_ports(self):
        unit = BarrierUnit(num_warps=8)
        for port in ("arrive", "expected", "arrived", "release", "released_mask"):
            assert hasattr(unit, port)

    def test_release_pulse(self):
        """Arrivals accumulate; the completing cycle pulses release once."""
        unit = BarrierUnit(num_warps=4)
        results = {}

        async def testbench(ctx):
            ctx.set(unit.expected, 4)
            ctx.set(unit.arrive, 0b0011)
            await ctx.tick()
            results["partial_mask"] = ctx.get(unit.arrived)
            results["partial_release"] = ctx.get(unit.release)

            ctx.set(unit.arrive, 0b1100)
            await ctx.tick()
            results["release"] = ctx.get(unit.release)
            results["released_mask"] = ctx.get(unit.released_mask)
            results["cleared_mask"] = ctx.get(unit.arrived)

            ctx.set(unit.arrive, 0)
            await ctx.tick()
            results["after"] = ctx.get(unit.release)

        sim = Simulator(unit)
        sim.add_clock(1e-6)
        sim.add_testbench(testbench)
        sim.run()

        assert results["partial_mask"] == 0b0011
        assert results["partial_release"] == 0
        assert results["release"] == 1
        assert results["released_mask"] == 0b1111
        assert results["cleared_mask"] == 0
        assert results["after"] == 0

    def test_no_release_without_expected(self):
        """With expected == 0 the unit only accumulates."""
        unit = BarrierUnit(num_warps=4)
        results = {}

        async def testbench(ctx):
            ctx.set(unit.arrive, 0b1111)
            await ctx.tick()
            results["release"] = ctx.get(unit.release)
            results["arrived"] = ctx.get(unit.arrived)

        sim = Simulator(unit)
        sim.add_clock(1e-6)
        sim.add_testbench(testbench)
        sim.run()

        assert results["release"] == 0
        assert results["arrived"] == 0b1111
