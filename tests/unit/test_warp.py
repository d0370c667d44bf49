"""
Unit tests for warp execution inside a thread block.

These tests verify:
1. Splitting a block into warps and lane coordinates
2. Barrier-correct interleaving under each scheduling policy
3. Deadlock detection when warps exit before a barrier
4. Race detection for programs missing a barrier
"""

import numpy as np
import pytest

from simtgemm.config import DeviceConfig, SchedulingPolicy
from simtgemm.errors import LaunchError, SharedMemoryRaceError
from simtgemm.memory import Dim3
from simtgemm.shared_tile import TileSelect
from simtgemm.warp import SyncOp, ThreadBlockSim, WarpState


def make_block(policy=SchedulingPolicy.ROUND_ROBIN, racecheck=False, block_size=16, seed=0):
    config = DeviceConfig(warp_policy=policy, racecheck=racecheck)
    return ThreadBlockSim(
        config=config,
        block_idx=Dim3(0, 0),
        block_dim=Dim3(block_size, block_size),
        block_size=block_size,
        seed=seed,
    )


def trace_program(order):
    """Record issue order before and after one barrier."""

    def program(warp):
        order.append(warp.warp_id)
        yield SyncOp.BARRIER
        order.append(warp.warp_id)

    return program


def transpose_program(warp):
    """Each thread writes its tid, then reads its transposed neighbour."""
    smem = warp.shared
    smem.store(TileSelect.A, warp.ty, warp.tx, warp.tid.astype(np.float32), warp.warp_id)
    yield SyncOp.BARRIER
    warp.result = smem.load(TileSelect.A, warp.tx, warp.ty, warp.warp_id)
    yield SyncOp.BARRIER


def unsynchronized_program(warp):
    """Same as transpose_program without the barrier."""
    smem = warp.shared
    smem.store(TileSelect.A, warp.ty, warp.tx, warp.tid.astype(np.float32), warp.warp_id)
    smem.load(TileSelect.A, warp.tx, warp.ty, warp.warp_id)
    yield SyncOp.BARRIER


class TestWarpSplit:
    """Test thread-to-warp assignment."""

    def test_warps_per_block(self):
        block = make_block(block_size=16)
        assert len(block.warps) == 8  # 256 threads / 32
        assert block.barrier_unit.expected_warps == 8

    def test_lane_coordinates(self):
        block = make_block(block_size=16)
        warp = block.warps[1]
        np.testing.assert_array_equal(warp.tid, np.arange(32, 64))
        np.testing.assert_array_equal(warp.tx, np.tile(np.arange(16), 2))
        np.testing.assert_array_equal(warp.ty, np.repeat([2, 3], 16))
        assert warp.lanes == 32

    def test_warps_share_block_memory(self):
        block = make_block()
        assert all(w.shared is block.shared for w in block.warps)


class TestScheduling:
    """Test warp interleaving policies."""

    def test_round_robin_order(self):
        order = []
        block = make_block(SchedulingPolicy.ROUND_ROBIN)
        block.run(trace_program(order))
        assert order == list(range(8)) + list(range(8))
        assert all(w.state == WarpState.DONE for w in block.warps)

    def test_greedy_then_oldest_order(self):
        """GTO keeps issuing the last warp while it stays ready."""
        order = []
        block = make_block(SchedulingPolicy.GREEDY_THEN_OLDEST)
        block.run(trace_program(order))
        assert order[:8] == list(range(8))
        assert order[8:] == [7, 0, 1, 2, 3, 4, 5, 6]

    def test_barrier_holds_every_warp(self):
        """No warp passes the barrier before all have arrived."""
        for policy in SchedulingPolicy:
            order = []
            make_block(policy, seed=3).run(trace_program(order))
            assert sorted(order[:8]) == list(range(8))
            assert sorted(order[8:]) == list(range(8))

    def test_random_is_seeded(self):
        runs = []
        for _ in range(2):
            order = []
            make_block(SchedulingPolicy.RANDOM, seed=42).run(trace_program(order))
            runs.append(order)
        assert runs[0] == runs[1]

    @pytest.mark.parametrize("policy", list(SchedulingPolicy))
    def test_transpose_through_shared_memory(self, policy):
        block = make_block(policy, racecheck=True, seed=7)
        block.run(transpose_program)
        for warp in block.warps:
            expected = (warp.tx * 16 + warp.ty).astype(np.float32)
            np.testing.assert_array_equal(warp.result, expected)

    def test_statistics(self):
        block = make_block()
        block.run(transpose_program)
        stats = block.get_statistics()
        assert stats["warps"] == 8
        assert stats["barriers"] == 2
        assert stats["shared_writes"] == 256
        assert stats["shared_reads"] == 256
        assert stats["issues"] == 8 * 3
        for warp in block.warps:
            assert warp.barriers_passed == 2


class TestBlockFailures:
    """Test failures surfaced by the block scheduler."""

    def test_deadlock_when_warp_exits_early(self):
        def program(warp):
            if warp.warp_id == 0:
                return
            yield SyncOp.BARRIER

        block = make_block()
        with pytest.raises(LaunchError, match="barrier deadlock"):
            block.run(program)

    def test_missing_barrier_is_a_race(self):
        block = make_block(racecheck=True)
        with pytest.raises(SharedMemoryRaceError):
            block.run(unsynchronized_program)

    def test_missing_barrier_unchecked(self):
        """Without race checking the program runs to completion."""
        block = make_block(racecheck=False)
        block.run(unsynchronized_program)
        assert all(w.state == WarpState.DONE for w in block.warps)

    def test_unknown_operation(self):
        def program(warp):
            yield "sync"

        with pytest.raises(LaunchError, match="unknown operation"):
            make_block().run(program)
