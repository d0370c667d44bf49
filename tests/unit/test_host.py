"""
End-to-end tests for the host orchestrator.

These tests verify:
1. The default benchmark (320 × 320, 32 × 32 tiles) passes validation
2. Invalid dimensions fail before any transfer or launch
3. Resource exhaustion on a small device, and tile-size fallback
4. Memory is released on success and on failure
5. Throughput reporting
"""

import numpy as np
import pytest

from simtgemm.config import (
    SMALL_DEVICE_CONFIG,
    DeviceConfig,
    GridOrder,
    MatrixMulConfig,
    SchedulingPolicy,
    TileMapping,
)
from simtgemm.errors import (
    AllocationError,
    DimensionError,
    DimensionMismatchError,
    ResourceExhaustionError,
    TileAlignmentError,
    UnsupportedBlockSizeError,
)
from simtgemm.host import HostOrchestrator, TimingResult
from simtgemm.memory import Dim3, LaunchConfig
from simtgemm.runtime import DeviceContext


@pytest.fixture
def ctx():
    with DeviceContext() as context:
        yield context


class TestBenchmark:
    """Full allocate, multiply, validate runs."""

    def test_default_benchmark(self, ctx):
        host = HostOrchestrator(ctx, MatrixMulConfig(iterations=1))
        result = host.run(Dim3(320, 320), Dim3(320, 320))

        assert result.passed
        assert result.result.shape == (320, 320)
        assert result.timing.launch.grid == Dim3(10, 10)
        assert result.timing.kernel_name == "MatrixMulTiled<32,reference>"
        assert result.performance.workgroup_size == 1024
        assert result.performance.flops_per_call == 2.0 * 320**3
        np.testing.assert_allclose(result.result, 3.2, rtol=1e-5)

        # Warm-up plus one timed launch; everything released afterwards
        assert ctx.total_launches == 2
        assert ctx.bytes_in_use == 0
        assert ctx.bytes_htod == 2 * 320 * 320 * 4
        assert ctx.bytes_dtoh == 320 * 320 * 4

    @pytest.mark.parametrize("mapping", list(TileMapping))
    def test_non_square(self, ctx, mapping):
        config = MatrixMulConfig(block_size=16, iterations=2, mapping=mapping)
        result = HostOrchestrator(ctx, config).run(Dim3(64, 32), Dim3(48, 64))
        assert result.passed
        assert result.result.shape == (32, 48)
        assert ctx.total_launches == 3

    def test_schedule_does_not_change_result(self):
        results = []
        for device in (
            DeviceConfig(),
            DeviceConfig(
                num_sms=3,
                grid_order=GridOrder.SHUFFLED,
                warp_policy=SchedulingPolicy.RANDOM,
                seed=9,
                racecheck=True,
            ),
        ):
            with DeviceContext(device) as context:
                host = HostOrchestrator(context, MatrixMulConfig(block_size=16, iterations=1))
                results.append(host.run(Dim3(64, 64), Dim3(64, 64)).result)
        np.testing.assert_array_equal(results[0], results[1])

    def test_small_device_with_small_tiles(self):
        with DeviceContext(SMALL_DEVICE_CONFIG, device_id=1) as context:
            host = HostOrchestrator(context, MatrixMulConfig(block_size=16, iterations=1))
            assert host.run(Dim3(32, 32), Dim3(32, 32)).passed


class TestFailures:
    """Fatal conditions and cleanup."""

    def test_dimension_mismatch_before_transfer(self, ctx):
        host = HostOrchestrator(ctx, MatrixMulConfig(iterations=1))
        a, b, c = host.allocate(Dim3(64, 32), Dim3(32, 32))
        host.initialize(a, b)

        with pytest.raises(DimensionMismatchError, match=r"\(64 != 32\)"):
            host.dispatch_multiply(a, b, c)
        assert ctx.bytes_htod == 0
        assert ctx.total_launches == 0
        host.free(a, b, c)
        assert ctx.bytes_in_use == 0

    def test_run_releases_memory_on_failure(self, ctx):
        host = HostOrchestrator(ctx, MatrixMulConfig(iterations=1))
        with pytest.raises(DimensionMismatchError):
            host.run(Dim3(64, 32), Dim3(32, 32))
        assert ctx.bytes_in_use == 0

    def test_tile_alignment(self, ctx):
        host = HostOrchestrator(ctx, MatrixMulConfig(iterations=1))
        with pytest.raises(TileAlignmentError, match="not a multiple of the block size 32"):
            host.run(Dim3(40, 32), Dim3(32, 40))
        assert ctx.bytes_htod == 0
        assert ctx.total_launches == 0

    def test_unsupported_block_size_before_alignment(self, ctx):
        """An unknown tile size is reported ahead of any alignment problem."""
        host = HostOrchestrator(ctx, MatrixMulConfig(iterations=1))
        a, b, c = host.allocate(Dim3(40, 40), Dim3(40, 40))
        host.initialize(a, b)

        with pytest.raises(UnsupportedBlockSizeError, match="no kernel for block size 8"):
            host.dispatch_multiply(a, b, c, block_size=8)
        assert ctx.bytes_htod == 0
        assert ctx.total_launches == 0
        host.free(a, b, c)

    def test_tile_alignment_is_a_dimension_error(self, ctx):
        host = HostOrchestrator(ctx, MatrixMulConfig(block_size=16, iterations=1))
        with pytest.raises(DimensionError):
            host.run(Dim3(32, 24), Dim3(32, 32))

    def test_resource_exhaustion(self):
        with DeviceContext(SMALL_DEVICE_CONFIG, device_id=1) as context:
            host = HostOrchestrator(context, MatrixMulConfig(iterations=1))
            with pytest.raises(ResourceExhaustionError):
                host.run(Dim3(64, 64), Dim3(64, 64))
            assert context.bytes_htod == 0
            assert context.total_launches == 0
            assert context.bytes_in_use == 0

    @pytest.mark.parametrize("dims", [Dim3(0, 32), Dim3(32, -1)])
    def test_invalid_dimensions(self, ctx, dims):
        host = HostOrchestrator(ctx)
        with pytest.raises(DimensionError):
            host.allocate(dims, Dim3(32, 32))
        assert ctx.bytes_in_use == 0

    def test_allocation_failure_frees_partial(self):
        """C does not fit: A and B are released again."""
        with DeviceContext(DeviceConfig(global_memory_mb=1)) as context:
            host = HostOrchestrator(context)
            with pytest.raises(AllocationError):
                host.allocate(Dim3(320, 320), Dim3(320, 320))
            assert context.bytes_in_use == 0
            assert context.total_allocations == 2


class TestReporting:
    """Throughput and validation helpers."""

    def test_expected_value(self, ctx):
        host = HostOrchestrator(ctx)
        a, b, c = host.allocate(Dim3(320, 32), Dim3(32, 320))
        assert host.expected_value(a) == pytest.approx(3.2, rel=1e-6)
        host.free(a, b, c)

    def test_report(self, ctx):
        host = HostOrchestrator(ctx)
        a, b, c = host.allocate(Dim3(320, 320), Dim3(320, 320))
        timing = TimingResult(
            total_ms=300.0,
            iterations=300,
            launch=LaunchConfig(Dim3(10, 10), Dim3(32, 32)),
            kernel_name="k",
        )
        report = host.report(timing, a, b)
        host.free(a, b, c)

        assert report.msec_per_call == pytest.approx(1.0)
        assert report.flops_per_call == 65536000.0
        assert report.gflops == pytest.approx(65.536)
        assert str(report) == (
            "Performance= 65.54 GFlop/s, Time= 1.000 msec, Size= 65536000 Ops, "
            "WorkgroupSize= 1024 threads/block"
        )

    def test_check_reports_bad_element(self, ctx):
        host = HostOrchestrator(ctx)
        a, b, c = host.allocate(Dim3(32, 32), Dim3(32, 32))
        result = np.full((32, 32), host.expected_value(a), dtype=np.float32)
        result[1, 3] = 0.5
        report = host.check(a, result)
        host.free(a, b, c)

        assert not report.passed
        assert [v.index for v in report.violations] == [35]
