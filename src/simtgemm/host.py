"""
Host Orchestrator.

Drives one matrix multiply benchmark on a simulated device:

    allocate ──► initialize ──► dispatch_multiply ──► report
                                  │  check dims, alignment, resources
                                  │  copy A, B to the device
                                  │  warm-up launch, synchronize
                                  │  start event, N launches, stop event
                                  │  wait for stop event
                                  ▼
                               retrieve ──► validate ──► free

All fatal conditions raise from errors.py immediately; only a tolerance
miss is collected and reported (see validate.py).
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from .config import MatrixMulConfig
from .errors import (
    AllocationError,
    DimensionError,
    DimensionMismatchError,
    LaunchError,
    TileAlignmentError,
)
from .kernel import GemmArgs, TiledMultiplyKernel, select_kernel
from .memory import Dim3, LaunchConfig, Matrix
from .runtime import DeviceContext, Event
from .scheduler import LaunchStatistics, launch_geometry
from .validate import ValidationReport, validate

logger = logging.getLogger(__name__)


@dataclass
class TimingResult:
    """Timed section of dispatch_multiply."""

    total_ms: float
    iterations: int
    launch: LaunchConfig
    kernel_name: str
    statistics: LaunchStatistics | None = None

    @property
    def msec_per_call(self) -> float:
        """Average time per kernel invocation in milliseconds."""
        return self.total_ms / self.iterations


@dataclass
class PerformanceReport:
    """Throughput derived from a timing result."""

    gflops: float
    msec_per_call: float
    flops_per_call: float
    workgroup_size: int

    def __str__(self) -> str:
        return (
            f"Performance= {self.gflops:.2f} GFlop/s, Time= {self.msec_per_call:.3f} msec, "
            f"Size= {self.flops_per_call:.0f} Ops, "
            f"WorkgroupSize= {self.workgroup_size} threads/block"
        )


@dataclass
class BenchmarkResult:
    """Everything one run produced."""

    performance: PerformanceReport
    validation: ValidationReport
    timing: TimingResult
    result: np.ndarray = field(repr=False)

    @property
    def passed(self) -> bool:
        """True if the result check passed."""
        return self.validation.passed


class HostOrchestrator:
    """
    Allocates, initializes, launches, times, retrieves and validates.

    The orchestrator owns the matrices it allocates; the device context is
    owned by the caller and must be open.
    """

    def __init__(self, context: DeviceContext, config: MatrixMulConfig | None = None):
        """
        Initialize orchestrator.

        Args:
            context: Open device context
            config: Benchmark configuration
        """
        self.context = context
        self.config = config or MatrixMulConfig()

    # =========================================================================
    # Allocation
    # =========================================================================

    def _allocate_matrix(self, dims: Dim3, name: str) -> Matrix:
        if dims.x <= 0 or dims.y <= 0:
            raise DimensionError(f"matrix {name} has invalid dimensions {dims}")
        try:
            host = np.empty((dims.y, dims.x), dtype=np.float32)
        except MemoryError as exc:
            raise AllocationError(f"failed to allocate host matrix {name}!") from exc
        matrix = Matrix(width=dims.x, height=dims.y, host=host, name=name)
        matrix.device = self.context.malloc(matrix.size)
        return matrix

    def allocate(self, dims_a: Dim3, dims_b: Dim3) -> tuple[Matrix, Matrix, Matrix]:
        """
        Allocate host and device storage for A, B and C.

        Args:
            dims_a: (width, height) of A
            dims_b: (width, height) of B

        Returns:
            Matrices A, B and C, where C is (B.width, A.height)

        Raises:
            AllocationError: If host or device memory cannot be obtained
            DimensionError: If a dimension is not positive
        """
        dims_c = Dim3(dims_b.x, dims_a.y)
        matrices: list[Matrix] = []
        try:
            for dims, name in ((dims_a, "A"), (dims_b, "B"), (dims_c, "C")):
                matrices.append(self._allocate_matrix(dims, name))
        except (AllocationError, DimensionError):
            self.free(*matrices)
            raise
        a, b, c = matrices
        logger.debug("allocated A%s B%s C%s", a.dims, b.dims, c.dims)
        return a, b, c

    def free(self, *matrices: Matrix) -> None:
        """Release the device mirrors of the given matrices."""
        for matrix in matrices:
            if matrix.device is not None and not matrix.device.freed:
                self.context.free(matrix.device)
            matrix.device = None

    def initialize(self, a: Matrix, b: Matrix) -> None:
        """Fill A and B with the configured constants."""
        a.fill(self.config.val_a)
        b.fill(self.config.val_b)

    def expected_value(self, a: Matrix) -> float:
        """Analytic value of every element of C for constant operands."""
        cfg = self.config
        return float(np.float32(a.width) * np.float32(cfg.val_b) * np.float32(cfg.val_a))

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _check_dims(self, a: Matrix, b: Matrix, c: Matrix, block_size: int) -> None:
        if a.width != b.height:
            raise DimensionMismatchError(a.width, b.height)
        if (c.width, c.height) != (b.width, a.height):
            raise DimensionError(
                f"result matrix is {c.dims}, expected ({b.width},{a.height})"
            )
        for name, extent in (("A.width", a.width), ("A.height", a.height), ("B.width", b.width)):
            if extent % block_size:
                raise TileAlignmentError(
                    f"{name}={extent} is not a multiple of the block size {block_size}"
                )

    def prepare(
        self, a: Matrix, b: Matrix, c: Matrix, block_size: int | None = None
    ) -> tuple[TiledMultiplyKernel, LaunchConfig, GemmArgs]:
        """
        Validate a multiply and build its launch, without touching the device.

        Raises:
            UnsupportedBlockSizeError: If no kernel exists for the tile size
            DimensionMismatchError: If A.width != B.height
            TileAlignmentError: If a dimension is not a multiple of the tile
            ResourceExhaustionError: If one block does not fit the device
        """
        block_size = block_size or self.config.block_size
        kernel = select_kernel(block_size, self.config.mapping)
        self._check_dims(a, b, c, block_size)
        launch = launch_geometry(b.width, a.height, block_size)
        self.context.check_launch(kernel, launch)
        for matrix in (a, b, c):
            if matrix.device is None:
                raise LaunchError(f"matrix {matrix.name} has no device storage")
        args = GemmArgs(c=c.device, a=a.device, b=b.device, width_a=a.width, width_b=b.width)
        return kernel, launch, args

    def dispatch_multiply(
        self, a: Matrix, b: Matrix, c: Matrix, block_size: int | None = None
    ) -> TimingResult:
        """
        Copy the operands to the device and run the timed multiply.

        One warm-up launch is completed before timing starts; then
        ``config.iterations`` launches run between a start and a stop event.

        Args:
            a: Left operand (hA × wA)
            b: Right operand (wA × wB)
            c: Result (hA × wB)
            block_size: Tile size override

        Returns:
            Elapsed time of the timed launches

        Raises:
            UnsupportedBlockSizeError: Before any transfer
            DimensionMismatchError: Before any transfer, if A.width != B.height
            TileAlignmentError: Before any transfer
            ResourceExhaustionError: Before any transfer
            TransferError: If an operand copy fails
            LaunchError: If a launch fails
        """
        kernel, launch, args = self.prepare(a, b, c, block_size)
        ctx = self.context

        ctx.memcpy_htod(a.device, a.host)
        ctx.memcpy_htod(b.device, b.host)

        logger.info("computing result using %s, grid %s, block %s", kernel.name,
                    launch.grid, launch.block)

        # Warm-up
        ctx.launch(kernel, launch, args)
        ctx.synchronize()

        start = Event(enable_timing=True)
        stop = Event(enable_timing=True)
        start.record(ctx.stream)
        for _ in range(self.config.iterations):
            ctx.launch(kernel, launch, args)
        stop.record(ctx.stream)
        stop.synchronize()

        return TimingResult(
            total_ms=start.elapsed_time(stop),
            iterations=self.config.iterations,
            launch=launch,
            kernel_name=kernel.name,
            statistics=ctx.last_launch,
        )

    def retrieve(self, c: Matrix) -> np.ndarray:
        """
        Copy the result back to the host once all launches have completed.

        Returns:
            Host array of C
        """
        return self.context.memcpy_dtoh(c.host, c.device)

    def report(self, timing: TimingResult, a: Matrix, b: Matrix) -> PerformanceReport:
        """
        Derive throughput, counting a multiply-add as two operations.
        """
        flops = 2.0 * float(a.width) * float(a.height) * float(b.width)
        msec = timing.msec_per_call
        gflops = (flops * 1.0e-9) / (msec / 1000.0) if msec > 0 else float("inf")
        return PerformanceReport(
            gflops=gflops,
            msec_per_call=msec,
            flops_per_call=flops,
            workgroup_size=timing.launch.threads_per_block,
        )

    def check(self, a: Matrix, result: np.ndarray) -> ValidationReport:
        """Validate the result against the analytic value."""
        return validate(
            result,
            expected=self.expected_value(a),
            dot_length=a.width,
            epsilon=self.config.epsilon,
        )

    # =========================================================================
    # Pipeline
    # =========================================================================

    def run(self, dims_a: Dim3, dims_b: Dim3) -> BenchmarkResult:
        """
        Full benchmark: allocate, initialize, multiply, retrieve, validate.

        Device memory is released whether or not the run succeeds.
        """
        a, b, c = self.allocate(dims_a, dims_b)
        try:
            self.initialize(a, b)
            timing = self.dispatch_multiply(a, b, c)
            performance = self.report(timing, a, b)
            result = self.retrieve(c).copy()
            validation = self.check(a, result)
        finally:
            self.free(a, b, c)

        logger.info("%s: %s", performance, validation)
        return BenchmarkResult(
            performance=performance, validation=validation, timing=timing, result=result
        )
