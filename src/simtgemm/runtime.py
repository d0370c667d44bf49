"""
Simulated Device Runtime.

Process-scoped device state with an explicit lifetime: a DeviceContext is
opened (worker threads started, allocator ready), used, and closed (all
buffers freed, workers joined). Nothing is a hidden singleton, so tests can
build and tear down as many devices as they like.

Architecture:
    ┌─────────────────────────────────────────────────────────────────────┐
    │                          DEVICE CONTEXT                              │
    │                                                                      │
    │  host ──memcpy_htod──►  GLOBAL MEMORY  ◄──memcpy_dtoh── host         │
    │                         (DeviceBuffer, capacity-limited)             │
    │                                                                      │
    │  launch() ──► STREAM (FIFO, worker thread) ──► GRID SCHEDULER        │
    │               ┌────────┬────────┬────────┬────────┐                  │
    │               │ event  │ kernel │ kernel │ event  │ ...              │
    │               └────────┴────────┴────────┴────────┘                  │
    │                                                                      │
    │  Ordering: stream operations complete in issue order; copies         │
    │  synchronize the stream first, so a device→host copy never           │
    │  observes a partially computed result.                               │
    └─────────────────────────────────────────────────────────────────────┘

Errors raised by queued work are sticky: the first one is kept, later
kernels are skipped (markers still complete), and synchronize() re-raises
it on the host.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import numpy as np

from .config import DEFAULT_DEVICE_CONFIG, DeviceConfig
from .errors import AllocationError, LaunchError, SimtGemmError, TransferError
from .kernel import GemmArgs, TiledMultiplyKernel
from .memory import DeviceBuffer, LaunchConfig
from .scheduler import GridScheduler, LaunchStatistics

logger = logging.getLogger(__name__)


class Stream:
    """
    In-order asynchronous work queue, executed by one worker thread.
    """

    def __init__(self, name: str = "stream0"):
        self.name = name
        self._queue: queue.Queue[tuple[Callable[[], None], bool] | None] = queue.Queue()
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._worker, name=name, daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                op, always = item
                if self._error is None or always:
                    op()
            except Exception as exc:  # relayed to the host by synchronize()
                if self._error is None:
                    self._error = exc
            finally:
                self._queue.task_done()

    def enqueue(self, op: Callable[[], None], *, always: bool = False) -> None:
        """
        Append an operation to the stream.

        Args:
            op: Callable run on the worker thread
            always: Run even after an earlier operation failed (markers)
        """
        self._queue.put((op, always))

    def check_error(self) -> None:
        """
        Re-raise the sticky error of the stream, if any.

        Raises:
            SimtGemmError: Engine errors are re-raised unchanged
            LaunchError: Any other failure, wrapped
        """
        error = self._error
        if error is None:
            return
        if isinstance(error, SimtGemmError):
            raise error
        raise LaunchError(f"{self.name}: {type(error).__name__}: {error}") from error

    def synchronize(self) -> None:
        """Block until every queued operation has completed."""
        self._queue.join()
        self.check_error()

    def close(self) -> None:
        """Drain the queue and stop the worker thread."""
        self._queue.put(None)
        self._thread.join()


class Event:
    """
    Completion marker on a stream, with host timestamps.

    Mirrors the torch.cuda.Event interface: record, query, synchronize,
    elapsed_time.
    """

    def __init__(self, enable_timing: bool = True):
        self.enable_timing = enable_timing
        self._done = threading.Event()
        self._timestamp: float | None = None
        self._stream: Stream | None = None

    def _mark(self) -> None:
        self._timestamp = time.perf_counter()
        self._done.set()

    def record(self, stream: Stream) -> None:
        """Enqueue the marker; it completes after all earlier stream work."""
        self._done.clear()
        self._timestamp = None
        self._stream = stream
        stream.enqueue(self._mark, always=True)

    def query(self) -> bool:
        """True once the marker has been reached."""
        return self._done.is_set()

    def synchronize(self) -> None:
        """
        Block until the marker has been reached.

        Raises:
            LaunchError: If work queued before the marker failed
        """
        if self._stream is None:
            raise LaunchError("event was never recorded")
        self._done.wait()
        self._stream.check_error()

    def elapsed_time(self, end: "Event") -> float:
        """
        Milliseconds between this marker and a later one.

        Args:
            end: Event recorded after this one

        Returns:
            Elapsed time in milliseconds
        """
        if not (self.enable_timing and end.enable_timing):
            raise LaunchError("events were created without timing")
        if self._timestamp is None or end._timestamp is None:
            raise LaunchError("elapsed_time() needs both events to have completed")
        return (end._timestamp - self._timestamp) * 1000.0


class DeviceContext:
    """
    One simulated device: allocator, copy engine, stream and scheduler.

    Usage:
        with DeviceContext(config) as ctx:
            buf = ctx.malloc(1024)
            ctx.memcpy_htod(buf, host_array)
            ctx.launch(kernel, launch, args)
            ctx.memcpy_dtoh(host_array, buf)
    """

    def __init__(self, config: DeviceConfig = DEFAULT_DEVICE_CONFIG, device_id: int = 0):
        self.config = config
        self.device_id = device_id
        self.stream: Stream | None = None
        self.scheduler: GridScheduler | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._buffers: dict[int, DeviceBuffer] = {}
        self._next_id = 0

        # Statistics
        self.bytes_in_use = 0
        self.peak_bytes = 0
        self.total_allocations = 0
        self.bytes_htod = 0
        self.bytes_dtoh = 0
        self.total_launches = 0
        self.last_launch: LaunchStatistics | None = None

    # =========================================================================
    # Lifetime
    # =========================================================================

    @property
    def is_open(self) -> bool:
        """True between open() and close()."""
        return self.stream is not None

    def open(self) -> "DeviceContext":
        """Start the stream worker and the multiprocessor pool."""
        if self.is_open:
            return self
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.num_sms, thread_name_prefix=f"sm{self.device_id}"
        )
        self.scheduler = GridScheduler(self.config, self._executor)
        self.stream = Stream(name=f"device{self.device_id}.stream0")
        logger.debug("opened device %d (%s)", self.device_id, self.config.name)
        return self

    def close(self) -> None:
        """Wait for queued work, free every buffer and stop all workers."""
        if not self.is_open:
            return
        try:
            self.stream.close()
        finally:
            for buf in list(self._buffers.values()):
                self.free(buf)
            self._executor.shutdown(wait=True)
            self.stream = None
            self.scheduler = None
            self._executor = None
            logger.debug("closed device %d", self.device_id)

    def __enter__(self) -> "DeviceContext":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self.is_open:
            raise SimtGemmError(f"device {self.device_id} context is not open")

    # =========================================================================
    # Memory
    # =========================================================================

    def malloc(self, count: int) -> DeviceBuffer:
        """
        Allocate device memory for ``count`` float32 elements.

        Raises:
            AllocationError: If the request exceeds the remaining capacity
        """
        self._require_open()
        nbytes = count * 4
        if count <= 0 or self.bytes_in_use + nbytes > self.config.global_memory_bytes:
            raise AllocationError(
                f"cannot allocate {nbytes} bytes on device {self.device_id} "
                f"({self.bytes_in_use} of {self.config.global_memory_bytes} in use)"
            )
        try:
            data = np.empty(count, dtype=np.float32)
        except MemoryError as exc:
            raise AllocationError(f"cannot allocate {nbytes} bytes of device memory") from exc

        buf = DeviceBuffer(buffer_id=self._next_id, data=data)
        self._next_id += 1
        self._buffers[buf.buffer_id] = buf
        self.bytes_in_use += nbytes
        self.peak_bytes = max(self.peak_bytes, self.bytes_in_use)
        self.total_allocations += 1
        logger.debug("malloc buffer %d: %d bytes", buf.buffer_id, nbytes)
        return buf

    def free(self, buf: DeviceBuffer) -> None:
        """Release a device buffer (freeing twice is an error)."""
        if buf.freed or buf.buffer_id not in self._buffers:
            raise TransferError("free", f"buffer {buf.buffer_id} is not allocated")
        del self._buffers[buf.buffer_id]
        self.bytes_in_use -= buf.nbytes
        buf.freed = True
        logger.debug("free buffer %d", buf.buffer_id)

    def _check_copy(self, operation: str, buf: DeviceBuffer, host: np.ndarray) -> None:
        if buf.freed:
            raise TransferError(operation, f"buffer {buf.buffer_id} was freed")
        if host.dtype != np.float32:
            raise TransferError(operation, f"host dtype {host.dtype} is not float32")
        if host.size != buf.size:
            raise TransferError(
                operation, f"size mismatch: host {host.size} vs device {buf.size} elements"
            )

    def memcpy_htod(self, dst: DeviceBuffer, src: np.ndarray) -> None:
        """
        Copy a host array into a device buffer (blocking).

        Raises:
            TransferError: On freed buffer, dtype or size mismatch
        """
        self._require_open()
        self._check_copy("memcpy_htod", dst, src)
        self.synchronize()
        dst.data[:] = src.reshape(-1)
        self.bytes_htod += dst.nbytes
        logger.debug("memcpy_htod buffer %d: %d bytes", dst.buffer_id, dst.nbytes)

    def memcpy_dtoh(self, dst: np.ndarray, src: DeviceBuffer) -> np.ndarray:
        """
        Copy a device buffer into a host array after all queued work.

        Returns:
            The host array

        Raises:
            TransferError: On freed buffer, dtype or size mismatch
        """
        self._require_open()
        self._check_copy("memcpy_dtoh", src, dst)
        self.synchronize()
        np.copyto(dst, src.data.reshape(dst.shape))
        self.bytes_dtoh += src.nbytes
        logger.debug("memcpy_dtoh buffer %d: %d bytes", src.buffer_id, src.nbytes)
        return dst

    # =========================================================================
    # Execution
    # =========================================================================

    def check_launch(self, kernel: TiledMultiplyKernel, launch: LaunchConfig) -> None:
        """
        Verify statically that the launch fits the device.

        Raises:
            ResourceExhaustionError: If one block does not fit
        """
        self._require_open()
        self.scheduler.check_resources(kernel, launch)

    def launch(self, kernel: TiledMultiplyKernel, launch: LaunchConfig, args: GemmArgs) -> None:
        """
        Enqueue a kernel launch on the stream (returns immediately).

        Raises:
            ResourceExhaustionError: If one block does not fit (before queueing)
            LaunchError: If an argument buffer was freed
        """
        self.check_launch(kernel, launch)
        for buf in (args.a, args.b, args.c):
            if buf.freed:
                raise LaunchError(f"{kernel.name}: argument buffer {buf.buffer_id} was freed")

        def run() -> None:
            self.last_launch = self.scheduler.dispatch(kernel, launch, args)

        self.total_launches += 1
        self.stream.enqueue(run)

    def synchronize(self) -> None:
        """Block until all queued work has completed."""
        self._require_open()
        self.stream.synchronize()

    def get_statistics(self) -> dict[str, Any]:
        """Get device statistics."""
        return {
            "device_id": self.device_id,
            "name": self.config.name,
            "live_buffers": len(self._buffers),
            "bytes_in_use": self.bytes_in_use,
            "peak_bytes": self.peak_bytes,
            "total_allocations": self.total_allocations,
            "bytes_htod": self.bytes_htod,
            "bytes_dtoh": self.bytes_dtoh,
            "total_launches": self.total_launches,
        }
