"""
Tiled Matrix Multiply Kernel: C = A × B

Each thread block computes one BLOCK_SIZE × BLOCK_SIZE tile of C. Thread
(tx, ty) of block (bx, by) owns C[by·BS + ty, bx·BS + tx] and accumulates it
over the tiles of the inner dimension:

    for m in 0 .. wA/BS - 1:
        LOAD      each thread copies one element of A's tile and one of B's
                  tile from global memory into the shared tile buffer
        BARRIER   nobody computes before the whole tile is loaded
        COMPUTE   acc += As[.][k] · Bs[k][.]   for k = 0 .. BS-1
        BARRIER   nobody overwrites the tile while others still read it
    C[row, col] = acc

Tile mappings (thread → shared cell):

    REFERENCE   As[tx][ty] = A[row, m·BS + tx]    acc += As[tx][k] · Bs[k][ty]
                Bs[tx][ty] = B[m·BS + ty, col]
    CANONICAL   As[ty][tx] = A[row, m·BS + tx]    acc += As[ty][k] · Bs[k][tx]
                Bs[ty][tx] = B[m·BS + ty, col]

REFERENCE is the mapping of the CUDA matrixMul shared-memory sample, kept
as-is: it stores and reads tile A with a BS-word stride (bank conflicts) and
equals A × B only when the operands are constant. CANONICAL is the textbook
blocking and equals A × B for any operands.

The kernel body is generic over BLOCK_SIZE; KERNELS holds one instance per
supported tile size and mapping, and select_kernel picks one at dispatch.
"""

from collections.abc import Generator
from dataclasses import dataclass

import numpy as np

from .config import SUPPORTED_BLOCK_SIZES, TileMapping
from .errors import UnsupportedBlockSizeError
from .memory import DeviceBuffer
from .shared_tile import TileSelect
from .warp import SyncOp, WarpContext

REGISTERS_PER_THREAD = 32
"""Register demand of one kernel thread, checked against the device budget."""


@dataclass(frozen=True)
class GemmArgs:
    """Kernel arguments: device buffers and row strides."""

    c: DeviceBuffer
    a: DeviceBuffer
    b: DeviceBuffer
    width_a: int
    width_b: int


@dataclass(frozen=True)
class TiledMultiplyKernel:
    """
    Shared-memory tiled GEMM, specialized for one tile size and mapping.

    Attributes:
        block_size: Tile edge; also the thread block edge
        mapping: Thread-to-tile-cell mapping
    """

    block_size: int
    mapping: TileMapping = TileMapping.REFERENCE

    @property
    def name(self) -> str:
        """Kernel name, as it would appear in a profiler."""
        return f"MatrixMulTiled<{self.block_size},{self.mapping.name.lower()}>"

    @property
    def shared_memory_bytes(self) -> int:
        """Static shared memory per block: one A tile and one B tile."""
        return 2 * self.block_size * self.block_size * np.dtype(np.float32).itemsize

    @property
    def threads_per_block(self) -> int:
        """Threads per block (one per output element of the tile)."""
        return self.block_size * self.block_size

    @property
    def registers_per_thread(self) -> int:
        """Register demand per thread."""
        return REGISTERS_PER_THREAD

    def program(self, warp: WarpContext, args: GemmArgs) -> Generator[SyncOp, None, None]:
        """
        Kernel body for one warp.

        Args:
            warp: Execution context (lane coordinates, shared memory)
            args: Device buffers and strides

        Yields:
            SyncOp.BARRIER at each __syncthreads()
        """
        bs = self.block_size
        tx, ty = warp.tx, warp.ty
        row = warp.block_idx.y * bs + ty
        col = warp.block_idx.x * bs + tx
        smem = warp.shared
        wid = warp.warp_id
        k = np.arange(bs)[:, None]
        reference = self.mapping == TileMapping.REFERENCE

        acc = np.zeros(warp.lanes, dtype=np.float32)

        for m in range(args.width_a // bs):
            # LOAD: one element of each tile per thread
            a_vals = warp.load_global(args.a, row * args.width_a + m * bs + tx)
            b_vals = warp.load_global(args.b, (m * bs + ty) * args.width_b + col)
            if reference:
                smem.store(TileSelect.A, tx, ty, a_vals, wid)
                smem.store(TileSelect.B, tx, ty, b_vals, wid)
            else:
                smem.store(TileSelect.A, ty, tx, a_vals, wid)
                smem.store(TileSelect.B, ty, tx, b_vals, wid)

            yield SyncOp.BARRIER

            # COMPUTE: row k of the products is the k-th multiply-add
            if reference:
                a_tile = smem.load(TileSelect.A, tx[None, :], k, wid)
                b_tile = smem.load(TileSelect.B, k, ty[None, :], wid)
            else:
                a_tile = smem.load(TileSelect.A, ty[None, :], k, wid)
                b_tile = smem.load(TileSelect.B, k, tx[None, :], wid)
            acc = np.add.accumulate(np.vstack((acc, a_tile * b_tile)), axis=0)[-1]

            yield SyncOp.BARRIER

        warp.store_global(args.c, row * args.width_b + col, acc)


KERNELS: dict[tuple[int, TileMapping], TiledMultiplyKernel] = {
    (block_size, mapping): TiledMultiplyKernel(block_size, mapping)
    for block_size in SUPPORTED_BLOCK_SIZES
    for mapping in TileMapping
}
"""Kernel instances per (tile size, mapping)."""


def select_kernel(
    block_size: int, mapping: TileMapping = TileMapping.REFERENCE
) -> TiledMultiplyKernel:
    """
    Pick the kernel instance for a tile size.

    Args:
        block_size: Tile edge, one of SUPPORTED_BLOCK_SIZES
        mapping: Thread-to-tile-cell mapping

    Returns:
        The specialized kernel

    Raises:
        UnsupportedBlockSizeError: If no kernel exists for the tile size
    """
    try:
        return KERNELS[(block_size, TileMapping(mapping))]
    except KeyError:
        raise UnsupportedBlockSizeError(
            f"no kernel for block size {block_size}, expected one of {SUPPORTED_BLOCK_SIZES}"
        ) from None
