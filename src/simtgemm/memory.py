"""
Matrices and Device Buffers.

Host matrices live in NumPy arrays; their device mirrors live in flat
float32 buffers allocated from a DeviceContext. Kernels address device
buffers with row-major element indices, exactly as a CUDA kernel indexes a
float pointer.

Layout:
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    GLOBAL MEMORY (device)                            │
    │                                                                      │
    │  A[hA, wA]: A[i, k] = a.data[i * wA + k]                             │
    │  B[hB, wB]: B[k, j] = b.data[k * wB + j]                             │
    │  C[hA, wB]: C[i, j] = c.data[i * wB + j]                             │
    │                                                                      │
    │  Host mirror: ndarray of shape (height, width), dtype float32        │
    └─────────────────────────────────────────────────────────────────────┘
"""

from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np


class Dim3(NamedTuple):
    """Three-dimensional extent, as used for matrix dims, grids and blocks."""

    x: int
    y: int
    z: int = 1

    @property
    def volume(self) -> int:
        """Number of points covered."""
        return self.x * self.y * self.z

    def __str__(self) -> str:
        return f"({self.x},{self.y})" if self.z == 1 else f"({self.x},{self.y},{self.z})"


class LaunchConfig(NamedTuple):
    """Grid and block geometry of a kernel launch."""

    grid: Dim3
    block: Dim3

    @property
    def threads_per_block(self) -> int:
        """Threads in each block."""
        return self.block.volume

    @property
    def num_blocks(self) -> int:
        """Blocks in the grid."""
        return self.grid.volume


@dataclass(eq=False)
class DeviceBuffer:
    """
    Flat float32 storage in simulated device memory.

    Created by DeviceContext.malloc; contents are undefined until written.
    """

    buffer_id: int
    data: np.ndarray
    freed: bool = False

    @property
    def size(self) -> int:
        """Number of float32 elements."""
        return int(self.data.size)

    @property
    def nbytes(self) -> int:
        """Size in bytes."""
        return int(self.data.nbytes)

    def gather(self, indices: np.ndarray) -> np.ndarray:
        """
        Read elements at the given flat indices.

        Args:
            indices: Integer array of element indices (any shape)

        Returns:
            float32 array with the shape of indices
        """
        return self.data[indices]

    def scatter(self, indices: np.ndarray, values: np.ndarray) -> None:
        """
        Write elements at the given flat indices.

        Args:
            indices: Integer array of element indices
            values: float32 values, broadcastable to indices
        """
        self.data[indices] = values

    def hexdump(self, start: int = 0, count: int = 16) -> str:
        """
        Format a region as IEEE-754 bit patterns, four words per line.

        Args:
            start: First element index
            count: Number of elements

        Returns:
            Formatted dump, one ``offset: w0 w1 w2 w3`` line per 4 words
        """
        bits = self.data[start : start + count].view(np.uint32)
        lines = []
        for offset in range(0, len(bits), 4):
            words = " ".join(f"{int(w):08X}" for w in bits[offset : offset + 4])
            lines.append(f"{(start + offset) * 4:08X}: {words}")
        return "\n".join(lines)


@dataclass(eq=False)
class Matrix:
    """
    Dense row-major float32 matrix with an optional device mirror.

    Attributes:
        width: Number of columns
        height: Number of rows
        host: Host-accessible storage, shape (height, width)
        device: Device-accessible mirror, None until allocated
    """

    width: int
    height: int
    host: np.ndarray
    device: DeviceBuffer | None = None
    name: str = field(default="M")

    @property
    def dims(self) -> Dim3:
        """Dimensions as (width, height)."""
        return Dim3(self.width, self.height)

    @property
    def size(self) -> int:
        """Number of elements."""
        return self.width * self.height

    @property
    def nbytes(self) -> int:
        """Size in bytes."""
        return self.size * 4

    def fill(self, value: float) -> None:
        """Fill host storage with a constant."""
        self.host.fill(np.float32(value))
