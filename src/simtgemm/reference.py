"""
Float64 reference models of the tiled kernel.

Both models take host matrices (A: hA × wA, B: wA × wB) and return the
matrix the kernel produces with the corresponding tile mapping, computed in
float64 so they can serve as ground truth for arbitrary operands.
"""

import numpy as np

from .config import TileMapping


def canonical_reference(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Result of the CANONICAL mapping: the ordinary product A @ B."""
    return a.astype(np.float64) @ b.astype(np.float64)


def tiled_reference(a: np.ndarray, b: np.ndarray, block_size: int) -> np.ndarray:
    """
    Result of the REFERENCE mapping.

    Thread (tx, ty) of block (bx, by) accumulates As[tx][k] · Bs[k][ty] with
    As[tx][ty] = A[by·BS + ty, m·BS + tx] and Bs[tx][ty] = B[m·BS + ty, bx·BS + tx],
    so per output tile

        C_tile = Σ_m  B[m-th row band, bx column band] @ A[by row band, m-th column band]

    which equals A @ B whenever each tile of A and B is constant.
    """
    bs = block_size
    a64 = a.astype(np.float64)
    b64 = b.astype(np.float64)
    height_a, width_a = a64.shape
    width_b = b64.shape[1]

    c = np.zeros((height_a, width_b), dtype=np.float64)
    for by in range(height_a // bs):
        for bx in range(width_b // bs):
            tile = np.zeros((bs, bs), dtype=np.float64)
            for m in range(width_a // bs):
                a_tile = a64[by * bs : (by + 1) * bs, m * bs : (m + 1) * bs]
                b_tile = b64[m * bs : (m + 1) * bs, bx * bs : (bx + 1) * bs]
                tile += b_tile @ a_tile
            c[by * bs : (by + 1) * bs, bx * bs : (bx + 1) * bs] = tile
    return c


def expected_result(
    a: np.ndarray, b: np.ndarray, block_size: int, mapping: TileMapping
) -> np.ndarray:
    """Float64 model of the kernel output for the given mapping."""
    if mapping == TileMapping.CANONICAL:
        return canonical_reference(a, b)
    return tiled_reference(a, b, block_size)
