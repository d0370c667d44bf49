"""
Shared Tile Buffer for a SIMT thread block.

Block-scoped shared memory holding the current tile of A and the current
tile of B. Each tile is BLOCK_SIZE × BLOCK_SIZE float32 words, stored
row-major; tile B follows tile A in the shared address space.

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │            SHARED TILE BUFFER (2 × BS² words)                │
    │                                                              │
    │   word 0            BS²-1 BS²             2·BS²-1            │
    │   ┌──────────────────────┬──────────────────────┐            │
    │   │     As[BS][BS]       │     Bs[BS][BS]       │            │
    │   └──────────────────────┴──────────────────────┘            │
    │                                                              │
    │  Bank selection: bank_id = word % 32                         │
    │  Conflict: lanes of one warp hitting distinct words of the   │
    │            same bank; same word is a broadcast               │
    │  Replays: (max distinct words per bank) - 1 per access       │
    └─────────────────────────────────────────────────────────────┘

Race checking:
    Between two barrier releases (one epoch) every cell remembers the warp
    that wrote it and the warp(s) that read it. Another warp touching the
    cell in a conflicting way in the same epoch is a data race.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import numpy as np
from amaranth import Module, unsigned
from amaranth.lib.memory import Memory
from amaranth.lib.wiring import Component, In, Out

from .errors import SharedMemoryRaceError

NO_WARP = -1
MANY_WARPS = -2


class TileSelect(IntEnum):
    """Which tile of the buffer an access targets."""

    A = 0
    B = 1


class SharedTileBuffer(Component):
    """
    RTL shared tile buffer.

    Two single-write-port memories (tile A, tile B) with one synchronous read
    port each, so a compute step can fetch As[i] and Bs[j] in the same cycle.

    Ports:
        write_en: Write enable
        write_sel: Target tile (0 = A, 1 = B)
        write_addr: Word address within the tile (row * BS + col)
        write_data: 32-bit word (float32 bit pattern)

        read_en: Read enable
        read_addr_a: Word address within tile A
        read_addr_b: Word address within tile B
        read_data_a: Word read from tile A (valid one cycle after read_en)
        read_data_b: Word read from tile B
        read_valid: High when read data is valid
    """

    def __init__(self, block_size: int = 32):
        """
        Initialize shared tile buffer.

        Args:
            block_size: Tile edge in words
        """
        self.block_size = block_size
        self.depth = block_size * block_size
        self.addr_bits = max(1, (self.depth - 1).bit_length())

        super().__init__(
            {
                # Write port
                "write_en": In(1),
                "write_sel": In(1),
                "write_addr": In(unsigned(self.addr_bits)),
                "write_data": In(unsigned(32)),
                # Read ports
                "read_en": In(1),
                "read_addr_a": In(unsigned(self.addr_bits)),
                "read_addr_b": In(unsigned(self.addr_bits)),
                "read_data_a": Out(unsigned(32)),
                "read_data_b": Out(unsigned(32)),
                "read_valid": Out(1),
            }
        )

    def elaborate(self, _platform):
        m = Module()

        m.submodules.tile_a = tile_a = Memory(shape=unsigned(32), depth=self.depth, init=[])
        m.submodules.tile_b = tile_b = Memory(shape=unsigned(32), depth=self.depth, init=[])

        # Write ports: one shared request, steered by write_sel
        wr_a = tile_a.write_port()
        wr_b = tile_b.write_port()
        m.d.comb += [
            wr_a.addr.eq(self.write_addr),
            wr_a.data.eq(self.write_data),
            wr_a.en.eq(self.write_en & ~self.write_sel),
            wr_b.addr.eq(self.write_addr),
            wr_b.data.eq(self.write_data),
            wr_b.en.eq(self.write_en & self.write_sel),
        ]

        # Read ports: one-cycle latency
        rd_a = tile_a.read_port()
        rd_b = tile_b.read_port()
        m.d.comb += [
            rd_a.addr.eq(self.read_addr_a),
            rd_a.en.eq(self.read_en),
            rd_b.addr.eq(self.read_addr_b),
            rd_b.en.eq(self.read_en),
            self.read_data_a.eq(rd_a.data),
            self.read_data_b.eq(rd_b.data),
        ]
        m.d.sync += self.read_valid.eq(self.read_en)

        return m


# =============================================================================
# Simulation Model
# =============================================================================


def bank_conflict_replays(words: np.ndarray, num_banks: int) -> int:
    """
    Count bank-conflict replay cycles for a batch of warp-wide accesses.

    Args:
        words: Word addresses, shape (instructions, lanes); each row is one
            warp-wide access
        num_banks: Number of shared memory banks

    Returns:
        Sum over rows of (max distinct words mapped to one bank) - 1
    """
    words = np.atleast_2d(words)
    rows, lanes = words.shape
    if lanes == 0:
        return 0

    ordered = np.sort(words, axis=1)
    distinct = np.ones(ordered.shape, dtype=bool)
    distinct[:, 1:] = ordered[:, 1:] != ordered[:, :-1]

    row_ids = np.broadcast_to(np.arange(rows)[:, None], ordered.shape)
    keys = row_ids[distinct] * num_banks + ordered[distinct] % num_banks
    per_bank = np.bincount(keys, minlength=rows * num_banks).reshape(rows, num_banks)
    return int((per_bank.max(axis=1) - 1).sum())


@dataclass
class SharedTileBufferSim:
    """
    Behavioral simulation model for the shared tile buffer.

    Accesses are warp-wide: index arrays carry one element per lane on their
    last axis, and any leading axes enumerate successive instructions.
    """

    block_size: int
    num_banks: int = 32
    racecheck: bool = False
    track_bank_conflicts: bool = True

    # Storage: tiles[TileSelect][row, col]
    tiles: np.ndarray = field(init=False)

    # Race tracking per epoch: last writer / reader(s) per cell
    writer: np.ndarray = field(init=False)
    reader: np.ndarray = field(init=False)
    epoch: int = 0

    # Statistics
    total_reads: int = 0
    total_writes: int = 0
    total_bank_conflicts: int = 0

    def __post_init__(self) -> None:
        """Allocate tile storage and race-tracking state."""
        shape = (len(TileSelect), self.block_size, self.block_size)
        self.tiles = np.zeros(shape, dtype=np.float32)
        self.writer = np.full(shape, NO_WARP, dtype=np.int32)
        self.reader = np.full(shape, NO_WARP, dtype=np.int32)

    @property
    def nbytes(self) -> int:
        """Shared memory footprint in bytes."""
        return int(self.tiles.nbytes)

    def word_address(self, tile: TileSelect, row: np.ndarray, col: np.ndarray) -> np.ndarray:
        """Word address of tile cells in the shared address space."""
        return int(tile) * self.block_size * self.block_size + row * self.block_size + col

    def new_epoch(self) -> None:
        """Start a new barrier interval (called when a barrier releases)."""
        self.epoch += 1
        if self.racecheck:
            self.writer.fill(NO_WARP)
            self.reader.fill(NO_WARP)

    def _count_conflicts(self, tile: TileSelect, row: np.ndarray, col: np.ndarray) -> None:
        if not self.track_bank_conflicts:
            return
        words = self.word_address(tile, row, col)
        lanes = words.shape[-1] if words.ndim else 1
        self.total_bank_conflicts += bank_conflict_replays(
            words.reshape(-1, lanes), self.num_banks
        )

    def _raise_race(
        self, hazard: str, tile: TileSelect, row: np.ndarray, col: np.ndarray,
        bad: np.ndarray, other: np.ndarray, warp_id: int,
    ) -> None:
        first = tuple(int(i[0]) for i in np.nonzero(bad))
        cell = (int(row[first]), int(col[first]))
        raise SharedMemoryRaceError(hazard, tile.name, cell, (int(other[first]), warp_id))

    def store(
        self,
        tile: TileSelect,
        row: np.ndarray,
        col: np.ndarray,
        values: np.ndarray,
        warp_id: int = 0,
    ) -> None:
        """
        Warp-wide store into a tile.

        Args:
            tile: Target tile
            row: Row index per lane
            col: Column index per lane
            values: float32 value per lane
            warp_id: Issuing warp

        Raises:
            SharedMemoryRaceError: With racecheck, if another warp read or
                wrote one of the cells in the current epoch
        """
        row, col = np.broadcast_arrays(np.asarray(row), np.asarray(col))
        if self.racecheck:
            writers = self.writer[tile, row, col]
            readers = self.reader[tile, row, col]
            waw = (writers != NO_WARP) & (writers != warp_id)
            if waw.any():
                self._raise_race("WAW", tile, row, col, waw, writers, warp_id)
            war = (readers == MANY_WARPS) | ((readers != NO_WARP) & (readers != warp_id))
            if war.any():
                self._raise_race("WAR", tile, row, col, war, readers, warp_id)
            self.writer[tile, row, col] = warp_id

        self._count_conflicts(tile, row, col)
        self.tiles[tile, row, col] = values
        self.total_writes += row.size

    def load(
        self,
        tile: TileSelect,
        row: np.ndarray,
        col: np.ndarray,
        warp_id: int = 0,
    ) -> np.ndarray:
        """
        Warp-wide load from a tile.

        Args:
            tile: Source tile
            row: Row index per lane (leading axes = successive instructions)
            col: Column index per lane, broadcast against row
            warp_id: Issuing warp

        Returns:
            float32 values with the broadcast shape of row and col

        Raises:
            SharedMemoryRaceError: With racecheck, if another warp wrote one
                of the cells in the current epoch
        """
        row, col = np.broadcast_arrays(np.asarray(row), np.asarray(col))
        if self.racecheck:
            writers = self.writer[tile, row, col]
            raw = (writers != NO_WARP) & (writers != warp_id)
            if raw.any():
                self._raise_race("RAW", tile, row, col, raw, writers, warp_id)
            readers = self.reader[tile, row, col]
            self.reader[tile, row, col] = np.where(
                (readers == NO_WARP) | (readers == warp_id), warp_id, MANY_WARPS
            )

        self._count_conflicts(tile, row, col)
        self.total_reads += row.size
        return self.tiles[tile, row, col]

    def read(self, tile: TileSelect, row: int, col: int) -> float:
        """Single-cell read for testing (no statistics, no race tracking)."""
        return float(self.tiles[tile, row, col])

    def get_statistics(self) -> dict[str, Any]:
        """Get shared memory statistics."""
        return {
            "total_reads": self.total_reads,
            "total_writes": self.total_writes,
            "total_bank_conflicts": self.total_bank_conflicts,
            "epochs": self.epoch,
        }
