"""
Sector Buffer — one or more concatenated 4 KiB blocks plus where they came from.

All multi-byte values in a region file are big-endian 32-bit fields.
They are decoded explicitly with struct, never by reinterpreting the
buffer in place.
"""

import struct
from dataclasses import dataclass
from typing import Iterable, Iterator

from .block_reader import BLOCK_SIZE, BlockSource

# One field per chunk slot in a region header table
FIELDS_PER_BLOCK = BLOCK_SIZE // 4

_FIELD = struct.Struct(">I")


def read_field(data, index: int) -> int:
    """Decode the big-endian 32-bit field at position `index`."""
    return _FIELD.unpack_from(data, index * 4)[0]


@dataclass(frozen=True)
class OffsetTableEntry:
    """One slot of a region offset table: 24-bit sector offset, 8-bit sector count."""
    offset: int
    length: int

    @classmethod
    def from_field(cls, value: int) -> "OffsetTableEntry":
        return cls(offset=(value >> 8) & 0xFFFFFF, length=value & 0xFF)


class SectorBuffer:
    """
    Append-only buffer of whole blocks.

    Invariant: len(data) == BLOCK_SIZE * len(blocks). Blocks are only ever
    appended; nothing already read is reordered or dropped.
    """

    def __init__(self, data: bytes = b"", blocks: Iterable[int] = ()):
        blocks = list(blocks)
        if len(data) != BLOCK_SIZE * len(blocks):
            raise ValueError(
                f"SectorBuffer holds {len(data)} bytes for {len(blocks)} "
                f"block(s); expected {BLOCK_SIZE * len(blocks)}"
            )
        self._bytes = bytearray(data)
        self._blocks = blocks

    @classmethod
    def read(cls, source: BlockSource, index: int, count: int = 1) -> "SectorBuffer":
        return cls(source.read(index, count), range(index, index + count))

    @classmethod
    def read_blocks(cls, source: BlockSource, indices: Iterable[int]) -> "SectorBuffer":
        indices = list(indices)
        return cls(source.read_blocks(indices), indices)

    def extend(self, source: BlockSource, index: int, count: int = 1):
        """Append `count` consecutive blocks starting at `index`."""
        data = source.read(index, count)
        self._bytes += data
        self._blocks.extend(range(index, index + count))

    def extend_blocks(self, source: BlockSource, indices: Iterable[int]):
        """Append an explicit list of blocks, in the order given."""
        indices = list(indices)
        data = source.read_blocks(indices)
        self._bytes += data
        self._blocks.extend(indices)

    @property
    def data(self) -> memoryview:
        return memoryview(self._bytes).toreadonly()

    @property
    def blocks(self) -> tuple[int, ...]:
        return tuple(self._blocks)

    @property
    def block_count(self) -> int:
        return len(self._blocks)

    def first_block(self) -> memoryview:
        return self.data[:BLOCK_SIZE]

    def __len__(self) -> int:
        return len(self._bytes)

    def field(self, index: int) -> int:
        return read_field(self._bytes, index)

    def fields(self) -> Iterator[int]:
        """Every big-endian field of the first block."""
        for (value,) in _FIELD.iter_unpack(self._bytes[:BLOCK_SIZE]):
            yield value

    def timestamp(self, slot: int) -> int:
        return self.field(slot)

    def offset_entry(self, slot: int) -> OffsetTableEntry:
        return OffsetTableEntry.from_field(self.field(slot))

    def encoded_length(self) -> int:
        """Declared byte length of the record starting at this buffer."""
        return self.field(0)

    def __repr__(self):
        return f"SectorBuffer(blocks={self._blocks!r})"
