"""
Sector Classifier — recognise region-file structures from a 4 KiB window.

A region file decomposes into three kinds of sector:

  1. Timestamp table     — 1024 big-endian u32 modification times, 0 = unused
  2. Offset table        — 1024 big-endian u32: (24-bit sector offset << 8) | sector count
  3. Encoded chunk       — u32 length, u8 compression type, zlib stream

Each predicate below is pure and total: it never raises and never
mutates its input. They are independent — a sector may satisfy several
of them, and we do not try to decide which role is "the" true one.
"""

import struct
from enum import Flag
from typing import Union

from .block_reader import BLOCK_SIZE
from .sector import SectorBuffer, OffsetTableEntry

BufferLike = Union[SectorBuffer, bytes, bytearray, memoryview]

# ── Calibration constants ──
SPARSE_THRESHOLD = 10           # Fewer nonzero units than this → sparse
SPARSE_UNITS = ("byte", "word")
MAX_SECTOR_OFFSET = 0xFFFF      # Offset > 0xFFFF ⇒ region file > 256 MB
RESERVED_SECTORS = 2            # Timestamp + offset tables
MIN_OFFSET_ENTRIES = 4          # Fewer populated slots is indistinguishable from noise
MAX_DATA_LENGTH = 1 << 20       # Maximum possible encoded chunk length

# ── Expected chunk header bytes ──
ZLIB_COMPRESSION = 0x02

_COMPRESSION_METHOD_DEFLATE = 0x08
_WINDOW_SIZE_32K = 0x70
CMF = _COMPRESSION_METHOD_DEFLATE | _WINDOW_SIZE_32K

_FLEVEL_DEFAULT_ALGORITHM = 0x80
_FDICT_UNSET = 0x00
_FCHECK = (31 - (CMF * 256 + _FLEVEL_DEFAULT_ALGORITHM + _FDICT_UNSET) % 31) % 31
FLG = _FLEVEL_DEFAULT_ALGORITHM | _FDICT_UNSET | _FCHECK

# The payload's first byte (low byte of field 1) is not compared
COMP_CMF_FLG = (ZLIB_COMPRESSION << 24) | (CMF << 16) | (FLG << 8)
_COMP_CMF_FLG_MASK = 0xFFFFFF00


class SectorKind(Flag):
    NONE = 0
    SPARSE = 1
    TIMESTAMPS = 2
    OFFSETS = 4
    CHUNK_HEADER = 8


def _view(buffer: BufferLike) -> memoryview:
    if isinstance(buffer, SectorBuffer):
        return buffer.data
    return memoryview(buffer).cast("B")


def _table_fields(buffer: BufferLike) -> tuple:
    """Big-endian fields of the first block (or of whatever whole fields exist)."""
    data = _view(buffer)[:BLOCK_SIZE]
    count = len(data) // 4
    return struct.unpack_from(f">{count}I", data)


def is_sparse(
    buffer: BufferLike,
    threshold: int = SPARSE_THRESHOLD,
    unit: str = "byte",
) -> bool:
    """
    True if fewer than `threshold` units of the buffer are nonzero.

    unit="byte" counts nonzero bytes; unit="word" counts nonzero
    big-endian 32-bit fields. Any other unit is treated as "byte".
    """
    data = _view(buffer)
    if unit == "word":
        count = len(data) // 4
        words = struct.unpack_from(f">{count}I", data)
        nonzero = count - words.count(0)
    else:
        raw = bytes(data)
        nonzero = len(raw) - raw.count(0)
    return nonzero < threshold


def has_timestamps(buffer: BufferLike, min_time: int, max_time: int) -> bool:
    """
    Could this sector be a timestamp table?

    Every nonzero field must lie in [min_time, max_time] and at least one
    field must be nonzero.
    """
    populated = [t for t in _table_fields(buffer) if t != 0]
    if not populated:
        return False
    return min(populated) >= min_time and max(populated) <= max_time


def has_offsets(buffer: BufferLike, reject_duplicates: bool = True) -> bool:
    """
    Could this sector be a chunk offset table?

    Rejects the sector if any offset exceeds MAX_SECTOR_OFFSET, if two
    populated slots claim the same offset (unless `reject_duplicates` is
    False, in which case the later slot wins), or if fewer than
    MIN_OFFSET_ENTRIES slots are populated. The populated slots, walked in
    ascending offset order, must then fit behind the reserved header sectors
    and each other's lengths.
    """
    chunk_length: dict[int, int] = {}
    offset_count = 0

    for field in _table_fields(buffer):
        entry = OffsetTableEntry.from_field(field)
        if entry.offset > MAX_SECTOR_OFFSET:
            return False
        if entry.length == 0:
            continue
        if entry.offset in chunk_length and reject_duplicates:
            return False
        chunk_length[entry.offset] = entry.length
        offset_count += 1

    if offset_count < MIN_OFFSET_ENTRIES:
        return False

    min_allowed_offset = RESERVED_SECTORS
    for offset in sorted(chunk_length):
        if offset < min_allowed_offset:
            return False
        min_allowed_offset += chunk_length[offset]
    return True


def has_encoded_chunk_header(buffer: BufferLike) -> bool:
    """
    Could this sector be the start of a zlib-compressed chunk?

    Field 0 is the record length (at most MAX_DATA_LENGTH); the top three
    bytes of field 1 must be compression type 2 followed by the zlib
    CMF/FLG pair for a 32K window at the default level.
    """
    data = _view(buffer)
    if len(data) < 8:
        return False
    data_length, comp_cmf_flg = struct.unpack_from(">II", data)
    if data_length > MAX_DATA_LENGTH:
        return False
    return (comp_cmf_flg & _COMP_CMF_FLG_MASK) == COMP_CMF_FLG


def classify(
    buffer: BufferLike,
    min_time: int,
    max_time: int,
    sparse_threshold: int = SPARSE_THRESHOLD,
    sparse_unit: str = "byte",
    reject_duplicates: bool = True,
) -> SectorKind:
    """Every kind the buffer satisfies, sparse included."""
    kind = SectorKind.NONE
    if is_sparse(buffer, sparse_threshold, sparse_unit):
        kind |= SectorKind.SPARSE
    if has_timestamps(buffer, min_time, max_time):
        kind |= SectorKind.TIMESTAMPS
    if has_offsets(buffer, reject_duplicates):
        kind |= SectorKind.OFFSETS
    if has_encoded_chunk_header(buffer):
        kind |= SectorKind.CHUNK_HEADER
    return kind
