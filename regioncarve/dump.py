"""
Unused Block Dump — copy every free, non-zero block out of a source.

Produces up to two streams:
  • data  — the raw 4 KiB blocks, back to back
  • table — each block's index as a little-endian u64, in the same order

Useful for shipping just the candidate free space of a large image to
another machine before carving it.
"""

import struct
import logging
from typing import Optional, BinaryIO

from .block_reader import BlockSource, is_empty_block

logger = logging.getLogger(__name__)

_BLOCK_ID = struct.Struct("<Q")


def dump_unused_blocks(
    source: BlockSource,
    data_out: Optional[BinaryIO] = None,
    table_out: Optional[BinaryIO] = None,
) -> int:
    """Write free non-zero blocks to the given streams; return how many were written."""
    if data_out is None and table_out is None:
        raise ValueError("You must specify an output: data, table, or both")

    written = 0
    skipped_empty = 0
    for blk in range(source.first_index(), source.block_count()):
        if source.is_allocated(blk):
            continue
        block = source.read(blk)
        if is_empty_block(block):
            skipped_empty += 1
            continue
        if table_out is not None:
            table_out.write(_BLOCK_ID.pack(blk))
        if data_out is not None:
            data_out.write(block)
        written += 1

    for stream in (data_out, table_out):
        if stream is not None:
            stream.flush()

    logger.info(
        "Dumped %d unused block(s), skipped %d empty",
        written, skipped_empty,
    )
    return written


def read_block_table(table: BinaryIO) -> list[int]:
    """Block indices from a table written by dump_unused_blocks()."""
    raw = table.read()
    usable = len(raw) - len(raw) % _BLOCK_ID.size
    return [value for (value,) in _BLOCK_ID.iter_unpack(raw[:usable])]
