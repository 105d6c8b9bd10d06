"""
Chunk Assembly & Decompression — turn a chunk-header hit into NBT bytes.

Record layout inside a region file:

    +0  u32 big-endian  data_length   (length of the zlib stream at +5)
    +4  u8              compression   (2 = zlib)
    +5  ...             zlib stream, data_length bytes long

The record spans ceil((5 + data_length) / 4096) sectors. When the buffer
holding the header is shorter than that, we append further blocks —
consecutive ones by default, or an explicit list when the caller knows
the record is fragmented — and slice exactly [5, 5 + data_length).

Failures here are expected: most header hits on a raw disk are false
positives. They surface as AssemblyError / DecompressionError and
decode_chunk() turns them into a failed DecodedChunk.
"""

import zlib
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .block_reader import BLOCK_SIZE, BlockSource, BlockSourceError
from .classifier import has_encoded_chunk_header
from .sector import SectorBuffer

logger = logging.getLogger(__name__)

RECORD_HEADER_BYTES = 5         # u32 length + u8 compression type
INFLATE_WINDOW = 1024           # Bytes of output per inflate step


class AssemblyError(Exception):
    """Not enough blocks could be gathered to cover the declared record."""


class DecompressionError(Exception):
    """The payload is not a complete, valid zlib stream."""


def blocks_needed(data_length: int) -> int:
    """Whole sectors occupied by a record with this declared length."""
    return (RECORD_HEADER_BYTES + data_length + BLOCK_SIZE - 1) // BLOCK_SIZE


class ChunkAssembler:
    """Grows a chunk-header buffer until it covers the record, then slices the payload."""

    def __init__(self, source: BlockSource):
        self.source = source

    def assemble(
        self,
        buffer: SectorBuffer,
        extra_blocks: Optional[Sequence[int]] = None,
    ) -> bytes:
        """
        Return the compressed payload of the record starting at `buffer`.

        `extra_blocks` lists the blocks that continue the record, in order;
        when omitted, the blocks following the buffer's last block are used.
        Already-read blocks are kept as they are.
        """
        if not has_encoded_chunk_header(buffer):
            raise AssemblyError(f"Block {buffer.blocks[:1]} is not a chunk header")

        data_length = buffer.encoded_length()
        missing = blocks_needed(data_length) - buffer.block_count

        if missing > 0:
            try:
                if extra_blocks is None:
                    buffer.extend(self.source, buffer.blocks[-1] + 1, missing)
                else:
                    if len(extra_blocks) < missing:
                        raise AssemblyError(
                            f"Record needs {missing} more block(s), "
                            f"only {len(extra_blocks)} given"
                        )
                    buffer.extend_blocks(self.source, extra_blocks[:missing])
            except BlockSourceError as e:
                raise AssemblyError(
                    f"Could not read {missing} more block(s) for record "
                    f"at block {buffer.blocks[0]}: {e}"
                ) from e

        end = RECORD_HEADER_BYTES + data_length
        return bytes(buffer.data[RECORD_HEADER_BYTES:end])


def inflate_payload(payload: bytes, window: int = INFLATE_WINDOW) -> bytes:
    """
    Inflate a zlib stream, `window` output bytes at a time, until end-of-stream.

    Raises DecompressionError on a corrupt stream, on a stream that runs
    out of input before its end marker, or when zlib cannot allocate.
    """
    try:
        stream = zlib.decompressobj()
    except MemoryError as e:
        raise DecompressionError("Failed to initialize zlib stream") from e

    output = bytearray()
    pending = payload
    try:
        while not stream.eof:
            piece = stream.decompress(pending, window)
            output += piece
            pending = stream.unconsumed_tail
            if not piece and not pending and not stream.eof:
                raise DecompressionError(
                    f"zlib stream truncated after {len(output)} bytes"
                )
    except zlib.error as e:
        raise DecompressionError(f"Failed to decompress data using zlib: {e}") from e
    except MemoryError as e:
        raise DecompressionError("Out of memory while decompressing") from e

    return bytes(output)


@dataclass
class DecodedChunk:
    """Outcome of one header hit: NBT bytes, or why there are none."""
    block: int
    data_length: int = 0
    blocks: tuple = ()
    data: Optional[bytes] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def size(self) -> int:
        return len(self.data) if self.data is not None else 0


def decode_chunk(
    source: BlockSource,
    block: int,
    extra_blocks: Optional[Sequence[int]] = None,
) -> DecodedChunk:
    """
    Read, assemble and inflate the record whose header is at `block`.

    Never raises for a bad candidate; the failure is recorded in `error`.
    I/O errors on the header block itself still propagate.
    """
    buffer = SectorBuffer.read(source, block)
    result = DecodedChunk(block=block, data_length=buffer.encoded_length())

    try:
        payload = ChunkAssembler(source).assemble(buffer, extra_blocks)
        result.data = inflate_payload(payload)
    except AssemblyError as e:
        result.error = f"assembly: {e}"
        logger.debug("Block %d: %s", block, e)
    except DecompressionError as e:
        result.error = f"decompression: {e}"
        logger.debug("Block %d: %s", block, e)

    result.blocks = buffer.blocks
    return result
