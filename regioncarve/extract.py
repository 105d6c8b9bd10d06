"""
Chunk Recovery — second pass over chunk-header hits.

For every chunk-header event: assemble the record, inflate it, optionally
parse it as NBT, drop exact duplicates, and save the uncompressed bytes
as chunk_<block>.nbt. A JSON log of everything recovered is written next
to the chunks.
"""

import os
import json
import time
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Iterable

from .block_reader import BlockSource
from .chunk import decode_chunk, DecodedChunk
from .nbt import decode_nbt, chunk_position, NbtDecodeError
from .scanner import HitKind, ScanEvent

logger = logging.getLogger(__name__)


@dataclass
class RecoveredChunk:
    """A chunk that inflated cleanly."""
    block: int
    blocks: tuple
    data_length: int
    size: int
    md5: str
    position: Optional[tuple] = None    # (xPos, zPos) when the NBT carries it
    nbt_valid: Optional[bool] = None    # None = NBT decoding not attempted
    saved_path: str = ""

    def to_log(self) -> dict:
        return {
            "block": self.block,
            "blocks": list(self.blocks),
            "data_length": self.data_length,
            "size": self.size,
            "md5": self.md5,
            "position": list(self.position) if self.position else None,
            "nbt_valid": self.nbt_valid,
            "saved_to": self.saved_path,
        }


@dataclass
class RecoveryStats:
    candidates: int = 0
    recovered: int = 0
    assembly_failures: int = 0
    decompression_failures: int = 0
    nbt_failures: int = 0
    duplicates: int = 0
    elapsed_time: float = 0.0


class ChunkRecovery:
    """Decode chunk-header hits from one source and keep the good ones."""

    LOG_NAME = "recovery_log.json"

    def __init__(
        self,
        source: BlockSource,
        output_dir: Optional[str] = None,
        decode: bool = True,
    ):
        self.source = source
        self.output_dir = output_dir
        self.decode = decode
        self.stats = RecoveryStats()
        self.chunks: list[RecoveredChunk] = []
        self._seen_md5: set[str] = set()
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

    def recover(self, events: Iterable[ScanEvent]) -> list[RecoveredChunk]:
        """Process every chunk-header event; other kinds are ignored."""
        t0 = time.time()
        for event in events:
            if event.kind is HitKind.CHUNK_HEADER:
                self.recover_block(event.block)
        self.stats.elapsed_time = time.time() - t0

        s = self.stats
        logger.info(
            "Recovered %d of %d chunk candidates in %.1fs "
            "(%d assembly, %d decompression, %d NBT failures, %d duplicates)",
            s.recovered, s.candidates, s.elapsed_time,
            s.assembly_failures, s.decompression_failures,
            s.nbt_failures, s.duplicates,
        )
        if self.output_dir:
            self.write_log()
        return self.chunks

    def recover_block(self, block: int) -> Optional[RecoveredChunk]:
        self.stats.candidates += 1
        decoded = decode_chunk(self.source, block)
        if not decoded.ok:
            if decoded.error.startswith("assembly"):
                self.stats.assembly_failures += 1
            else:
                self.stats.decompression_failures += 1
            return None

        md5 = hashlib.md5(decoded.data).hexdigest()
        if md5 in self._seen_md5:
            self.stats.duplicates += 1
            logger.debug("Block %d: duplicate of an earlier chunk (%s)", block, md5)
            return None
        self._seen_md5.add(md5)

        chunk = RecoveredChunk(
            block=block,
            blocks=decoded.blocks,
            data_length=decoded.data_length,
            size=decoded.size,
            md5=md5,
        )
        if self.decode:
            self._annotate(chunk, decoded)
        if self.output_dir:
            chunk.saved_path = self._save(chunk, decoded.data)

        self.stats.recovered += 1
        self.chunks.append(chunk)
        return chunk

    def _annotate(self, chunk: RecoveredChunk, decoded: DecodedChunk):
        try:
            doc = decode_nbt(decoded.data)
        except NbtDecodeError as e:
            self.stats.nbt_failures += 1
            chunk.nbt_valid = False
            logger.debug("Block %d: inflated but not NBT: %s", chunk.block, e)
            return
        chunk.nbt_valid = True
        chunk.position = chunk_position(doc)

    def _save(self, chunk: RecoveredChunk, data: bytes) -> str:
        path = os.path.join(self.output_dir, f"chunk_{chunk.block}.nbt")
        with open(path, "wb") as f:
            f.write(data)
        return path

    def get_recovery_log(self) -> list[dict]:
        return [c.to_log() for c in self.chunks]

    def write_log(self) -> str:
        log_path = os.path.join(self.output_dir, self.LOG_NAME)
        tmp = log_path + ".tmp"
        with open(tmp, "w") as f:
            json.dump({
                "stats": self.stats.__dict__,
                "chunks": self.get_recovery_log(),
            }, f, indent=2, default=str)
        os.replace(tmp, log_path)
        return log_path
