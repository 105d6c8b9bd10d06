"""
Block Sources — fixed 4 KiB block I/O for the carving engine.

Every backend answers the same four questions:
  • read(index, count)    — raw bytes of `count` consecutive blocks
  • first_index()         — first block worth scanning
  • block_count()         — one past the last valid block index
  • is_allocated(index)   — is the block in use by the backing filesystem?

Backends without allocation metadata (flat file, mmap, memory) always
answer False, i.e. "treat everything as free space".

Backends
────────
  • FileBlockSource    — plain seek + read, works everywhere.
  • MmapBlockSource    — memory-mapped reads, falls back to seek + read.
  • MemoryBlockSource  — an in-memory image (tests, already-loaded data).
  • Ext2BlockSource    — ext2/3/4 image, allocation from the block bitmaps
                         (see filesystem.py).
  • TskBlockSource     — reads through pytsk3 (see tsk_reader.py).
"""

import os
import mmap
import logging
from typing import Optional, Iterable

logger = logging.getLogger(__name__)

# Region-file sector size; also the only filesystem block size we accept
BLOCK_SIZE = 4096

_ZERO_BLOCK = b"\x00" * BLOCK_SIZE


class BlockSourceError(OSError):
    """A requested block is out of range or could not be read."""


def is_empty_block(data: bytes) -> bool:
    """
    Fast check if a data block is entirely zeros.

    A zero block means never-written / wiped — cannot contain
    recoverable data.
    """
    length = len(data)
    if length == 0:
        return True
    if length == BLOCK_SIZE:
        return data == _ZERO_BLOCK

    # Cheap reject before the full comparison
    if data[0] != 0 or data[-1] != 0:
        return False
    return data == b"\x00" * length


class BlockSource:
    """
    Base class for block sources.

    Subclasses implement `_read_range()`, `first_index()` and
    `block_count()`; range checking lives here.
    """

    def read(self, index: int, block_count: int = 1) -> bytes:
        """Read `block_count` consecutive blocks starting at `index`."""
        if block_count < 1:
            raise BlockSourceError(f"Invalid block count: {block_count}")
        self._check_range(index, block_count)
        data = self._read_range(index, block_count)
        if len(data) != block_count * BLOCK_SIZE:
            raise BlockSourceError(
                f"Short read at block {index}: got {len(data)} bytes, "
                f"expected {block_count * BLOCK_SIZE}"
            )
        return data

    def read_blocks(self, indices: Iterable[int]) -> bytes:
        """Read an explicit (possibly non-contiguous) list of blocks."""
        return b"".join(self.read(idx, 1) for idx in indices)

    def first_index(self) -> int:
        raise NotImplementedError

    def block_count(self) -> int:
        raise NotImplementedError

    def is_allocated(self, index: int) -> bool:
        return False

    def close(self):
        pass

    def _read_range(self, index: int, block_count: int) -> bytes:
        raise NotImplementedError

    def _check_range(self, index: int, block_count: int):
        if index < 0 or index + block_count > self.block_count():
            raise BlockSourceError(
                f"Block number out of range: {index}"
                + (f" (+{block_count - 1})" if block_count > 1 else "")
            )

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class FileBlockSource(BlockSource):
    """Reads 4 KiB blocks from any old file."""

    def __init__(self, path: str):
        self.path = path
        try:
            self._fd = open(path, "rb")
        except OSError as e:
            raise BlockSourceError(f"Failed to open file: {path} ({e})") from e
        self._size = os.fstat(self._fd.fileno()).st_size
        if self._size == 0:
            # Block devices report st_size 0 — ask the device itself
            self._fd.seek(0, os.SEEK_END)
            self._size = self._fd.tell()
            self._fd.seek(0)
        self._total_blocks = self._size // BLOCK_SIZE

    @property
    def size(self) -> int:
        return self._size

    def first_index(self) -> int:
        return 0

    def block_count(self) -> int:
        return self._total_blocks

    def _read_range(self, index: int, block_count: int) -> bytes:
        try:
            self._fd.seek(index * BLOCK_SIZE)
            return self._fd.read(block_count * BLOCK_SIZE)
        except OSError as e:
            raise BlockSourceError(f"Could not read block {index}: {e}") from e

    def close(self):
        if self._fd is not None:
            self._fd.close()
            self._fd = None


class MmapBlockSource(FileBlockSource):
    """
    Reads 4 KiB blocks from a file using memory-mapped reads.

    Falls back to plain seek + read when the mapping is refused
    (raw devices on some platforms, 32-bit address space limits).
    """

    def __init__(self, path: str):
        super().__init__(path)
        self._mmap: Optional[mmap.mmap] = None
        if self._size > 0:
            self._try_mmap()

    def _try_mmap(self):
        try:
            self._mmap = mmap.mmap(self._fd.fileno(), 0, access=mmap.ACCESS_READ)
            logger.info(
                "mmap enabled: %d bytes (%.1f MB)",
                self._size, self._size / (1024 ** 2),
            )
        except (OSError, ValueError, OverflowError) as e:
            logger.info("mmap unavailable (%s), using buffered reads", e)
            self._mmap = None

    @property
    def is_mmap(self) -> bool:
        return self._mmap is not None

    def _read_range(self, index: int, block_count: int) -> bytes:
        if self._mmap is None:
            return super()._read_range(index, block_count)
        start = index * BLOCK_SIZE
        return self._mmap[start:start + block_count * BLOCK_SIZE]

    def close(self):
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        super().close()


class MemoryBlockSource(BlockSource):
    """An image held in memory, with an optional set of allocated blocks."""

    def __init__(self, data: bytes, allocated: Iterable[int] = (), first_index: int = 0):
        self._data = bytes(data)
        self._total_blocks = len(self._data) // BLOCK_SIZE
        self._allocated = frozenset(allocated)
        self._first = first_index

    def first_index(self) -> int:
        return self._first

    def block_count(self) -> int:
        return self._total_blocks

    def is_allocated(self, index: int) -> bool:
        return index in self._allocated

    def _read_range(self, index: int, block_count: int) -> bytes:
        start = index * BLOCK_SIZE
        return self._data[start:start + block_count * BLOCK_SIZE]


BACKENDS = ("auto", "file", "mmap", "ext", "tsk")


def open_block_source(path: str, backend: str = "auto") -> BlockSource:
    """
    Open `path` with the requested backend.

    "auto" picks the ext2/3/4 bitmap-backed source when the image carries an
    ext superblock with 4 KiB blocks, otherwise the mmap source.
    """
    if backend not in BACKENDS:
        raise ValueError(f"Unknown block source backend: {backend!r}")

    if backend == "file":
        return FileBlockSource(path)
    if backend == "mmap":
        return MmapBlockSource(path)
    if backend == "tsk":
        from .tsk_reader import TskBlockSource
        return TskBlockSource(path)

    from .filesystem import Ext2BlockSource, probe_ext_block_size

    if backend == "ext":
        return Ext2BlockSource(path)

    block_size = probe_ext_block_size(path)
    if block_size == BLOCK_SIZE:
        logger.info("ext filesystem with 4 KiB blocks — scanning free blocks only")
        return Ext2BlockSource(path)
    if block_size is not None:
        logger.warning(
            "ext filesystem has %d-byte blocks; scanning as a flat image",
            block_size,
        )
    return MmapBlockSource(path)
