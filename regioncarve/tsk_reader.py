"""
TSK Block Source — image access through The Sleuth Kit (pytsk3).

pytsk3 opens anything libtsk's image layer understands (raw images, split
images, and EWF/AFF when libtsk was built with them), and its filesystem
layer gives us the block geometry. Allocation still comes from the ext
bitmap parser, which reads through the same TSK image handle.

Requires: pytsk3 (pip install pytsk3)
"""

import logging

from .block_reader import BLOCK_SIZE, BlockSource, BlockSourceError
from .filesystem import parse_ext_bitmap, ExtAllocation

logger = logging.getLogger(__name__)

# Try to import pytsk3 — gracefully degrade if not available
try:
    import pytsk3
    HAS_TSK = True
except ImportError:
    HAS_TSK = False
    logger.info("pytsk3 not installed — TSK block source disabled")


def is_available() -> bool:
    """Check if pytsk3 is installed and usable."""
    return HAS_TSK


class TskBlockSource(BlockSource):
    """Reads 4 KiB blocks through a pytsk3 image handle."""

    def __init__(self, path: str):
        if not HAS_TSK:
            raise BlockSourceError(
                "pytsk3 is not installed (pip install pytsk3) — "
                "use the 'mmap' or 'ext' backend instead"
            )
        self.path = path
        try:
            self._img = pytsk3.Img_Info(path)
        except (IOError, OSError) as e:
            raise BlockSourceError(f"TSK could not open {path}: {e}") from e

        self._size = self._img.get_size()
        self._first = 0
        self._total_blocks = self._size // BLOCK_SIZE
        self.fs_type = ""
        self.allocation: ExtAllocation = None

        try:
            fs = pytsk3.FS_Info(self._img)
        except (IOError, OSError) as e:
            logger.info("TSK: no filesystem on %s (%s) — flat image", path, e)
            fs = None

        if fs is not None:
            block_size = fs.info.block_size
            if block_size != BLOCK_SIZE:
                self.close()
                raise BlockSourceError(
                    f"Filesystem block size {block_size} does not match "
                    f"region sector size {BLOCK_SIZE}"
                )
            self._first = fs.info.first_block
            self._total_blocks = min(fs.info.last_block + 1, self._total_blocks)
            self.fs_type = str(fs.info.ftype)
            logger.info(
                "TSK: fs type %s, blocks %d..%d",
                self.fs_type, self._first, self._total_blocks - 1,
            )
            self.allocation = parse_ext_bitmap(self._read_bytes)
            if self.allocation is not None:
                self._first = self.allocation.first_data_block

    def _read_bytes(self, offset: int, size: int) -> bytes:
        size = min(size, self._size - offset)
        if size <= 0:
            return b""
        return self._img.read(offset, size)

    def first_index(self) -> int:
        return self._first

    def block_count(self) -> int:
        return self._total_blocks

    def is_allocated(self, index: int) -> bool:
        if self.allocation is None:
            return False
        return self.allocation.is_allocated(index)

    def _read_range(self, index: int, block_count: int) -> bytes:
        try:
            return self._read_bytes(index * BLOCK_SIZE, block_count * BLOCK_SIZE)
        except (IOError, OSError) as e:
            raise BlockSourceError(f"Could not read block {index}: {e}") from e

    def close(self):
        if self._img is not None:
            self._img.close()
            self._img = None
