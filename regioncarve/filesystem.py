"""
Filesystem Parser — ext2/3/4 block allocation bitmaps.

Deleted region files live in blocks the filesystem has marked free, so on
an ext image we only need to look at blocks whose bitmap bit is clear.

ext2/3/4 superblock at offset 1024:
  +4:   s_blocks_count_lo (4)
  +12:  s_free_blocks_count_lo (4)
  +20:  s_first_data_block (4)
  +24:  s_log_block_size (4) — block_size = 1024 << s_log_block_size
  +32:  s_blocks_per_group (4)
  +56:  s_magic (2) = 0xEF53
  +92:  s_feature_compat (4)
  +96:  s_feature_incompat (4)
  +100: s_feature_ro_compat (4)
  +254: s_desc_size (2) — group descriptor size for 64-bit
  +336: s_blocks_count_hi (4) — for 64-bit mode

Block Group Descriptor (32 bytes standard, 64 bytes for 64-bit):
  +0:  bg_block_bitmap_lo (4)
  +18: bg_flags (2)       — 0x0002 = BLOCK_UNINIT
  +32: bg_block_bitmap_hi (4, 64-bit only)
"""

import struct
import logging
from dataclasses import dataclass
from typing import Optional, Callable

from .block_reader import BLOCK_SIZE, BlockSourceError, MmapBlockSource

logger = logging.getLogger(__name__)

SUPERBLOCK_OFFSET = 1024
EXT_MAGIC = 0xEF53

_COMPAT_HAS_JOURNAL = 0x0004
_INCOMPAT_EXTENTS = 0x0040
_INCOMPAT_64BIT = 0x0080
_RO_COMPAT_GDT_CSUM = 0x0010
_RO_COMPAT_METADATA_CSUM = 0x0400
_BG_BLOCK_UNINIT = 0x0002

# Set bits per byte value
_POPCOUNT = bytes(bin(i).count("1") for i in range(256))


def _count_used(bitmap: bytes, nbits: int) -> int:
    """Set bits among the first `nbits` bits of a little-endian block bitmap."""
    full, rest = divmod(nbits, 8)
    used = sum(bitmap[:full].translate(_POPCOUNT))
    if rest and len(bitmap) > full:
        used += _POPCOUNT[bitmap[full] & ((1 << rest) - 1)]
    return used


@dataclass
class ExtAllocation:
    """Block allocation state of an ext2/3/4 filesystem."""
    fs_type: str                    # "ext2", "ext3", "ext4"
    block_size: int
    total_blocks: int
    first_data_block: int
    blocks_per_group: int
    free_blocks: int                # Counted from the bitmaps
    bitmap: bytes                   # Bit i ↔ block first_data_block + i; 1 = used

    def is_allocated(self, block: int) -> bool:
        if block < self.first_data_block or block >= self.total_blocks:
            return True
        idx = block - self.first_data_block
        return bool((self.bitmap[idx >> 3] >> (idx & 7)) & 1)

    @property
    def free_percent(self) -> float:
        if self.total_blocks == 0:
            return 0.0
        return (self.free_blocks / self.total_blocks) * 100


def detect_fs(header: bytes) -> str:
    """Detect ext2/3/4 from the first 2 KiB of an image; "unknown" otherwise."""
    if len(header) < SUPERBLOCK_OFFSET + 104:
        return "unknown"
    magic = struct.unpack_from("<H", header, SUPERBLOCK_OFFSET + 56)[0]
    if magic != EXT_MAGIC:
        return "unknown"
    compat = struct.unpack_from("<I", header, SUPERBLOCK_OFFSET + 92)[0]
    incompat = struct.unpack_from("<I", header, SUPERBLOCK_OFFSET + 96)[0]
    if incompat & _INCOMPAT_EXTENTS:
        return "ext4"
    if compat & _COMPAT_HAS_JOURNAL:
        return "ext3"
    return "ext2"


def probe_ext_block_size(path: str) -> Optional[int]:
    """Return the ext block size of the image at `path`, or None if not ext."""
    try:
        with open(path, "rb") as dev:
            header = dev.read(SUPERBLOCK_OFFSET * 2)
    except OSError as e:
        logger.debug("Could not probe %s: %s", path, e)
        return None
    if detect_fs(header) == "unknown":
        return None
    log_block_size = struct.unpack_from("<I", header, SUPERBLOCK_OFFSET + 24)[0]
    if log_block_size > 6:
        return None
    return 1024 << log_block_size


def parse_ext_bitmap(read_at: Callable[[int, int], bytes]) -> Optional[ExtAllocation]:
    """
    Parse the superblock, group descriptors and every block bitmap.

    `read_at(offset, size)` returns up to `size` bytes at byte `offset`.
    Returns None when the image is not ext2/3/4 or its geometry is bogus.
    Groups whose bitmap is uninitialised or unreadable count as free in
    their entirety, including any backup superblock, descriptor table and
    bitmap blocks they hold, so `free_blocks` can overstate the filesystem's
    own count on images with BLOCK_UNINIT groups.
    """
    header = read_at(0, SUPERBLOCK_OFFSET * 2)
    fs_type = detect_fs(header)
    if fs_type == "unknown":
        return None

    sb = header[SUPERBLOCK_OFFSET:SUPERBLOCK_OFFSET + 1024]
    blocks_count_lo = struct.unpack_from("<I", sb, 4)[0]
    first_data_block = struct.unpack_from("<I", sb, 20)[0]
    log_block_size = struct.unpack_from("<I", sb, 24)[0]
    blocks_per_group = struct.unpack_from("<I", sb, 32)[0]
    incompat = struct.unpack_from("<I", sb, 96)[0]
    ro_compat = struct.unpack_from("<I", sb, 100)[0]

    if log_block_size > 6 or blocks_per_group == 0 or blocks_per_group % 8:
        logger.warning("%s: implausible superblock geometry", fs_type)
        return None
    block_size = 1024 << log_block_size

    is_64bit = bool(incompat & _INCOMPAT_64BIT)
    desc_size = 32
    total_blocks = blocks_count_lo
    if is_64bit and len(sb) >= 340:
        total_blocks |= struct.unpack_from("<I", sb, 336)[0] << 32
        desc_size = max(32, struct.unpack_from("<H", sb, 254)[0])
    honour_uninit = bool(ro_compat & (_RO_COMPAT_GDT_CSUM | _RO_COMPAT_METADATA_CSUM))

    if total_blocks <= first_data_block:
        logger.warning("%s: superblock reports no data blocks", fs_type)
        return None

    data_blocks = total_blocks - first_data_block
    num_groups = (data_blocks + blocks_per_group - 1) // blocks_per_group

    logger.info(
        "%s: block_size=%d, total_blocks=%d, first_data_block=%d, "
        "blocks_per_group=%d, groups=%d, 64bit=%s",
        fs_type.upper(), block_size, total_blocks, first_data_block,
        blocks_per_group, num_groups, is_64bit,
    )

    # Group descriptor table starts in the block after the superblock
    gdt_offset = (first_data_block + 1) * block_size
    gdt_data = read_at(gdt_offset, num_groups * desc_size)
    if len(gdt_data) < num_groups * desc_size:
        logger.warning(
            "%s: Could not read full GDT (%d/%d bytes)",
            fs_type, len(gdt_data), num_groups * desc_size,
        )

    group_bytes = blocks_per_group // 8
    bitmap = bytearray(num_groups * group_bytes)
    free_blocks = data_blocks

    for group_idx in range(num_groups):
        gd_offset = group_idx * desc_size
        if gd_offset + 32 > len(gdt_data):
            break

        bitmap_block = struct.unpack_from("<I", gdt_data, gd_offset)[0]
        if is_64bit and desc_size >= 64:
            bitmap_block |= struct.unpack_from("<I", gdt_data, gd_offset + 32)[0] << 32
        flags = struct.unpack_from("<H", gdt_data, gd_offset + 18)[0]

        if bitmap_block == 0 or (honour_uninit and flags & _BG_BLOCK_UNINIT):
            continue

        chunk = read_at(bitmap_block * block_size, min(group_bytes, block_size))
        start = group_idx * group_bytes
        bitmap[start:start + len(chunk)] = chunk

        blocks_in_group = min(blocks_per_group, data_blocks - group_idx * blocks_per_group)
        free_blocks -= _count_used(chunk, blocks_in_group)

    logger.info(
        "%s: %d free blocks out of %d (%.1f%%)",
        fs_type.upper(), free_blocks, total_blocks,
        (free_blocks / total_blocks * 100) if total_blocks else 0,
    )

    return ExtAllocation(
        fs_type=fs_type,
        block_size=block_size,
        total_blocks=total_blocks,
        first_data_block=first_data_block,
        blocks_per_group=blocks_per_group,
        free_blocks=free_blocks,
        bitmap=bytes(bitmap),
    )


class Ext2BlockSource(MmapBlockSource):
    """Reader of 4 KiB data blocks from an ext2/3/4 filesystem image."""

    def __init__(self, path: str):
        super().__init__(path)
        try:
            alloc = parse_ext_bitmap(self._read_bytes)
        except (OSError, struct.error) as e:
            self.close()
            raise BlockSourceError(f"Could not read block bitmap of {path}: {e}") from e
        if alloc is None:
            self.close()
            raise BlockSourceError(f"Not an ext2/3/4 filesystem: {path}")
        if alloc.block_size != BLOCK_SIZE:
            self.close()
            raise BlockSourceError(
                "This ext2/3/4 filesystem does not have 4kB blocks "
                f"({alloc.block_size} bytes)"
            )
        self.allocation = alloc

        image_blocks = self._total_blocks
        if alloc.total_blocks > image_blocks:
            logger.warning(
                "Image holds %d blocks but superblock reports %d — "
                "scanning the blocks present",
                image_blocks, alloc.total_blocks,
            )
        self._total_blocks = min(alloc.total_blocks, image_blocks)

    @property
    def fs_type(self) -> str:
        return self.allocation.fs_type

    def _read_bytes(self, offset: int, size: int) -> bytes:
        if self._mmap is not None:
            return self._mmap[offset:offset + size]
        self._fd.seek(offset)
        return self._fd.read(size)

    def first_index(self) -> int:
        return self.allocation.first_data_block

    def is_allocated(self, index: int) -> bool:
        return self.allocation.is_allocated(index)
