"""
Builders for synthetic region-file sectors and filesystem images used by the tests.
"""
import struct
import zlib

BLOCK = 4096


def pad_blocks(data: bytes) -> bytes:
    """Zero-pad `data` to a whole number of 4 KiB blocks (at least one)."""
    blocks = max(1, (len(data) + BLOCK - 1) // BLOCK)
    return data + b"\x00" * (blocks * BLOCK - len(data))


def timestamp_table(*times: int) -> bytes:
    return pad_blocks(b"".join(struct.pack(">I", t) for t in times))


def offset_table(entries) -> bytes:
    """entries: iterable of (sector_offset, sector_count), one per slot from slot 0."""
    fields = b"".join(struct.pack(">I", (off << 8) | length) for off, length in entries)
    return pad_blocks(fields)


def chunk_record(payload: bytes, level: int = 6) -> bytes:
    """[u32 length][u8 2][zlib stream] with length = len(zlib stream), unpadded."""
    compressed = zlib.compress(payload, level)
    return struct.pack(">IB", len(compressed), 2) + compressed


def pseudo_random(n: int, seed: int = 42) -> bytes:
    """Deterministic incompressible-looking bytes."""
    out = bytearray()
    x = seed
    while len(out) < n:
        x = (x * 1103515245 + 12345) & 0x7FFFFFFF
        out.append((x >> 16) & 0xFF)
    return bytes(out)


def nbt_chunk(x: int, z: int) -> bytes:
    """Minimal big-endian NBT document: root compound with xPos/zPos ints."""
    def named(tag_id: int, name: str) -> bytes:
        raw = name.encode()
        return struct.pack(">BH", tag_id, len(raw)) + raw

    return (
        named(10, "")
        + named(3, "xPos") + struct.pack(">i", x)
        + named(3, "zPos") + struct.pack(">i", z)
        + named(8, "Status") + struct.pack(">H", 4) + b"full"
        + b"\x00"
    )


def ext2_image(
    n_blocks: int,
    used=(),
    contents=None,
    log_block_size: int = 2,
    blocks_per_group: int = 0,
    uninit_groups=(),
) -> bytes:
    """
    A bare ext2 image: superblock, group descriptors, one bitmap block per group.

    Metadata blocks (superblock through the last bitmap) are always marked
    used, as are bitmap bits past the last block, the way mke2fs pads them.
    `contents` maps block index → bytes placed at that block. Groups listed
    in `uninit_groups` get BLOCK_UNINIT and the superblock enables GDT_CSUM.
    """
    block_size = 1024 << log_block_size
    first_data_block = 1 if block_size == 1024 else 0
    blocks_per_group = blocks_per_group or block_size * 8
    data_blocks = n_blocks - first_data_block
    num_groups = (data_blocks + blocks_per_group - 1) // blocks_per_group
    image = bytearray(n_blocks * block_size)

    sb = 1024
    struct.pack_into("<I", image, sb + 4, n_blocks)
    struct.pack_into("<I", image, sb + 20, first_data_block)
    struct.pack_into("<I", image, sb + 24, log_block_size)
    struct.pack_into("<I", image, sb + 32, blocks_per_group)
    struct.pack_into("<H", image, sb + 56, 0xEF53)
    if uninit_groups:
        struct.pack_into("<I", image, sb + 100, 0x0010)

    gdt_block = first_data_block + 1
    bitmap_blocks = [gdt_block + 1 + g for g in range(num_groups)]
    for g, bitmap_block in enumerate(bitmap_blocks):
        desc = gdt_block * block_size + g * 32
        struct.pack_into("<I", image, desc, bitmap_block)
        if g in uninit_groups:
            struct.pack_into("<H", image, desc + 18, 0x0002)

    def mark(idx: int):
        group, bit = divmod(idx, blocks_per_group)
        image[bitmap_blocks[group] * block_size + (bit >> 3)] |= 1 << (bit & 7)

    for blk in set(used) | set(range(bitmap_blocks[-1] + 1)):
        if blk >= first_data_block:
            mark(blk - first_data_block)
    for idx in range(data_blocks, num_groups * blocks_per_group):
        mark(idx)

    for blk, data in (contents or {}).items():
        image[blk * block_size:blk * block_size + len(data)] = data
    return bytes(image)
