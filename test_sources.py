"""
Block source tests: flat file, mmap and in-memory backends, ext2 bitmap
allocation, backend auto-detection, and the unused-block dump.
"""
import io

import pytest

from regioncarve.block_reader import (
    BlockSourceError,
    FileBlockSource,
    MemoryBlockSource,
    MmapBlockSource,
    is_empty_block,
    open_block_source,
)
from regioncarve.dump import dump_unused_blocks, read_block_table
from regioncarve.filesystem import (
    Ext2BlockSource,
    detect_fs,
    parse_ext_bitmap,
    probe_ext_block_size,
)
from regioncarve.scanner import CarvingScanner, HitKind, ScanConfig, ScanEvent

from carve_fixtures import BLOCK, ext2_image, timestamp_table

TIMES = timestamp_table(1_500_000_001, 1_500_000_002, 1_500_000_003)


def _blocks(*fills: int) -> bytes:
    return b"".join(bytes([f]) * BLOCK for f in fills)


@pytest.fixture
def flat_image(tmp_path):
    path = tmp_path / "flat.img"
    # Trailing partial block is ignored
    path.write_bytes(_blocks(1, 2, 3) + b"\xff" * 100)
    return str(path)


@pytest.fixture
def ext_image(tmp_path):
    path = tmp_path / "ext2.img"
    path.write_bytes(ext2_image(16, used=(5,), contents={5: TIMES, 9: TIMES}))
    return str(path)


@pytest.mark.parametrize("cls", [FileBlockSource, MmapBlockSource])
def test_file_backends_read(flat_image, cls):
    with cls(flat_image) as source:
        assert source.first_index() == 0
        assert source.block_count() == 3
        assert source.read(1) == bytes([2]) * BLOCK
        assert source.read(1, 2) == _blocks(2, 3)
        assert source.read_blocks([2, 0]) == _blocks(3, 1)
        assert source.is_allocated(1) is False


@pytest.mark.parametrize("cls", [FileBlockSource, MmapBlockSource])
def test_file_backends_reject_out_of_range(flat_image, cls):
    with cls(flat_image) as source:
        with pytest.raises(BlockSourceError):
            source.read(3)
        with pytest.raises(BlockSourceError):
            source.read(2, 2)
        with pytest.raises(BlockSourceError):
            source.read(-1)
        with pytest.raises(BlockSourceError):
            source.read(0, 0)


def test_mmap_backend_maps_file(flat_image):
    with MmapBlockSource(flat_image) as source:
        assert source.is_mmap


def test_missing_file(tmp_path):
    with pytest.raises(BlockSourceError):
        FileBlockSource(str(tmp_path / "nope.img"))


def test_memory_source():
    source = MemoryBlockSource(_blocks(0, 7), allocated={0})
    assert source.block_count() == 2
    assert source.is_allocated(0) and not source.is_allocated(1)
    assert source.read(1)[0] == 7
    with pytest.raises(BlockSourceError):
        source.read(2)


def test_is_empty_block():
    assert is_empty_block(b"")
    assert is_empty_block(b"\x00" * BLOCK)
    assert is_empty_block(b"\x00" * 10)
    assert not is_empty_block(b"\x00" * (BLOCK - 1) + b"\x01")
    assert not is_empty_block(b"\x00\x01\x00")


def test_detect_fs(ext_image):
    with open(ext_image, "rb") as f:
        header = f.read(2048)
    assert detect_fs(header) == "ext2"
    assert detect_fs(b"\x00" * 2048) == "unknown"
    assert detect_fs(b"") == "unknown"
    assert probe_ext_block_size(ext_image) == BLOCK


def test_ext2_allocation(ext_image):
    with Ext2BlockSource(ext_image) as source:
        assert source.fs_type == "ext2"
        assert source.first_index() == 0
        assert source.block_count() == 16
        # superblock, group descriptors, bitmap, plus block 5
        assert [b for b in range(16) if source.is_allocated(b)] == [0, 1, 2, 5]
        assert source.allocation.free_blocks == 12
        assert source.allocation.is_allocated(16)


def test_ext2_scan_skips_allocated_blocks(ext_image):
    config = ScanConfig(min_time=1_000_000_000, max_time=2_000_000_000)
    with open_block_source(ext_image) as source:
        assert isinstance(source, Ext2BlockSource)
        events = list(CarvingScanner(source, config).scan())
    assert events == [ScanEvent(9, HitKind.TIMESTAMPS)]


def test_ext2_truncated_image(tmp_path):
    path = tmp_path / "short.img"
    path.write_bytes(ext2_image(16)[:10 * BLOCK])
    with Ext2BlockSource(str(path)) as source:
        assert source.allocation.total_blocks == 16
        assert source.block_count() == 10


def test_ext_small_blocks_rejected_then_flat(tmp_path):
    path = tmp_path / "ext1k.img"
    path.write_bytes(ext2_image(64, log_block_size=0))
    with pytest.raises(BlockSourceError):
        Ext2BlockSource(str(path))

    assert probe_ext_block_size(str(path)) == 1024
    with open_block_source(str(path)) as source:
        assert type(source) is MmapBlockSource
        assert source.block_count() == 16


def test_not_ext(flat_image):
    with pytest.raises(BlockSourceError):
        Ext2BlockSource(flat_image)
    assert probe_ext_block_size(flat_image) is None
    with open_block_source(flat_image) as source:
        assert type(source) is MmapBlockSource


def test_open_block_source_backends(flat_image):
    with open_block_source(flat_image, "file") as source:
        assert type(source) is FileBlockSource
    with pytest.raises(ValueError):
        open_block_source(flat_image, "raw")


def test_dump_unused_blocks():
    source = MemoryBlockSource(_blocks(1, 0, 2, 3, 0, 4), allocated={2})
    data, table = io.BytesIO(), io.BytesIO()

    assert dump_unused_blocks(source, data, table) == 3
    assert data.getvalue() == _blocks(1, 3, 4)

    table.seek(0)
    assert read_block_table(table) == [0, 3, 5]


def test_dump_table_only():
    source = MemoryBlockSource(_blocks(0, 9))
    table = io.BytesIO()
    assert dump_unused_blocks(source, table_out=table) == 1
    assert table.getvalue() == (1).to_bytes(8, "little")


def test_dump_needs_an_output():
    with pytest.raises(ValueError):
        dump_unused_blocks(MemoryBlockSource(_blocks(1)))


def test_tsk_flat_image(flat_image):
    pytest.importorskip("pytsk3")
    from regioncarve.tsk_reader import TskBlockSource, is_available

    assert is_available()
    with TskBlockSource(flat_image) as source:
        assert source.allocation is None
        assert source.block_count() == 3
        assert source.read(2) == bytes([3]) * BLOCK
        assert not source.is_allocated(1)


def test_ext2_free_count_across_groups():
    # Three groups of 8 blocks; the last holds 4 blocks plus padding bits
    image = ext2_image(20, used=(5, 17), blocks_per_group=8)
    alloc = parse_ext_bitmap(lambda offset, size: image[offset:offset + size])
    assert alloc.blocks_per_group == 8
    assert [b for b in range(20) if alloc.is_allocated(b)] == [0, 1, 2, 3, 4, 5, 17]
    assert alloc.free_blocks == 13
    assert alloc.is_allocated(20)


def test_ext2_uninit_group_counts_as_free():
    image = ext2_image(24, used=(10,), blocks_per_group=8, uninit_groups=(1,))
    alloc = parse_ext_bitmap(lambda offset, size: image[offset:offset + size])
    assert not alloc.is_allocated(10)
    assert alloc.is_allocated(4)
    assert alloc.free_blocks == 19
