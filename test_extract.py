"""
End-to-end tests: chunk recovery with NBT labelling and the JSON log,
the sharded scan, and the command line.
"""
import json
import os
import struct

import pytest

import main
from regioncarve.block_reader import MemoryBlockSource, open_block_source
from regioncarve.extract import ChunkRecovery
from regioncarve.nbt import NbtDecodeError, chunk_position, decode_nbt
from regioncarve.parallel import optimal_worker_count, parallel_scan, split_block_ranges
from regioncarve.scanner import CarvingScanner, HitKind, ScanConfig, ScanEvent

from carve_fixtures import (
    BLOCK,
    chunk_record,
    nbt_chunk,
    offset_table,
    pad_blocks,
    timestamp_table,
)

CONFIG = ScanConfig(min_time=1_000_000_000, max_time=2_000_000_000)

TIMES = timestamp_table(1_500_000_001, 1_500_000_002, 1_500_000_003)
OFFSETS = offset_table([(2, 1), (3, 2), (5, 1), (6, 2), (8, 3), (11, 1)])
CHUNK = pad_blocks(chunk_record(nbt_chunk(3, -2)))
NOT_ZLIB = pad_blocks(struct.pack(">I", 200) + b"\x02\x78\x9c" + b"\x13" * 300)
NOT_NBT = pad_blocks(chunk_record(b"this is not an nbt document"))
# Declares three sectors but sits in the last block of the image
CUT_OFF = pad_blocks(struct.pack(">I", 9000) + b"\x02\x78\x9c" + b"\x55" * 20)


def _image(*blocks: bytes) -> bytes:
    return b"".join(pad_blocks(b) for b in blocks)


def test_decode_nbt_and_position():
    doc = decode_nbt(nbt_chunk(3, -2))
    assert chunk_position(doc) == (3, -2)


def test_decode_nbt_rejects_garbage():
    with pytest.raises(NbtDecodeError):
        decode_nbt(b"this is not an nbt document")
    with pytest.raises(NbtDecodeError):
        decode_nbt(b"")


def test_recovery(tmp_path):
    source = MemoryBlockSource(_image(b"", CHUNK, CHUNK, NOT_ZLIB, NOT_NBT, CUT_OFF))
    events = list(CarvingScanner(source, CONFIG).scan())
    assert [e.block for e in events] == [1, 2, 3, 4, 5]
    assert all(e.kind is HitKind.CHUNK_HEADER for e in events)

    out = tmp_path / "recovered"
    recovery = ChunkRecovery(source, str(out))
    chunks = recovery.recover(events)

    s = recovery.stats
    assert s.candidates == 5
    assert s.recovered == 2
    assert s.duplicates == 1
    assert s.decompression_failures == 1
    assert s.assembly_failures == 1
    assert s.nbt_failures == 1

    first, second = chunks
    assert first.block == 1 and first.blocks == (1,)
    assert first.nbt_valid is True
    assert first.position == (3, -2)
    assert second.block == 4 and second.nbt_valid is False
    assert second.position is None

    saved = out / "chunk_1.nbt"
    assert saved.read_bytes() == nbt_chunk(3, -2)
    assert sorted(os.listdir(out)) == ["chunk_1.nbt", "chunk_4.nbt", "recovery_log.json"]

    log = json.loads((out / "recovery_log.json").read_text())
    assert log["stats"]["recovered"] == 2
    assert log["chunks"][0]["position"] == [3, -2]
    assert log["chunks"][0]["saved_to"] == str(saved)


def test_recovery_ignores_table_events_and_skips_nbt_when_asked():
    source = MemoryBlockSource(_image(TIMES, CHUNK))
    events = [ScanEvent(0, HitKind.TIMESTAMPS), ScanEvent(1, HitKind.CHUNK_HEADER)]
    recovery = ChunkRecovery(source, decode=False)
    (chunk,) = recovery.recover(events)
    assert recovery.stats.candidates == 1
    assert chunk.nbt_valid is None and chunk.position is None
    assert chunk.saved_path == ""


def test_split_block_ranges():
    assert split_block_ranges(0, 10, 3) == [(0, 3), (3, 6), (6, 10)]
    assert split_block_ranges(5, 6, 4) == [(5, 6)]
    assert split_block_ranges(4, 4, 2) == []
    assert split_block_ranges(0, 100, 8, min_blocks=40) == [(0, 50), (50, 100)]


def test_optimal_worker_count():
    assert optimal_worker_count(10) == 1
    assert optimal_worker_count(10, requested=3) == 3
    assert optimal_worker_count(10, requested=64) == 8


@pytest.fixture
def carve_image(tmp_path):
    path = tmp_path / "disk.img"
    blocks = [b""] * 24
    blocks[1] = TIMES
    blocks[3] = CHUNK
    blocks[4] = NOT_ZLIB
    blocks[11] = OFFSETS
    blocks[12] = CHUNK
    blocks[20] = TIMES
    path.write_bytes(_image(*blocks))
    return str(path)


def test_parallel_scan_matches_serial(carve_image):
    with open_block_source(carve_image, "file") as source:
        serial = list(CarvingScanner(source, CONFIG).scan())
    assert [e.block for e in serial] == [1, 3, 4, 11, 12, 20]

    sharded = parallel_scan(carve_image, CONFIG, backend="file", workers=3)
    assert sharded == serial


def test_cli_scan(carve_image, capsys):
    assert main.main(["scan", "-f", carve_image, "--backend", "file"]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "1: timestamps",
        "3: chunk headers: [2]",
        "11: offsets",
        "12: chunk headers: [1]",
        "20: timestamps",
    ]


def test_cli_scan_window_excludes_tables(carve_image, capsys):
    argv = ["scan", "-f", carve_image, "--start", "2020-01-01", "--stop", "2021-01-01"]
    assert main.main(argv) == 0
    assert "timestamps" not in capsys.readouterr().out


def test_cli_extract(carve_image, tmp_path, capsys):
    out = tmp_path / "out"
    assert main.main(["extract", "-f", carve_image, "-o", str(out)]) == 0
    text = capsys.readouterr().out
    assert "Recovered:        1" in text
    assert "chunk (3, -2)" in text
    assert (out / "chunk_3.nbt").exists()


def test_cli_dump(carve_image, tmp_path):
    data, table = tmp_path / "free.bin", tmp_path / "free.idx"
    assert main.main(["dump", "-i", carve_image, "-o", str(data), "-t", str(table)]) == 0
    assert data.stat().st_size == 6 * BLOCK
    assert table.stat().st_size == 6 * 8


def test_cli_dump_needs_output(carve_image, capsys):
    assert main.main(["dump", "-i", carve_image]) == 1
    assert "output mode" in capsys.readouterr().err


def test_cli_errors(tmp_path, capsys):
    assert main.main(["scan", "-f", str(tmp_path / "missing.img")]) == 1
    assert capsys.readouterr().err.startswith("Error:")
    argv = ["scan", "-f", str(tmp_path / "missing.img"), "--start", "yesterday"]
    assert main.main(argv) == 1
    assert "Failed to parse timestamp" in capsys.readouterr().err


def test_parse_time():
    assert main.parse_time("2015-06-01") > main.parse_time("2015-01-01")
    with pytest.raises(ValueError):
        main.parse_time("2015/06/01")


def test_cli_progress_with_workers_warns(carve_image, capsys):
    argv = ["scan", "-f", carve_image, "--backend", "file", "--workers", "2", "--progress"]
    assert main.main(argv) == 0
    captured = capsys.readouterr()
    assert "--progress is not shown" in captured.err
    assert captured.out.splitlines()[0] == "1: timestamps"
