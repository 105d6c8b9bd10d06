"""
Carving Scanner — walk the free blocks of a source and report region structures.

HOW IT WORKS
────────────
1.  Iterate block indices from the source's first valid index up to its
    block count (or a caller-supplied ceiling).
2.  Skip blocks the source reports as allocated — deleted region files
    only survive in free space.
3.  Read the block, drop it early if it is sparse (almost all zero).
4.  Test it independently for a timestamp table, an offset table and a
    chunk header; emit one event per positive test.

Events come out in strictly ascending block order, and within one block
in the order timestamps, offsets, chunk header. Header-like false
positives cluster heavily, so the report coalesces consecutive chunk
header events into a single run with a count.
"""

import time
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Callable, Iterable, Iterator

from .block_reader import BlockSource, BlockSourceError
from .classifier import (
    SPARSE_THRESHOLD,
    is_sparse,
    has_timestamps,
    has_offsets,
    has_encoded_chunk_header,
)

logger = logging.getLogger(__name__)

# Earliest plausible region-file modification date
DEFAULT_START = "2008-01-01"


def parse_time(timestr: str) -> int:
    """YYYY-mm-dd (local time) → epoch seconds."""
    try:
        return int(time.mktime(time.strptime(timestr, "%Y-%m-%d")))
    except ValueError:
        raise ValueError(f"Failed to parse timestamp: {timestr}") from None


def current_time() -> int:
    return int(time.time())


class HitKind(str, Enum):
    TIMESTAMPS = "timestamps"
    OFFSETS = "offsets"
    CHUNK_HEADER = "chunk header"


@dataclass(frozen=True)
class ScanEvent:
    """One positive classification of one block."""
    block: int
    kind: HitKind


@dataclass
class HitRun:
    """Reporting unit: a single table hit, or a run of chunk-header hits."""
    block: int                      # First block of the run
    kind: HitKind
    count: int = 1


@dataclass
class ScanConfig:
    """Tunables for one scan."""
    # Oldest and newest acceptable timestamps (epoch seconds)
    min_time: int = field(default_factory=lambda: parse_time(DEFAULT_START))
    max_time: int = field(default_factory=current_time)
    start_block: Optional[int] = None   # None = source's first index
    max_block: Optional[int] = None     # Stop before this index (None = end of source)
    sparse_fast_path: bool = True
    sparse_threshold: int = SPARSE_THRESHOLD
    sparse_unit: str = "byte"       # "byte" or "word"
    reject_duplicate_offsets: bool = True
    skip_unreadable: bool = False   # False = an unreadable block aborts the scan
    progress_interval: int = 4096   # Blocks between progress callbacks


@dataclass
class ScanProgress:
    start_block: int = 0
    stop_block: int = 0
    current_block: int = 0
    scanned_blocks: int = 0         # Free blocks actually read
    allocated_blocks: int = 0
    sparse_blocks: int = 0
    unreadable_blocks: int = 0
    timestamp_hits: int = 0
    offset_hits: int = 0
    header_hits: int = 0
    elapsed_time: float = 0.0
    is_scanning: bool = False

    @property
    def total_blocks(self) -> int:
        return max(0, self.stop_block - self.start_block)

    @property
    def progress_percent(self) -> float:
        if self.total_blocks == 0:
            return 0.0
        done = self.current_block - self.start_block
        return min(100.0, (done / self.total_blocks) * 100)

    @property
    def hits(self) -> int:
        return self.timestamp_hits + self.offset_hits + self.header_hits


class CarvingScanner:
    """
    Single-pass classifier over a BlockSource.

    scan() is a generator: a caller that wants to stop early simply stops
    iterating.
    """

    def __init__(self, source: BlockSource, config: Optional[ScanConfig] = None):
        self.source = source
        self.config = config or ScanConfig()
        self.progress = ScanProgress()
        self._on_progress: Optional[Callable[[ScanProgress], None]] = None

    def set_progress_callback(self, callback: Callable[[ScanProgress], None]):
        self._on_progress = callback

    def _notify_progress(self):
        if self._on_progress:
            try:
                self._on_progress(self.progress)
            except Exception as e:
                logger.debug("Progress callback failed: %s", e)

    def scan_bounds(self) -> tuple[int, int]:
        """[start, stop) block range this scanner's config selects."""
        start = self.source.first_index()
        if self.config.start_block is not None:
            start = max(start, self.config.start_block)
        stop = self.source.block_count()
        if self.config.max_block is not None:
            stop = min(stop, self.config.max_block)
        return start, max(start, stop)

    def scan(self) -> Iterator[ScanEvent]:
        start, stop = self.scan_bounds()
        return self.scan_range(start, stop)

    def scan_range(self, start: int, stop: int) -> Iterator[ScanEvent]:
        """Classify every free block in [start, stop), yielding events in order."""
        cfg = self.config
        p = self.progress
        p.start_block, p.stop_block, p.current_block = start, stop, start
        p.is_scanning = True
        t0 = time.time()

        logger.info("Scanning blocks %d..%d", start, stop)

        try:
            for blk in range(start, stop):
                p.current_block = blk
                if cfg.progress_interval and (blk - start) % cfg.progress_interval == 0:
                    p.elapsed_time = time.time() - t0
                    self._notify_progress()

                if self.source.is_allocated(blk):
                    p.allocated_blocks += 1
                    continue

                try:
                    data = self.source.read(blk)
                except BlockSourceError as e:
                    if not cfg.skip_unreadable:
                        raise
                    p.unreadable_blocks += 1
                    logger.warning("Skipping unreadable block %d: %s", blk, e)
                    continue

                p.scanned_blocks += 1
                for kind in self.classify_block(data):
                    if kind is HitKind.TIMESTAMPS:
                        p.timestamp_hits += 1
                    elif kind is HitKind.OFFSETS:
                        p.offset_hits += 1
                    else:
                        p.header_hits += 1
                    yield ScanEvent(blk, kind)
        finally:
            p.current_block = stop
            p.elapsed_time = time.time() - t0
            p.is_scanning = False
            self._notify_progress()
            logger.info(
                "Scan finished in %.1fs: %d free blocks read, %d allocated, "
                "%d sparse, %d unreadable — %d timestamp, %d offset, "
                "%d chunk header hit(s)",
                p.elapsed_time, p.scanned_blocks, p.allocated_blocks,
                p.sparse_blocks, p.unreadable_blocks,
                p.timestamp_hits, p.offset_hits, p.header_hits,
            )

    def classify_block(self, data) -> list[HitKind]:
        """Hit kinds for one block's bytes, in reporting order."""
        cfg = self.config
        if cfg.sparse_fast_path and is_sparse(data, cfg.sparse_threshold, cfg.sparse_unit):
            self.progress.sparse_blocks += 1
            return []

        kinds = []
        if has_timestamps(data, cfg.min_time, cfg.max_time):
            kinds.append(HitKind.TIMESTAMPS)
        if has_offsets(data, cfg.reject_duplicate_offsets):
            kinds.append(HitKind.OFFSETS)
        if has_encoded_chunk_header(data):
            kinds.append(HitKind.CHUNK_HEADER)
        return kinds


def coalesce_events(events: Iterable[ScanEvent]) -> Iterator[HitRun]:
    """
    Merge consecutive chunk-header events into one HitRun.

    A run is broken only by a timestamp or offset event; gaps between the
    header blocks themselves do not end it.
    """
    run: Optional[HitRun] = None
    for event in events:
        if event.kind is HitKind.CHUNK_HEADER:
            if run is None:
                run = HitRun(event.block, event.kind, 0)
            run.count += 1
            continue
        if run is not None:
            yield run
            run = None
        yield HitRun(event.block, event.kind)
    if run is not None:
        yield run


def format_run(run: HitRun) -> str:
    if run.kind is HitKind.CHUNK_HEADER:
        return f"{run.block}: chunk headers: [{run.count}]"
    return f"{run.block}: {run.kind.value}"
