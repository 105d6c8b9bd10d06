"""
Parallel Scanning — shard the block range across worker processes.

Per-block classification is cheap and the scan is usually I/O bound, so
the serial scanner is the default. On large images backed by fast storage
it can still pay to split [start, stop) into contiguous, disjoint ranges
and classify them in separate processes.

Ordering contract: each worker scans its range in ascending order and the
coordinator concatenates results by range start, so the merged event list
is exactly what the serial scanner would have produced.
"""

import os
import time
import logging
import multiprocessing as mp
from multiprocessing import Queue
from dataclasses import dataclass, field

from .block_reader import open_block_source
from .scanner import CarvingScanner, ScanConfig, ScanEvent, HitKind

logger = logging.getLogger(__name__)

MIN_BLOCKS_PER_WORKER = 16384   # 64 MB of 4 KiB blocks
MAX_WORKERS = 8


@dataclass
class WorkerResult:
    """Result from a single worker process."""
    worker_id: int
    range_start: int
    range_end: int
    events: list = field(default_factory=list)  # list of (block, kind value)
    scanned_blocks: int = 0
    elapsed: float = 0.0
    error: str = ""


def optimal_worker_count(total_blocks: int, requested: int = 0) -> int:
    """At least 1; never more than the CPUs, MAX_WORKERS, or the range allows."""
    if requested > 0:
        return min(requested, MAX_WORKERS)
    cpu_count = os.cpu_count() or 2
    max_by_size = max(1, total_blocks // MIN_BLOCKS_PER_WORKER)
    return min(max_by_size, cpu_count, MAX_WORKERS)


def split_block_ranges(
    start: int,
    stop: int,
    num_workers: int,
    min_blocks: int = 1,
) -> list[tuple[int, int]]:
    """
    Split [start, stop) into at most `num_workers` contiguous ranges.

    Ranges are disjoint, cover the whole interval and come back in
    ascending order. Each holds at least `min_blocks` blocks where possible.
    """
    total = stop - start
    if total <= 0:
        return []
    num_workers = max(1, min(num_workers, total // max(1, min_blocks)))
    chunk = total // num_workers
    ranges = []
    for i in range(num_workers):
        lo = start + i * chunk
        hi = stop if i == num_workers - 1 else lo + chunk
        ranges.append((lo, hi))
    return ranges


def _worker_scan(
    worker_id: int,
    path: str,
    backend: str,
    config: ScanConfig,
    block_range: tuple[int, int],
    result_queue: Queue,
):
    """Worker process: open its own source, scan one range, report back."""
    t0 = time.time()
    lo, hi = block_range
    try:
        with open_block_source(path, backend) as source:
            scanner = CarvingScanner(source, config)
            events = [(ev.block, ev.kind.value) for ev in scanner.scan_range(lo, hi)]
        result_queue.put(WorkerResult(
            worker_id=worker_id,
            range_start=lo,
            range_end=hi,
            events=events,
            scanned_blocks=scanner.progress.scanned_blocks,
            elapsed=time.time() - t0,
        ))
    except Exception as e:
        logger.error("Worker %d failed: %s", worker_id, e, exc_info=True)
        result_queue.put(WorkerResult(
            worker_id=worker_id,
            range_start=lo,
            range_end=hi,
            elapsed=time.time() - t0,
            error=f"{type(e).__name__}: {e}",
        ))


def parallel_scan(
    path: str,
    config: ScanConfig,
    backend: str = "auto",
    workers: int = 0,
) -> list[ScanEvent]:
    """
    Scan `path` with several processes and return events in ascending order.

    Falls back to the serial scanner when one worker is enough. A worker
    failure is re-raised as RuntimeError after all workers have finished.
    """
    with open_block_source(path, backend) as source:
        scanner = CarvingScanner(source, config)
        start, stop = scanner.scan_bounds()
        num_workers = optimal_worker_count(stop - start, workers)
        if num_workers <= 1:
            return list(scanner.scan())

    ranges = split_block_ranges(
        start, stop, num_workers,
        min_blocks=1 if workers > 0 else MIN_BLOCKS_PER_WORKER,
    )
    logger.info("Parallel scan: %d workers over blocks %d..%d", len(ranges), start, stop)

    result_queue: Queue = mp.Queue()
    processes = []
    for i, block_range in enumerate(ranges):
        proc = mp.Process(
            target=_worker_scan,
            args=(i, path, backend, config, block_range, result_queue),
            daemon=True,
        )
        processes.append(proc)
        proc.start()

    # Drain before join so no worker blocks on a full pipe
    results = [result_queue.get() for _ in processes]
    for proc in processes:
        proc.join()

    failed = [r for r in results if r.error]
    if failed:
        raise RuntimeError(
            "; ".join(f"worker {r.worker_id} [{r.range_start}, {r.range_end}): {r.error}"
                      for r in failed)
        )

    merged: list[ScanEvent] = []
    for result in sorted(results, key=lambda r: r.range_start):
        logger.info(
            "Worker %d complete: %d blocks read, %d hit(s) in %.1fs",
            result.worker_id, result.scanned_blocks, len(result.events), result.elapsed,
        )
        merged.extend(ScanEvent(blk, HitKind(kind)) for blk, kind in result.events)
    return merged
