#!/usr/bin/env python3
"""
regioncarve — Find deleted Minecraft region data in free filesystem blocks.

Usage:
    python main.py scan -f disk.img                   # report table/chunk hits
    python main.py scan -f disk.img --start 2015-01-01 --stop 2016-01-01
    python main.py extract -f disk.img -o recovered   # save inflated chunks
    python main.py dump -i disk.img -o free.bin -t free.idx
"""

import sys
import logging
import argparse

from regioncarve import __version__
from regioncarve.block_reader import BACKENDS, open_block_source
from regioncarve.scanner import (
    DEFAULT_START,
    CarvingScanner,
    ScanConfig,
    ScanProgress,
    coalesce_events,
    current_time,
    format_run,
    parse_time,
)


def _build_config(args) -> ScanConfig:
    start_time = parse_time(args.start)
    stop_time = current_time() if args.stop == "now" else parse_time(args.stop)
    if stop_time < start_time:
        raise ValueError(f"--stop ({args.stop}) is before --start ({args.start})")
    return ScanConfig(
        min_time=start_time,
        max_time=stop_time,
        start_block=args.first_block,
        max_block=args.max_blocks,
        sparse_fast_path=not args.no_sparse_skip,
        sparse_unit=args.sparse_unit,
        skip_unreadable=args.skip_unreadable,
    )


def _progress_printer():
    ll = 0

    def on_progress(p: ScanProgress):
        nonlocal ll
        pct = p.progress_percent
        bw = 30
        filled = int(bw * pct / 100)
        bar = "█" * filled + "░" * (bw - filled)
        line = (f"\r  [{bar}] {pct:5.1f}%  block {p.current_block:,}  "
                f"hits: {p.hits}")
        pad = max(0, ll - len(line))
        sys.stderr.write(line + " " * pad)
        sys.stderr.flush()
        ll = len(line)

    return on_progress


def _scan_events(args, config: ScanConfig):
    """Events for the whole image, serial or sharded."""
    if args.workers > 1:
        from regioncarve.parallel import parallel_scan
        if args.progress:
            print("Warning: --progress is not shown when scanning with "
                  f"--workers {args.workers}", file=sys.stderr)
        yield from parallel_scan(args.file, config, args.backend, args.workers)
        return

    with open_block_source(args.file, args.backend) as source:
        scanner = CarvingScanner(source, config)
        if args.progress:
            scanner.set_progress_callback(_progress_printer())
        yield from scanner.scan()
        if args.progress:
            sys.stderr.write("\n")


def cmd_scan(args) -> int:
    config = _build_config(args)
    if args.verbose:
        print(f"Start Timestamp: {config.min_time}")
        print(f"Stop Timestamp:  {config.max_time}")

    for run in coalesce_events(_scan_events(args, config)):
        print(format_run(run), flush=True)
    return 0


def cmd_extract(args) -> int:
    from regioncarve.extract import ChunkRecovery

    config = _build_config(args)
    events = list(_scan_events(args, config))

    with open_block_source(args.file, args.backend) as source:
        recovery = ChunkRecovery(source, args.output, decode=not args.no_nbt)
        chunks = recovery.recover(events)

    s = recovery.stats
    print(f"Chunk candidates: {s.candidates}")
    print(f"Recovered:        {s.recovered}")
    print(f"  duplicates:     {s.duplicates}")
    print(f"  not NBT:        {s.nbt_failures}")
    print(f"Failed:           {s.assembly_failures + s.decompression_failures}"
          f" ({s.assembly_failures} assembly, {s.decompression_failures} inflate)")
    for chunk in chunks:
        pos = f"  chunk {chunk.position}" if chunk.position else ""
        print(f"  {chunk.block}: {chunk.size} bytes{pos}")
    print(f"Saved to: {args.output}")
    return 0


def cmd_dump(args) -> int:
    from regioncarve.dump import dump_unused_blocks

    if not args.output and not args.table:
        print(f"{sys.argv[0]}: You must specify an output mode via --output, "
              "--table, or both.", file=sys.stderr)
        return 1

    data_out = open(args.output, "wb") if args.output else None
    table_out = open(args.table, "wb") if args.table else None
    try:
        with open_block_source(args.input, args.backend) as source:
            count = dump_unused_blocks(source, data_out, table_out)
    finally:
        for stream in (data_out, table_out):
            if stream is not None:
                stream.close()
    if args.verbose:
        print(f"Wrote {count} block(s)")
    return 0


def _add_scan_options(p: argparse.ArgumentParser):
    p.add_argument("-f", "--file", required=True, help="Image file to be carved")
    p.add_argument("--start", default=DEFAULT_START,
                   help=f"Minimum accepted timestamp, YYYY-mm-dd (default {DEFAULT_START})")
    p.add_argument("--stop", default="now",
                   help="Maximum accepted timestamp, YYYY-mm-dd (default: now)")
    p.add_argument("--first-block", type=int, default=None,
                   help="Start scanning at this block")
    p.add_argument("--max-blocks", type=int, default=None,
                   help="Stop scanning before this block index")
    p.add_argument("--backend", choices=BACKENDS, default="auto",
                   help="Block source backend (default: auto)")
    p.add_argument("--workers", type=int, default=1,
                   help="Scan with N worker processes (default 1)")
    p.add_argument("--skip-unreadable", action="store_true",
                   help="Skip unreadable blocks instead of aborting")
    p.add_argument("--no-sparse-skip", action="store_true",
                   help="Classify near-empty blocks too")
    p.add_argument("--sparse-unit", choices=("byte", "word"), default="byte",
                   help="Unit counted by the sparse-block test (default byte)")
    p.add_argument("--progress", action="store_true", help="Show a progress bar")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scan filesystem images for deleted Minecraft region data.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    p_scan = sub.add_parser("scan", help="Report timestamp/offset tables and chunk headers")
    _add_scan_options(p_scan)
    p_scan.set_defaults(func=cmd_scan)

    p_extract = sub.add_parser("extract", help="Recover and save inflated chunks")
    _add_scan_options(p_extract)
    p_extract.add_argument("-o", "--output", required=True, help="Output directory")
    p_extract.add_argument("--no-nbt", action="store_true",
                           help="Don't parse recovered chunks as NBT")
    p_extract.set_defaults(func=cmd_extract)

    p_dump = sub.add_parser("dump", help="Dump unused, nonzero data blocks")
    p_dump.add_argument("-i", "--input", required=True, help="Filesystem image")
    p_dump.add_argument("-o", "--output", default="", help="Unused block data output")
    p_dump.add_argument("-t", "--table", default="", help="Unused block id output")
    p_dump.add_argument("--backend", choices=BACKENDS, default="auto",
                        help="Block source backend (default: auto)")
    p_dump.set_defaults(func=cmd_dump)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        return args.func(args)
    except (OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
