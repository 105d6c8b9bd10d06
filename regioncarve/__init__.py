# regioncarve — Deleted region-file (Anvil / .mca) carving engine
# Recovers chunk tables and compressed chunks from free filesystem blocks.
#
# Architecture (bottom → top):
#   block_reader  — BlockSource contract + flat file / mmap / memory backends
#   filesystem    — ext2/3/4 block bitmaps (scan free blocks only)
#   tsk_reader    — pytsk3-backed block source
#   sector        — SectorBuffer: concatenated 4 KiB blocks + big-endian fields
#   classifier    — Sparse / timestamp table / offset table / chunk header tests
#   chunk         — Multi-block chunk assembly + zlib inflate
#   nbt           — Hand-off of inflated chunks to nbtlib
#   scanner       — Ordered single-pass scan + hit-run coalescing
#   parallel      — Multiprocessing range-sharded scanning
#   extract       — Chunk recovery pass (save, dedupe, JSON log)
#   dump          — Copy unused non-zero blocks out of an image

__version__ = "0.3.0"
