"""
NBT hand-off — parse recovered chunk bytes with nbtlib.

The carving engine never inspects the document; this is only used to
label recovered chunks with their coordinates and to count chunks that
inflate cleanly but are not valid NBT.
"""

import io
import logging
from typing import Optional

import nbtlib

logger = logging.getLogger(__name__)


class NbtDecodeError(Exception):
    """The bytes are not a well-formed big-endian NBT document."""


def decode_nbt(data: bytes) -> nbtlib.File:
    try:
        return nbtlib.File.parse(io.BytesIO(data), byteorder="big")
    except Exception as e:
        raise NbtDecodeError(f"{type(e).__name__}: {e}") from e


def chunk_position(doc) -> Optional[tuple[int, int]]:
    """
    (xPos, zPos) of a chunk document, or None if it carries none.

    1.18+ chunks keep the coordinates at the root; older ones under
    "Level". Some nbtlib versions wrap the root compound under its name.
    """
    candidates = [doc]
    level = doc.get("Level")
    if level is not None:
        candidates.append(level)
    if len(doc) == 1:
        (inner,) = doc.values()
        if hasattr(inner, "get"):
            candidates.append(inner)
            if inner.get("Level") is not None:
                candidates.append(inner["Level"])

    for compound in candidates:
        x, z = compound.get("xPos"), compound.get("zPos")
        if x is not None and z is not None:
            return int(x), int(z)
    return None
