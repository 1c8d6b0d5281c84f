"""Object identifiers and object kinds of a Git object store."""

from __future__ import annotations

import binascii
import enum
import sys

HASH_SIZE = 20
HEX_HASH_SIZE = 2 * HASH_SIZE


class ObjectType(enum.IntEnum):
    """Kinds of Git objects as encoded in a pack entry header."""

    BAD = 0
    COMMIT = 1
    TREE = 2
    BLOB = 3
    TAG = 4
    OFS_DELTA = 5
    REF_DELTA = 6

    def __str__(self) -> str:
        return _TYPE_NAMES.get(self, "")

    @property
    def is_delta(self) -> bool:
        return self in (ObjectType.OFS_DELTA, ObjectType.REF_DELTA)


_TYPE_NAMES = {
    ObjectType.COMMIT: "commit",
    ObjectType.TREE: "tree",
    ObjectType.BLOB: "blob",
    ObjectType.TAG: "tag",
    ObjectType.OFS_DELTA: "ofs-delta",
    ObjectType.REF_DELTA: "ref-delta",
}


def parse_hash(s: str) -> bytes:
    """Convert a 40-character hexadecimal object name into its 20 raw bytes."""
    if len(s) != HEX_HASH_SIZE:
        raise ValueError("invalid hash length")
    try:
        return binascii.unhexlify(s)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid hex in hash: {exc}") from exc


def hash_to_uint64(h: bytes) -> int:
    """Return the first eight bytes of ``h`` read in host byte order.

    The value is only meant for in-memory shortcuts and is not portable.
    """
    if len(h) < 8:
        raise ValueError("hash too short")
    return int.from_bytes(h[:8], sys.byteorder)


def detect_type(data: bytes) -> ObjectType:
    """Guess the kind of an inflated object from its leading bytes."""
    if len(data) < 4:
        return ObjectType.BLOB
    if data.startswith(b"tree "):
        return ObjectType.TREE
    if data.startswith(b"blob "):
        return ObjectType.BLOB
    if data.startswith((b"parent ", b"author ")):
        return ObjectType.COMMIT
    if data.startswith(b"tag "):
        return ObjectType.TAG
    return ObjectType.BLOB