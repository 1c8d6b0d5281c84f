"""Reading Git pack index (``*.idx``, version 2) files and CRC checks."""

from __future__ import annotations

import bisect
import hashlib
import struct
import zlib
from dataclasses import dataclass, field
from typing import Any

from .objects import HASH_SIZE

IDX_MAGIC = b"\xfftOc"
HEADER_SIZE = 8
FANOUT_ENTRIES = 256
FANOUT_SIZE = FANOUT_ENTRIES * 4
CRC_SIZE = 4
OFFSET_SIZE = 4
LARGE_OFFSET_SIZE = 8

_LARGE_OFFSET_FLAG = 0x80000000
_LARGE_OFFSET_MASK = 0x7FFFFFFF
_UINT32_MAX = 0xFFFFFFFF
_HASH_CHUNK = 1 << 20


class IdxError(ValueError):
    """Raised when a pack index cannot be read or is inconsistent."""


class NonMonotonicFanoutError(IdxError):
    """The fan-out table of an index decreases somewhere."""

    def __init__(self, message: str = "idx corrupt: fan-out table not monotonic") -> None:
        super().__init__(message)


class BadIdxChecksumError(IdxError):
    """The index is truncated or its trailing checksum does not match."""

    def __init__(self, message: str = "idx corrupt: checksum mismatch") -> None:
        super().__init__(message)


class NonMonotonicOffsetsError(IdxError):
    """An object's end does not lie after its start."""

    def __init__(self, message: str = "idx corrupt: non-monotonic offsets") -> None:
        super().__init__(message)


class CRCMismatchError(IdxError):
    """The CRC-32 of a packed object differs from the one in the index."""


@dataclass(frozen=True)
class IdxEntry:
    """Pack offset and CRC-32 of one object listed in an index."""

    offset: int
    crc: int


@dataclass
class IdxFile:
    """Lookup tables of one ``*.idx`` file and the pack it describes.

    ``pack`` and ``idx`` hold the buffers of the pack and index files once
    the owner attaches them; parsing leaves them unset.
    """

    fanout: tuple[int, ...] = (0,) * FANOUT_ENTRIES
    oid_table: list[bytes] = field(default_factory=list)
    entries: list[IdxEntry] = field(default_factory=list)
    crc_by_offset: dict[int, int] = field(default_factory=dict)
    large_offsets: list[int] | None = None
    entries_by_offset: dict[int, IdxEntry] = field(default_factory=dict)
    sorted_offsets: list[int] = field(default_factory=list)
    pack: Any = None
    idx: Any = None

    def find_object(self, oid: bytes) -> int | None:
        """Return the pack offset of ``oid``, or None when it is not listed."""
        if not oid or not self.oid_table:
            return None
        first = oid[0]
        start = self.fanout[first - 1] if first > 0 else 0
        end = self.fanout[first]
        if start == end:
            return None
        key = bytes(oid)
        pos = bisect.bisect_left(self.oid_table, key, start, end)
        if pos < end and self.oid_table[pos] == key:
            return self.entries[pos].offset
        return None


def _read(data: Any, start: int, length: int) -> bytes:
    chunk = data[start:start + length]
    if len(chunk) != length:
        raise IdxError(f"idx truncated: wanted {length} bytes at {start}")
    return bytes(chunk)


def _sha1_prefix(data: Any, length: int) -> bytes:
    digest = hashlib.sha1()
    for pos in range(0, length, _HASH_CHUNK):
        digest.update(data[pos:min(pos + _HASH_CHUNK, length)])
    return digest.digest()


def parse_idx(data: Any) -> IdxFile:
    """Parse the contents of a version-2 pack index.

    ``data`` may be any sliceable byte buffer (bytes, bytearray, mmap).
    """
    header = _read(data, 0, HEADER_SIZE)
    if header[:4] != IDX_MAGIC:
        raise IdxError("unsupported idx version or v1 not handled")
    (version,) = struct.unpack(">I", header[4:])
    if version != 2:
        raise IdxError(f"unsupported idx version {version}")

    size = len(data)
    if size < HEADER_SIZE + FANOUT_SIZE + 2 * HASH_SIZE:
        raise BadIdxChecksumError()

    fanout = struct.unpack(f">{FANOUT_ENTRIES}I", _read(data, HEADER_SIZE, FANOUT_SIZE))
    if any(later < earlier for earlier, later in zip(fanout, fanout[1:])):
        raise NonMonotonicFanoutError()

    count = fanout[-1]
    if count == 0:
        return IdxFile(fanout=fanout)

    min_size = HEADER_SIZE + FANOUT_SIZE + count * (HASH_SIZE + CRC_SIZE + OFFSET_SIZE) + 2 * HASH_SIZE
    if size < min_size:
        raise BadIdxChecksumError()
    if count > _UINT32_MAX // HASH_SIZE:
        raise IdxError(f"idx claims {count} objects - refusing more than {_UINT32_MAX // HASH_SIZE}")

    oid_base = HEADER_SIZE + FANOUT_SIZE
    crc_base = oid_base + count * HASH_SIZE
    off_base = crc_base + count * CRC_SIZE
    large_base = off_base + count * OFFSET_SIZE

    oid_blob = _read(data, oid_base, count * HASH_SIZE)
    oids = [oid_blob[i:i + HASH_SIZE] for i in range(0, len(oid_blob), HASH_SIZE)]
    crcs = struct.unpack(f">{count}I", _read(data, crc_base, count * CRC_SIZE))
    raw_offsets = struct.unpack(f">{count}I", _read(data, off_base, count * OFFSET_SIZE))

    offsets: list[int] = []
    pending_large: list[tuple[int, int]] = []
    for obj_idx, raw in enumerate(raw_offsets):
        if raw & _LARGE_OFFSET_FLAG:
            pending_large.append((obj_idx, raw & _LARGE_OFFSET_MASK))
            offsets.append(0)
        else:
            offsets.append(raw)

    large_offsets: list[int] | None = None
    if pending_large:
        large_count = max(idx for _, idx in pending_large) + 1
        table = _read(data, large_base, large_count * LARGE_OFFSET_SIZE)
        large_offsets = list(struct.unpack(f">{large_count}Q", table))
        for obj_idx, large_idx in pending_large:
            if large_idx >= len(large_offsets):
                raise IdxError(f"invalid large offset index {large_idx}")
            offsets[obj_idx] = large_offsets[large_idx]

    entries = [IdxEntry(offset, crc) for offset, crc in zip(offsets, crcs)]
    crc_by_offset = {entry.offset: entry.crc for entry in entries}
    entries_by_offset = {entry.offset: entry for entry in entries}

    want_idx_sha = _read(data, size - HASH_SIZE, HASH_SIZE)
    if _sha1_prefix(data, size - HASH_SIZE) != want_idx_sha:
        raise BadIdxChecksumError()

    return IdxFile(
        fanout=fanout,
        oid_table=oids,
        entries=entries,
        crc_by_offset=crc_by_offset,
        large_offsets=large_offsets,
        entries_by_offset=entries_by_offset,
        sorted_offsets=sorted(offsets),
    )


def verify_crc32(idx_file: IdxFile, obj_offset: int, want: int) -> int:
    """Check the CRC-32 of the packed bytes of the object at ``obj_offset``.

    The object ends where the next object starts, or at the pack trailer.
    Returns the computed checksum; raises on mismatch or inconsistency.
    """
    offsets = idx_file.sorted_offsets
    pos = bisect.bisect_left(offsets, obj_offset)
    if pos >= len(offsets) or offsets[pos] != obj_offset:
        raise IdxError(f"offset {obj_offset} not found in index")
    if idx_file.pack is None:
        raise IdxError("index has no pack attached")

    if pos + 1 < len(offsets):
        obj_end = offsets[pos + 1]
    else:
        obj_end = len(idx_file.pack) - HASH_SIZE
    if obj_end <= obj_offset:
        raise NonMonotonicOffsetsError()

    packed = idx_file.pack[obj_offset:obj_end]
    if len(packed) != obj_end - obj_offset:
        raise IdxError(f"pack truncated at offset {obj_offset}")
    got = zlib.crc32(packed) & 0xFFFFFFFF
    if got != want:
        raise CRCMismatchError(f"crc mismatch @{obj_offset}: got {got:08x} want {want:08x}")
    return got