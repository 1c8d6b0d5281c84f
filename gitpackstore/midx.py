"""Reading Git multi-pack-index files (version 1, SHA-1)."""

from __future__ import annotations

import bisect
import mmap
import os
import struct
from dataclasses import dataclass, field
from typing import Any

from .idx import FANOUT_ENTRIES, FANOUT_SIZE
from .objects import HASH_SIZE

MIDX_MAGIC = b"MIDX"
MIDX_HEADER_SIZE = 12
CHUNK_ROW_SIZE = 12

CHUNK_PNAM = 0x504E414D
CHUNK_OIDF = 0x4F494446
CHUNK_OIDL = 0x4F49444C
CHUNK_OOFF = 0x4F4F4646
CHUNK_LOFF = 0x4C4F4646

_LARGE_OFFSET_FLAG = 0x80000000
_LARGE_OFFSET_MASK = 0x7FFFFFFF
_OOFF_ROW_SIZE = 8
_LOFF_ROW_SIZE = 8


class MidxError(ValueError):
    """Raised when a multi-pack-index cannot be read or is inconsistent."""


@dataclass(frozen=True)
class MidxEntry:
    """The pack holding one object and the object's offset inside it."""

    pack_id: int
    offset: int


@dataclass
class MidxFile:
    """Lookup tables of a multi-pack-index and the packs it references."""

    pack_readers: list[Any] = field(default_factory=list)
    pack_names: list[str] = field(default_factory=list)
    fanout: tuple[int, ...] = (0,) * FANOUT_ENTRIES
    object_ids: list[bytes] = field(default_factory=list)
    entries: list[MidxEntry] = field(default_factory=list)

    def find_object(self, oid: bytes) -> tuple[Any, int] | None:
        """Return ``(pack_buffer, offset)`` for ``oid``, or None if absent."""
        if not oid or not self.object_ids:
            return None
        first = oid[0]
        start = self.fanout[first - 1] if first > 0 else 0
        end = self.fanout[first]
        if start == end:
            return None
        key = bytes(oid)
        pos = bisect.bisect_left(self.object_ids, key, start, end)
        if pos >= end or self.object_ids[pos] != key:
            return None
        entry = self.entries[pos]
        if entry.pack_id >= len(self.pack_readers):
            raise MidxError(f"invalid pack id {entry.pack_id} for object {key.hex()}")
        return self.pack_readers[entry.pack_id], entry.offset


def _read(data: Any, start: int, length: int) -> bytes:
    if start < 0 or length < 0:
        raise MidxError(f"midx corrupt: bad range {start}+{length}")
    chunk = data[start:start + length]
    if len(chunk) != length:
        raise MidxError(f"midx truncated: wanted {length} bytes at {start}")
    return bytes(chunk)


def _map_file(path: str) -> Any:
    with open(path, "rb") as fh:
        if os.fstat(fh.fileno()).st_size == 0:
            return b""
        return mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ)


def _read_chunk_table(data: Any, chunk_count: int) -> list[tuple[int, int]]:
    rows = []
    for i in range(chunk_count + 1):
        row = _read(data, MIDX_HEADER_SIZE + i * CHUNK_ROW_SIZE, CHUNK_ROW_SIZE)
        chunk_id, offset = struct.unpack(">IQ", row)
        rows.append((chunk_id, offset))
    rows.sort(key=lambda row: row[1])
    return rows


def _find_chunk(table: list[tuple[int, int]], chunk_id: int) -> tuple[int, int]:
    for (cid, offset), (_, next_offset) in zip(table, table[1:]):
        if cid == chunk_id:
            return offset, next_offset - offset
    raise MidxError(f"chunk {chunk_id:08x} not found")


def _parse_pack_names(pnam: bytes, pack_count: int) -> list[str]:
    names: list[str] = []
    start = 0
    for _ in range(pack_count):
        if start >= len(pnam):
            raise MidxError(f"PNAM truncated; expected {pack_count} names")
        end = pnam.find(b"\0", start)
        if end < 0:
            raise MidxError("unterminated PNAM entry")
        if end == start:
            raise MidxError("empty PNAM entry before padding")
        names.append(os.fsdecode(pnam[start:end]))
        start = end + 1
    if len(names) != pack_count:
        raise MidxError(f"PNAM count mismatch ({len(names)} vs {pack_count})")
    return names


def _map_packs(directory: str, names: list[str], pack_cache: dict[str, Any]) -> list[Any]:
    packs: list[Any] = []
    opened: list[str] = []
    for name in names:
        path = os.path.join(directory, name)
        if path in pack_cache:
            packs.append(pack_cache[path])
            continue
        try:
            handle = _map_file(path)
        except OSError as exc:
            for done in opened:
                handle_done = pack_cache.pop(done)
                if isinstance(handle_done, mmap.mmap):
                    handle_done.close()
            raise MidxError(f"mmap pack {name!r}: {exc}") from exc
        pack_cache[path] = handle
        opened.append(path)
        packs.append(handle)
    return packs


def parse_midx(directory: str, data: Any, pack_cache: dict[str, Any]) -> MidxFile:
    """Parse a multi-pack-index held in ``data``.

    ``directory`` is the pack directory; every pack named in the PNAM chunk
    is mapped from it right away, reusing and filling ``pack_cache`` (keyed
    by full path).
    """
    header = _read(data, 0, MIDX_HEADER_SIZE)
    if header[:4] != MIDX_MAGIC:
        raise MidxError("not a MIDX file")
    if header[4] != 1:
        raise MidxError(f"unsupported midx version {header[4]}")
    if header[5] != 1:
        raise MidxError("only SHA-1 midx supported")
    chunk_count = header[6]
    (pack_count,) = struct.unpack(">I", header[8:12])

    table = _read_chunk_table(data, chunk_count)

    pn_off, pn_size = _find_chunk(table, CHUNK_PNAM)
    pack_names = _parse_pack_names(_read(data, pn_off, pn_size), pack_count)
    packs = _map_packs(directory, pack_names, pack_cache)

    fan_off, _ = _find_chunk(table, CHUNK_OIDF)
    fanout = struct.unpack(f">{FANOUT_ENTRIES}I", _read(data, fan_off, FANOUT_SIZE))
    count = fanout[-1]

    oid_off, _ = _find_chunk(table, CHUNK_OIDL)
    oid_blob = _read(data, oid_off, count * HASH_SIZE)
    object_ids = [oid_blob[i:i + HASH_SIZE] for i in range(0, len(oid_blob), HASH_SIZE)]

    ooff_off, _ = _find_chunk(table, CHUNK_OOFF)
    raw = _read(data, ooff_off, count * _OOFF_ROW_SIZE)

    large_offsets: tuple[int, ...] = ()
    try:
        loff_off, loff_size = _find_chunk(table, CHUNK_LOFF)
    except MidxError:
        loff_off, loff_size = 0, 0
    if loff_size > 0:
        loff_count = loff_size // _LOFF_ROW_SIZE
        large_offsets = struct.unpack(
            f">{loff_count}Q", _read(data, loff_off, loff_count * _LOFF_ROW_SIZE)
        )

    entries: list[MidxEntry] = []
    for pack_id, raw_offset in struct.iter_unpack(">II", raw):
        if raw_offset & _LARGE_OFFSET_FLAG:
            large_idx = raw_offset & _LARGE_OFFSET_MASK
            if large_idx >= len(large_offsets):
                raise MidxError(f"invalid LOFF index {large_idx}")
            offset = large_offsets[large_idx]
        else:
            offset = raw_offset
        entries.append(MidxEntry(pack_id, offset))

    return MidxFile(
        pack_readers=packs,
        pack_names=pack_names,
        fanout=fanout,
        object_ids=object_ids,
        entries=entries,
    )