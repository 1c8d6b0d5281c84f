"""Read-only access to Git objects stored in memory-mapped packfiles.

A store maps every ``*.pack``/``*.idx`` pair of a pack directory (and an
optional ``multi-pack-index``), looks objects up by id, inflates them on
demand and resolves delta chains with bounded depth and cycle detection.
"""

from __future__ import annotations

import contextlib
import glob
import mmap
import os
import threading
import zlib
from collections import OrderedDict
from typing import Any

from .delta import DeltaContext, apply_delta, parse_delta_header
from .idx import IdxError, IdxFile, parse_idx, verify_crc32
from .midx import MidxError, MidxFile, parse_midx
from .objects import ObjectType, detect_type, parse_hash

DEFAULT_MAX_DELTA_DEPTH = 50
DEFAULT_CACHE_SIZE = 1 << 14
MIDX_FILE_NAME = "multi-pack-index"

_HEADER_PROBE = 32
_MAX_SHORT_HEADER = 10
_ZLIB_SLACK = 1024
_READ_CHUNK = 1 << 16
_BASE_TYPES = (ObjectType.COMMIT, ObjectType.TREE, ObjectType.BLOB, ObjectType.TAG)


class StoreError(Exception):
    """Raised when a pack directory or a packed object cannot be read."""


class ObjectNotFoundError(StoreError, LookupError):
    """Raised when no mapped pack contains the requested object."""


class _LRUCache:
    """A size-bounded, thread-safe cache of inflated objects."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: OrderedDict[bytes, tuple[bytes, ObjectType]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: bytes) -> tuple[bytes, ObjectType] | None:
        with self._lock:
            value = self._items.get(key)
            if value is not None:
                self._items.move_to_end(key)
            return value

    def put(self, key: bytes, value: tuple[bytes, ObjectType]) -> None:
        with self._lock:
            self._items[key] = value
            self._items.move_to_end(key)
            while len(self._items) > self._capacity:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


def _map_file(path: str) -> Any:
    with open(path, "rb") as fh:
        if os.fstat(fh.fileno()).st_size == 0:
            return b""
        return mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ)


def _close_handle(handle: Any) -> None:
    if isinstance(handle, mmap.mmap):
        handle.close()


def _decode_header(data: bytes, limit: int) -> tuple[ObjectType, int, int]:
    if not data:
        raise StoreError("empty object")
    b0 = data[0]
    raw_type = (b0 >> 4) & 7
    size = b0 & 0x0F
    length = 0
    if not b0 & 0x80:
        length = 1
    else:
        shift = 4
        for i in range(1, min(len(data), limit)):
            b = data[i]
            size |= (b & 0x7F) << shift
            shift += 7
            if not b & 0x80:
                length = i + 1
                break
        else:
            if len(data) >= limit:
                raise StoreError("object header too long")
            raise StoreError("truncated object header")
    try:
        obj_type = ObjectType(raw_type)
    except ValueError:
        raise StoreError(f"unknown obj type {raw_type}") from None
    return obj_type, size, length


def parse_object_header(data: bytes) -> tuple[ObjectType, int, int]:
    """Decode a pack entry header into ``(type, size, header_length)``.

    The header may span at most ten bytes; a short or malformed header
    raises StoreError.
    """
    return _decode_header(bytes(data[:_MAX_SHORT_HEADER]), _MAX_SHORT_HEADER)


def read_raw_object(pack: Any, offset: int) -> tuple[ObjectType, bytes]:
    """Inflate the pack entry starting at ``offset`` without resolving deltas.

    ``pack`` is any sliceable byte buffer holding a whole packfile.
    """
    probe = bytes(pack[offset:offset + _HEADER_PROBE])
    obj_type, size, header_len = _decode_header(probe, _HEADER_PROBE)

    start = offset + header_len
    end = min(start + size + _ZLIB_SLACK, len(pack))
    inflater = zlib.decompressobj()
    out = bytearray()
    try:
        for pos in range(start, end, _READ_CHUNK):
            out += inflater.decompress(pack[pos:min(pos + _READ_CHUNK, end)])
            if inflater.eof:
                break
        out += inflater.flush()
    except zlib.error as exc:
        raise StoreError(f"inflate object at {offset}: {exc}") from exc
    if not inflater.eof:
        raise StoreError(f"inflate object at {offset}: unexpected end of data")
    return obj_type, bytes(out)


class Store:
    """Concurrent, read-only access to the objects of mapped packfiles."""

    def __init__(
        self,
        packs: list[IdxFile] | None = None,
        midx: MidxFile | None = None,
        pack_map: dict[str, Any] | None = None,
        *,
        max_delta_depth: int = DEFAULT_MAX_DELTA_DEPTH,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self.packs: list[IdxFile] = list(packs or [])
        self.midx = midx
        self.pack_map: dict[str, Any] = dict(pack_map or {})
        self.max_delta_depth = max_delta_depth
        self.verify_crc = False
        self._lock = threading.Lock()
        self._cache = _LRUCache(cache_size)

    def set_max_delta_depth(self, depth: int) -> None:
        """Change how many delta hops ``get`` follows before giving up."""
        with self._lock:
            self.max_delta_depth = depth

    def get(self, oid: bytes | str) -> tuple[bytes, ObjectType]:
        """Return the fully resolved contents and type of object ``oid``."""
        if isinstance(oid, str):
            oid = parse_hash(oid)
        with self._lock:
            depth = self.max_delta_depth
        return self._get(bytes(oid), DeltaContext(depth))

    def _get(self, oid: bytes, ctx: DeltaContext) -> tuple[bytes, ObjectType]:
        cached = self._cache.get(oid)
        if cached is not None:
            return cached

        if self.midx is not None:
            hit = self.midx.find_object(oid)
            if hit is not None:
                pack, offset = hit
                return self._inflate(pack, offset, oid, ctx)

        for pf in self.packs:
            offset = pf.find_object(oid)
            if offset is not None:
                return self._inflate(pf.pack, offset, oid, ctx)

        raise ObjectNotFoundError(f"object {oid.hex()} not found")

    def _inflate(self, pack: Any, offset: int, oid: bytes, ctx: DeltaContext) -> tuple[bytes, ObjectType]:
        obj_type, data = read_raw_object(pack, offset)
        if obj_type in _BASE_TYPES:
            if self.verify_crc:
                self._verify(pack, offset)
            result = (data, obj_type)
        elif obj_type.is_delta:
            full = self._resolve_delta(pack, offset, obj_type, data, ctx)
            result = (full, detect_type(full))
        else:
            raise StoreError(f"unknown obj type {int(obj_type)}")
        self._cache.put(oid, result)
        return result

    def _verify(self, pack: Any, offset: int) -> None:
        for pf in self.packs:
            if pf.pack is pack:
                entry = pf.entries_by_offset.get(offset)
                verify_crc32(pf, offset, entry.crc if entry is not None else 0)
                return

    def _resolve_delta(
        self, pack: Any, offset: int, obj_type: ObjectType, data: bytes, ctx: DeltaContext
    ) -> bytes:
        base_oid, distance, instructions = parse_delta_header(obj_type, data)
        if obj_type == ObjectType.REF_DELTA:
            ctx.check_ref_delta(base_oid)
            ctx.enter_ref_delta(base_oid)
            try:
                base, _ = self._get(base_oid, ctx)
            finally:
                ctx.exit()
        else:
            base_offset = offset - distance
            if distance == 0 or base_offset < 0:
                raise StoreError(f"invalid ofs-delta distance {distance} at offset {offset}")
            ctx.check_ofs_delta(base_offset)
            ctx.enter_ofs_delta(base_offset)
            try:
                base, _ = self._read_at(pack, base_offset, ctx)
            finally:
                ctx.exit()
        return apply_delta(base, instructions)

    def _read_at(self, pack: Any, offset: int, ctx: DeltaContext) -> tuple[bytes, ObjectType]:
        obj_type, data = read_raw_object(pack, offset)
        if obj_type.is_delta:
            full = self._resolve_delta(pack, offset, obj_type, data, ctx)
            return full, detect_type(full)
        return data, obj_type

    def close(self) -> None:
        """Unmap every pack and index file; calling it again is harmless.

        The first failure is raised after all files have been released.
        """
        first_exc: BaseException | None = None
        handles = list(self.pack_map.values()) + [pf.idx for pf in self.packs if pf.idx is not None]
        for handle in handles:
            try:
                _close_handle(handle)
            except (OSError, BufferError) as exc:
                if first_exc is None:
                    first_exc = exc
        self._cache.clear()
        if first_exc is not None:
            raise first_exc

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def _load_index(pack_path: str, handle: Any, has_midx: bool) -> IdxFile:
    stem = pack_path[: -len(".pack")] if pack_path.endswith(".pack") else pack_path
    idx_path = stem + ".idx"
    try:
        ix = _map_file(idx_path)
    except OSError as exc:
        if isinstance(exc, FileNotFoundError) and has_midx:
            # Pack is reachable only through the multi-pack-index.
            return IdxFile(pack=handle)
        raise StoreError(f"mmap idx: {exc}") from exc
    try:
        parsed = parse_idx(ix)
    except IdxError as exc:
        _close_handle(ix)
        raise StoreError(f"parse idx: {exc}") from exc
    parsed.pack = handle
    parsed.idx = ix
    return parsed


def open_store(directory: str | os.PathLike[str]) -> Store:
    """Map every pack in ``directory`` and return a ready Store.

    For a repository pass its ``.git/objects/pack`` directory.
    """
    abs_dir = os.path.abspath(os.fspath(directory))
    pack_cache: dict[str, Any] = {}

    midx: MidxFile | None = None
    midx_path = os.path.join(abs_dir, MIDX_FILE_NAME)
    if os.path.isfile(midx_path):
        try:
            midx_data = _map_file(midx_path)
        except OSError as exc:
            raise StoreError(f"mmap midx: {exc}") from exc
        try:
            midx = parse_midx(abs_dir, midx_data, pack_cache)
        except MidxError as exc:
            for handle in pack_cache.values():
                _close_handle(handle)
            raise StoreError(f"parse midx: {exc}") from exc
        finally:
            _close_handle(midx_data)

    pack_paths = sorted(glob.glob(os.path.join(glob.escape(abs_dir), "*.pack")))
    if not pack_paths and midx is None:
        raise StoreError(f"no packfiles found in {abs_dir}")

    store = Store(midx=midx, pack_map=pack_cache)
    try:
        for path in pack_paths:
            if path not in store.pack_map:
                store.pack_map[path] = _map_file(path)
        for path, handle in store.pack_map.items():
            store.packs.append(_load_index(path, handle, midx is not None))
    except BaseException:
        with contextlib.suppress(OSError, BufferError):
            store.close()
        raise
    return store