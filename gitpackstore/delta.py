"""Delta headers, delta application and chain-safety bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field

from .objects import HASH_SIZE, ObjectType

_UINT64_MASK = (1 << 64) - 1
_MAX_OFS_HEADER = 10
_DEFAULT_COPY_LEN = 0x10000


class DeltaError(ValueError):
    """Raised for malformed deltas and unsafe delta chains."""


@dataclass
class DeltaContext:
    """State carried while resolving one delta chain.

    It detects cycles (by base object id and by pack offset) and bounds the
    chain depth.
    """

    max_depth: int
    depth: int = 0
    visited: set = field(default_factory=set)
    offsets: set = field(default_factory=set)

    def check_ref_delta(self, oid: bytes) -> None:
        """Raise DeltaError if following a ref-delta to ``oid`` is unsafe."""
        if self.depth >= self.max_depth:
            raise DeltaError(f"delta chain too deep (max {self.max_depth})")
        if bytes(oid) in self.visited:
            raise DeltaError(f"circular delta reference detected for {bytes(oid).hex()}")

    def check_ofs_delta(self, offset: int) -> None:
        """Raise DeltaError if following an ofs-delta to ``offset`` is unsafe."""
        if self.depth >= self.max_depth:
            raise DeltaError(f"delta chain too deep (max {self.max_depth})")
        if offset in self.offsets:
            raise DeltaError(f"circular delta reference detected at offset {offset}")

    def enter_ref_delta(self, oid: bytes) -> None:
        self.visited.add(bytes(oid))
        self.depth += 1

    def enter_ofs_delta(self, offset: int) -> None:
        self.offsets.add(offset)
        self.depth += 1

    def exit(self) -> None:
        self.depth -= 1


def parse_delta_header(obj_type: ObjectType, data: bytes) -> tuple[bytes | None, int, bytes]:
    """Split a delta entry into its base reference and instruction stream.

    Returns ``(base_oid, base_offset, instructions)``. For a ref-delta the
    base offset is 0; for an ofs-delta the base oid is None and the offset is
    the encoded negative distance.
    """
    if obj_type == ObjectType.REF_DELTA:
        if len(data) < HASH_SIZE:
            raise DeltaError("ref delta too short")
        return bytes(data[:HASH_SIZE]), 0, bytes(data[HASH_SIZE:])

    if not data:
        raise DeltaError("ofs delta too short")

    b0 = data[0]
    off = b0 & 0x7F
    if not b0 & 0x80:
        return None, off, bytes(data[1:])

    i = 1
    for b in data[1:_MAX_OFS_HEADER]:
        off = (((off + 1) << 7) | (b & 0x7F)) & _UINT64_MASK
        i += 1
        if not b & 0x80:
            break

    if i >= len(data):
        raise DeltaError("invalid ofs delta encoding")
    return None, off, bytes(data[i:])


def decode_varint(buf: bytes) -> tuple[int, int]:
    """Decode a little-endian base-128 varint.

    Returns ``(value, consumed)``; an empty buffer yields ``(0, 0)``.
    Raises DeltaError on truncation within the first four bytes or overflow.
    """
    if not buf:
        return 0, 0
    result = 0
    shift = 0
    for i, b in enumerate(buf):
        result = (result | ((b & 0x7F) << shift)) & _UINT64_MASK
        if not b & 0x80:
            return result, i + 1
        shift += 7
        if shift > 63:
            raise DeltaError("varint overflow")
    if len(buf) <= 4:
        raise DeltaError("truncated varint")
    return result, len(buf)


def apply_delta(base: bytes, delta: bytes) -> bytes:
    """Rebuild a target object from ``base`` and a Git copy/insert stream."""
    if not delta:
        raise DeltaError("empty delta")

    _, n1 = decode_varint(delta)
    if n1 <= 0 or n1 >= len(delta):
        raise DeltaError("malformed delta: bad base size")
    target_size, n2 = decode_varint(delta[n1:])
    if n2 <= 0 or n1 + n2 >= len(delta):
        raise DeltaError("malformed delta: bad target size")

    out = bytearray(target_size)
    base_len = len(base)
    delta_len = len(delta)
    pos = n1 + n2
    out_pos = 0

    def next_byte() -> int:
        nonlocal pos
        if pos >= delta_len:
            raise DeltaError("malformed delta: truncated copy operation")
        value = delta[pos]
        pos += 1
        return value

    while pos < delta_len:
        op = delta[pos]
        pos += 1

        if op & 0x80:
            cp_off = 0
            for bit, shift in ((0x01, 0), (0x02, 8), (0x04, 16), (0x08, 24)):
                if op & bit:
                    cp_off |= next_byte() << shift
            cp_len = 0
            for bit, shift in ((0x10, 0), (0x20, 8), (0x40, 16)):
                if op & bit:
                    cp_len |= next_byte() << shift
            if cp_len == 0:
                cp_len = _DEFAULT_COPY_LEN
            if cp_off + cp_len > base_len or out_pos + cp_len > target_size:
                raise DeltaError("malformed delta: copy out of range")
            out[out_pos:out_pos + cp_len] = base[cp_off:cp_off + cp_len]
            out_pos += cp_len
        elif op:
            if pos + op > delta_len or out_pos + op > target_size:
                raise DeltaError("malformed delta: insert out of range")
            out[out_pos:out_pos + op] = delta[pos:pos + op]
            pos += op
            out_pos += op
        else:
            raise DeltaError("malformed delta: invalid opcode 0")

    return bytes(out)