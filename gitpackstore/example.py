"""Build a small demonstration pack directory and read it back through a Store."""

from __future__ import annotations

import argparse
import hashlib
import os
import struct
import tempfile
import zlib
from collections import Counter
from dataclasses import dataclass
from itertools import accumulate
from typing import Iterable, Sequence

from .objects import ObjectType, hash_to_uint64, parse_hash
from .store import ObjectNotFoundError, open_store

PACK_SIGNATURE = b"PACK"
PACK_VERSION = 2
IDX_MAGIC = b"\xfftOc"
IDX_VERSION = 2
DUMMY_CRC = 0x12345678

_LARGE_OFFSET_LIMIT = 0x7FFFFFFF
_LARGE_OFFSET_FLAG = 0x80000000
_PREVIEW_LIMIT = 100


@dataclass(frozen=True)
class ExampleObject:
    """A Git object together with a human-readable label."""

    oid: bytes
    obj_type: ObjectType
    content: bytes
    name: str


def calculate_git_hash(obj_type: ObjectType, content: bytes) -> bytes:
    """Return the raw SHA-1 object id Git assigns to ``content`` of ``obj_type``."""
    digest = hashlib.sha1()
    digest.update(f"{obj_type} {len(content)}\0".encode())
    digest.update(content)
    return digest.digest()


def create_tree_content(entries: Iterable[tuple[str, str, bytes]]) -> bytes:
    """Serialise ``(mode, name, oid)`` triples into the body of a tree object."""
    return b"".join(f"{mode} {name}\0".encode() + bytes(oid) for mode, name, oid in entries)


def create_commit_content(
    tree: bytes, message: str, author: str, committer: str, timestamp: int
) -> bytes:
    """Serialise a parentless commit pointing at ``tree``."""
    return (
        f"tree {bytes(tree).hex()}\n"
        f"author {author} {timestamp} +0000\n"
        f"committer {committer} {timestamp} +0000\n"
        f"\n{message}\n"
    ).encode()


def _object(obj_type: ObjectType, content: bytes, name: str) -> ExampleObject:
    return ExampleObject(calculate_git_hash(obj_type, content), obj_type, content, name)


def create_example_objects() -> list[ExampleObject]:
    """Return three blobs, a tree listing them and a commit of that tree."""
    readme = _object(
        ObjectType.BLOB,
        b"# Example Repository\n"
        b"\n"
        b"This is an example repository demonstrating the pack object store.\n"
        b"\n"
        b"## Files\n"
        b"\n"
        b"- README.md (this file)\n"
        b"- main.go (example application)\n"
        b"- config.json (configuration file)\n",
        "README.md blob",
    )
    config = _object(
        ObjectType.BLOB,
        b"{\n"
        b'  "name": "objstore-example",\n'
        b'  "version": "1.0.0",\n'
        b'  "settings": {\n'
        b'    "cache_size": 16384,\n'
        b'    "max_delta_depth": 50,\n'
        b'    "verify_crc": false\n'
        b"  }\n"
        b"}",
        "config.json blob",
    )
    code = _object(
        ObjectType.BLOB,
        b"package main\n"
        b"\n"
        b'import "fmt"\n'
        b"\n"
        b"func main() {\n"
        b'    fmt.Println("Hello from objstore!")\n'
        b"}\n",
        "main.go blob",
    )
    tree = _object(
        ObjectType.TREE,
        create_tree_content(
            [
                ("100644", "README.md", readme.oid),
                ("100644", "config.json", config.oid),
                ("100644", "main.go", code.oid),
            ]
        ),
        "root tree",
    )
    commit = _object(
        ObjectType.COMMIT,
        create_commit_content(
            tree.oid,
            "Initial commit",
            "Example Author <author@example.com>",
            "Example Committer <committer@example.com>",
            1640995200,
        ),
        "initial commit",
    )
    return [readme, config, code, tree, commit]


def encode_object_header(obj_type: ObjectType, size: int) -> bytes:
    """Encode the variable-length type/size header of a pack entry."""
    out = bytearray()
    current = ((int(obj_type) & 7) << 4) | (size & 0x0F)
    size >>= 4
    while size:
        out.append(current | 0x80)
        current = size & 0x7F
        size >>= 7
    out.append(current)
    return bytes(out)


def create_example_pack(pack_dir: str, objects: Sequence[ExampleObject]) -> tuple[str, str]:
    """Write ``example.pack`` and ``example.idx`` holding ``objects``.

    Returns the paths of the pack and the index.
    """
    pack_path = os.path.join(pack_dir, "example.pack")
    idx_path = os.path.join(pack_dir, "example.idx")

    body = bytearray(PACK_SIGNATURE)
    body += struct.pack(">II", PACK_VERSION, len(objects))
    offsets: list[int] = []
    for obj in objects:
        offsets.append(len(body))
        body += encode_object_header(obj.obj_type, len(obj.content))
        body += zlib.compress(obj.content)
    body += hashlib.sha1(body).digest()

    with open(pack_path, "wb") as fh:
        fh.write(body)
    create_index_file(idx_path, [obj.oid for obj in objects], offsets)
    return pack_path, idx_path


def create_index_file(path: str, hashes: Sequence[bytes], offsets: Sequence[int]) -> None:
    """Write a version-2 pack index for the given object ids and pack offsets.

    CRCs are placeholders and the pack checksum is zeroed; the index's own
    trailing checksum is valid.
    """
    if len(hashes) != len(offsets):
        raise ValueError("hashes and offsets differ in length")
    pairs = sorted(zip((bytes(h) for h in hashes), offsets))

    counts = Counter(oid[0] for oid, _ in pairs)
    fanout = list(accumulate(counts.get(i, 0) for i in range(256)))

    buf = bytearray(IDX_MAGIC)
    buf += struct.pack(">I", IDX_VERSION)
    buf += struct.pack(">256I", *fanout)
    for oid, _ in pairs:
        buf += oid
    buf += struct.pack(f">{len(pairs)}I", *([DUMMY_CRC] * len(pairs)))

    large: list[int] = []
    for _, offset in pairs:
        if offset > _LARGE_OFFSET_LIMIT:
            buf += struct.pack(">I", _LARGE_OFFSET_FLAG | len(large))
            large.append(offset)
        else:
            buf += struct.pack(">I", offset)
    for offset in large:
        buf += struct.pack(">Q", offset)

    buf += bytes(20)
    buf += hashlib.sha1(buf).digest()
    with open(path, "wb") as fh:
        fh.write(buf)


_PARSE_EXAMPLES = [
    ("Valid Git commit hash", "d670460b4b4aece5915caf5c68d12f560a9fe3e4", True, ""),
    ("Valid Git blob hash", "89e5a3e7d8f6c4b2a1e0d9c8b7a6f5e4d3c2b1a0", True, ""),
    ("Valid hash with lowercase hex", "abcdef1234567890abcdef1234567890abcdef12", True, ""),
    ("Invalid - too short", "abcdef123456", False, "Hash must be exactly 40 characters"),
    (
        "Invalid - too long",
        "abcdef1234567890abcdef1234567890abcdef123456",
        False,
        "Hash must be exactly 40 characters",
    ),
    (
        "Invalid - contains non-hex characters",
        "ghijkl1234567890abcdef1234567890abcdef12",
        False,
        "Hash must contain only hexadecimal characters (0-9, a-f)",
    ),
    ("Edge case - all zeros (null hash)", "0" * 40, True, ""),
    ("Edge case - all F's", "f" * 40, True, ""),
]


def _demonstrate_parse_hash() -> None:
    print("--- ParseHash Examples ---")
    for name, text, valid, reason in _PARSE_EXAMPLES:
        print(f"Testing: {name}")
        print(f"  Input: {text}")
        try:
            oid = parse_hash(text)
        except ValueError as exc:
            if valid:
                print(f"  [error] Expected success but got error: {exc}")
            else:
                print(f"  [ok] Correctly rejected: {exc}")
                if reason:
                    print(f"  Reason: {reason}")
        else:
            if valid:
                print("  [ok] Successfully parsed")
                print(f"  Hash bytes: {oid.hex()}")
                print(f"  Uint64 representation: {hash_to_uint64(oid)}")
                print(f"  Round-trip: {text} -> {oid.hex()}")
            else:
                print("  [error] Expected error but parsing succeeded")
        print()


def _demonstrate_store(pack_dir: str, objects: Sequence[ExampleObject]) -> bool:
    print("--- Store Operations ---")
    all_ok = True
    with open_store(pack_dir) as store:
        print("Opened store successfully")
        print()

        for obj in objects:
            print(f"Retrieving {obj.name}:")
            print(f"  Hash: {obj.oid.hex()}")
            try:
                data, obj_type = store.get(obj.oid)
            except Exception as exc:  # report and keep going, like any demo
                print(f"  [error] Error: {exc}")
                all_ok = False
                continue
            print("  [ok] Successfully retrieved")
            print(f"  Type: {obj_type}")
            print(f"  Size: {len(data)} bytes")
            if data == obj.content:
                print("  [ok] Content matches expected")
            else:
                print("  [error] Content mismatch!")
                all_ok = False
            preview = data.decode("utf-8", errors="replace")
            if len(preview) > _PREVIEW_LIMIT:
                preview = preview[:_PREVIEW_LIMIT] + "..."
            print(f"  Preview: {preview!r}")
            print()

        print("Testing non-existent object:")
        try:
            store.get(parse_hash("deadbeef" * 5))
        except ObjectNotFoundError as exc:
            print(f"  [ok] Correctly handled missing object: {exc}")
        else:
            print("  [error] Expected error for non-existent object")
            all_ok = False
        print()

        print("Store configuration:")
        store.set_max_delta_depth(25)
        print(f"  Max delta depth set to: {store.max_delta_depth}")
        print(f"  CRC verification: {str(store.verify_crc).lower()}")
    return all_ok


def main(argv: Sequence[str] | None = None) -> int:
    """Run the demonstration; returns 0 when every object read back intact."""
    parser = argparse.ArgumentParser(
        prog="gitpackstore-example",
        description="Write a tiny pack to a temporary directory and read it back.",
    )
    parser.parse_args(argv)

    print("=== Git Object Store Example ===")
    print()
    _demonstrate_parse_hash()
    print()

    with tempfile.TemporaryDirectory(prefix="objstore-example-") as tmp:
        pack_dir = os.path.join(tmp, "objects", "pack")
        os.makedirs(pack_dir)
        objects = create_example_objects()
        pack_path, idx_path = create_example_pack(pack_dir, objects)
        print("Created example pack files:")
        print(f"  Pack: {pack_path}")
        print(f"  Index: {idx_path}")
        print()
        ok = _demonstrate_store(pack_dir, objects)
    return 0 if ok else 1