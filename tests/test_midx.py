import hashlib
import mmap
import os
import struct
import zlib

import pytest

from gitpackstore.midx import MidxEntry, MidxError, MidxFile, parse_midx


def blob_hash(content: bytes) -> bytes:
    return hashlib.sha1(b"blob %d\x00" % len(content) + content).digest()


def write_minimal_pack(path, content: bytes) -> None:
    header = b"PACK" + struct.pack(">II", 2, 1)
    obj_header = bytes([(3 << 4) | (len(content) & 0x0F)])
    with open(path, "wb") as fh:
        fh.write(header + obj_header + zlib.compress(content))


def build_midx(chunks, pack_count, version=1, hash_id=1):
    header = b"MIDX" + bytes([version, hash_id, len(chunks), 0]) + struct.pack(">I", pack_count)
    offset = 12 + (len(chunks) + 1) * 12
    rows = []
    for chunk_id, body in chunks:
        rows.append(chunk_id + struct.pack(">Q", offset))
        offset += len(body)
    rows.append(b"\x00" * 4 + struct.pack(">Q", offset))
    return header + b"".join(rows) + b"".join(body for _, body in chunks) + b"\x00" * 40


def standard_chunks(pack_names, objects, loff=None):
    """objects: list of (oid, pack_id, raw_offset)."""
    objects = sorted(objects)
    counts = [0] * 256
    for oid, _, _ in objects:
        counts[oid[0]] += 1
    fanout, total = [], 0
    for c in counts:
        total += c
        fanout.append(total)
    chunks = [
        (b"OIDF", struct.pack(">256I", *fanout)),
        (b"OIDL", b"".join(oid for oid, _, _ in objects)),
        (b"OOFF", b"".join(struct.pack(">II", pid, off) for _, pid, off in objects)),
        (b"PNAM", b"".join(name.encode() + b"\x00" for name in pack_names)),
    ]
    if loff is not None:
        chunks.append((b"LOFF", b"".join(struct.pack(">Q", v) for v in loff)))
    return chunks


@pytest.fixture
def pack_cache():
    cache = {}
    yield cache
    for handle in cache.values():
        if isinstance(handle, mmap.mmap):
            handle.close()


def test_parse_single_pack(tmp_path, pack_cache):
    content = b"hello midx"
    oid = blob_hash(content)
    write_minimal_pack(tmp_path / "test.pack", content)
    data = build_midx(standard_chunks(["test.pack"], [(oid, 0, 12)]), 1)

    midx = parse_midx(str(tmp_path), data, pack_cache)

    assert midx.fanout[255] == 1
    assert midx.object_ids == [oid]
    assert midx.pack_names == ["test.pack"]
    assert midx.entries == [MidxEntry(0, 12)]
    found = midx.find_object(oid)
    assert found is not None
    pack, offset = found
    assert offset == 12
    assert pack[:4] == b"PACK"
    assert os.path.join(str(tmp_path), "test.pack") in pack_cache


def test_find_missing_object(tmp_path, pack_cache):
    content = b"hello midx"
    write_minimal_pack(tmp_path / "test.pack", content)
    data = build_midx(standard_chunks(["test.pack"], [(blob_hash(content), 0, 12)]), 1)
    midx = parse_midx(str(tmp_path), data, pack_cache)
    assert midx.find_object(bytes.fromhex("deadbeef" * 5)) is None


def test_invalid_magic(tmp_path, pack_cache):
    with pytest.raises(MidxError):
        parse_midx(str(tmp_path), b"bogus", pack_cache)
    with pytest.raises(MidxError, match="not a MIDX file"):
        parse_midx(str(tmp_path), b"XXXX" + b"\x00" * 20, pack_cache)


def test_unsupported_version(tmp_path, pack_cache):
    data = build_midx(standard_chunks(["a.pack"], []), 1, version=2)
    with pytest.raises(MidxError, match="unsupported midx version 2"):
        parse_midx(str(tmp_path), data, pack_cache)


def test_only_sha1(tmp_path, pack_cache):
    data = build_midx(standard_chunks(["a.pack"], []), 1, hash_id=2)
    with pytest.raises(MidxError, match="SHA-1"):
        parse_midx(str(tmp_path), data, pack_cache)


def test_missing_chunk(tmp_path, pack_cache):
    write_minimal_pack(tmp_path / "a.pack", b"x")
    chunks = [c for c in standard_chunks(["a.pack"], []) if c[0] != b"OIDL"]
    with pytest.raises(MidxError, match="4f49444c not found"):
        parse_midx(str(tmp_path), build_midx(chunks, 1), pack_cache)


def test_pnam_truncated(tmp_path, pack_cache):
    data = build_midx(standard_chunks(["a.pack"], []), 2)
    with pytest.raises(MidxError, match="PNAM truncated"):
        parse_midx(str(tmp_path), data, pack_cache)


def test_pnam_unterminated(tmp_path, pack_cache):
    chunks = standard_chunks(["a.pack"], [])
    chunks[3] = (b"PNAM", b"a.pack")
    with pytest.raises(MidxError, match="unterminated"):
        parse_midx(str(tmp_path), build_midx(chunks, 1), pack_cache)


def test_pnam_empty_entry(tmp_path, pack_cache):
    chunks = standard_chunks(["a.pack"], [])
    chunks[3] = (b"PNAM", b"\x00a.pack\x00")
    with pytest.raises(MidxError, match="empty PNAM entry"):
        parse_midx(str(tmp_path), build_midx(chunks, 1), pack_cache)


def test_missing_pack_file(tmp_path, pack_cache):
    data = build_midx(standard_chunks(["nope.pack"], []), 1)
    with pytest.raises(MidxError, match="mmap pack"):
        parse_midx(str(tmp_path), data, pack_cache)
    assert pack_cache == {}


def test_reuses_cached_pack(tmp_path, pack_cache):
    content = b"cached"
    oid = blob_hash(content)
    cached = b"PACK-from-cache"
    pack_cache[os.path.join(str(tmp_path), "c.pack")] = cached
    data = build_midx(standard_chunks(["c.pack"], [(oid, 0, 12)]), 1)

    midx = parse_midx(str(tmp_path), data, pack_cache)

    pack, offset = midx.find_object(oid)
    assert pack is cached
    assert offset == 12


def test_large_offsets(tmp_path, pack_cache):
    content = b"dummy"
    oid = blob_hash(content)
    write_minimal_pack(tmp_path / "big.pack", content)
    big = 0x80000000 + 1234
    chunks = standard_chunks(["big.pack"], [(oid, 0, 0x80000000)], loff=[big])

    midx = parse_midx(str(tmp_path), build_midx(chunks, 1), pack_cache)

    assert midx.entries[0].offset == big
    assert midx.find_object(oid)[1] == big


def test_invalid_loff_index(tmp_path, pack_cache):
    content = b"dummy"
    oid = blob_hash(content)
    write_minimal_pack(tmp_path / "big.pack", content)
    chunks = standard_chunks(["big.pack"], [(oid, 0, 0x80000003)], loff=[1])
    with pytest.raises(MidxError, match="invalid LOFF index 3"):
        parse_midx(str(tmp_path), build_midx(chunks, 1), pack_cache)


def test_two_packs_with_chunks_in_id_order(tmp_path, pack_cache):
    base = b"cross-pack base"
    derived = b"cross-pack derived"
    oid_a, oid_b = blob_hash(base), blob_hash(derived)
    write_minimal_pack(tmp_path / "packA.pack", base)
    write_minimal_pack(tmp_path / "packB.pack", derived)
    chunks = standard_chunks(["packA.pack", "packB.pack"], [(oid_a, 0, 12), (oid_b, 1, 40)])
    chunks.sort(key=lambda c: c[0])

    midx = parse_midx(str(tmp_path), build_midx(chunks, 2), pack_cache)

    assert midx.pack_names == ["packA.pack", "packB.pack"]
    pack_a, off_a = midx.find_object(oid_a)
    pack_b, off_b = midx.find_object(oid_b)
    assert (off_a, off_b) == (12, 40)
    assert pack_a is midx.pack_readers[0]
    assert pack_b is midx.pack_readers[1]
    assert midx.object_ids == sorted(midx.object_ids)


def test_invalid_pack_id_on_lookup():
    oid = blob_hash(b"x")
    fanout = tuple(0 if i < oid[0] else 1 for i in range(256))
    midx = MidxFile(
        pack_readers=[b"PACK"],
        pack_names=["a.pack"],
        fanout=fanout,
        object_ids=[oid],
        entries=[MidxEntry(5, 12)],
    )
    with pytest.raises(MidxError, match="invalid pack id 5"):
        midx.find_object(oid)