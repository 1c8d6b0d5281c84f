import sys

import pytest

from gitpackstore.objects import ObjectType, detect_type, hash_to_uint64, parse_hash


def test_parse_valid_hash_round_trips():
    text = "89e5a3e7d8f6c4b2a1e0d9c8b7a6f5e4d3c2b1a0"
    h = parse_hash(text)
    assert len(h) == 20
    assert h.hex() == text


@pytest.mark.parametrize(
    "text",
    [
        "d670460b4b4aece5915caf5c68d12f560a9fe3e4",
        "abcdef1234567890abcdef1234567890abcdef12",
        "0000000000000000000000000000000000000000",
        "ffffffffffffffffffffffffffffffffffffffff",
    ],
)
def test_parse_hash_examples_round_trip(text):
    assert parse_hash(text).hex() == text


@pytest.mark.parametrize(
    "text",
    [
        "invalid",
        "abcd",
        "abcdef123456",
        "abcdef1234567890abcdef1234567890abcdef123456",
        "ghijkl1234567890abcdef1234567890abcdef12",
        "  cdef1234567890abcdef1234567890abcdef12",
    ],
)
def test_parse_hash_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_hash(text)


def test_parse_hash_length_message():
    with pytest.raises(ValueError, match="invalid hash length"):
        parse_hash("abcd")


def test_hash_to_uint64_zero():
    assert hash_to_uint64(bytes(20)) == 0


def test_hash_to_uint64_all_ones():
    assert hash_to_uint64(b"\xff" * 20) == 2**64 - 1


def test_hash_to_uint64_host_order():
    h = b"\x01" + bytes(19)
    expected = 1 if sys.byteorder == "little" else 1 << 56
    assert hash_to_uint64(h) == expected


def test_hash_to_uint64_ignores_tail():
    assert hash_to_uint64(bytes(8) + b"\xff" * 12) == 0


@pytest.mark.parametrize(
    "obj_type, expected",
    [
        (ObjectType.COMMIT, "commit"),
        (ObjectType.TREE, "tree"),
        (ObjectType.BLOB, "blob"),
        (ObjectType.TAG, "tag"),
        (ObjectType.OFS_DELTA, "ofs-delta"),
        (ObjectType.REF_DELTA, "ref-delta"),
        (ObjectType.BAD, ""),
    ],
)
def test_object_type_string(obj_type, expected):
    assert str(obj_type) == expected


def test_unknown_object_type_rejected():
    with pytest.raises(ValueError):
        ObjectType(99)


def test_object_type_values_match_pack_encoding():
    decoded = [ObjectType(n) for n in range(7)]
    assert decoded == [
        ObjectType.BAD,
        ObjectType.COMMIT,
        ObjectType.TREE,
        ObjectType.BLOB,
        ObjectType.TAG,
        ObjectType.OFS_DELTA,
        ObjectType.REF_DELTA,
    ]


@pytest.mark.parametrize(
    "code, expected",
    [(1, False), (2, False), (3, False), (4, False), (5, True), (6, True)],
)
def test_is_delta(code, expected):
    assert ObjectType(code).is_delta is expected


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"tree 123\x00some tree data", ObjectType.TREE),
        (b"parent abc\nauthor Someone", ObjectType.COMMIT),
        (b"author Someone\ncommitter", ObjectType.COMMIT),
        (b"just some blob data", ObjectType.BLOB),
        (b"blob 5\x00hello", ObjectType.BLOB),
        (b"tag v1.0", ObjectType.TAG),
        (b"abc", ObjectType.BLOB),
        (b"", ObjectType.BLOB),
        (b"tree", ObjectType.BLOB),
    ],
)
def test_detect_type(data, expected):
    assert detect_type(data) is expected