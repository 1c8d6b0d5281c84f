# gitpackstore

A small, read-only Git object store. Point it at a repository's
`objects/pack` directory and it reads every `*.pack` / `*.idx` pair, plus
a `multi-pack-index` when one is present. It then returns fully inflated
objects by their SHA-1 id. It never runs `git`.

Delta chains are resolved for both ofs-delta and ref-delta entries. This
includes ref-deltas whose base is in another pack. Resolution has a depth
limit and detects cycles. Inflated objects are kept in a size-bounded LRU
cache. CRC-32 checks against the index can be switched on.

## Installation

```
pip install gitpackstore
```

The package has no runtime dependencies beyond the standard library.

## Usage

```python
from gitpackstore.objects import parse_hash
from gitpackstore.store import open_store

with open_store(".git/objects/pack") as store:
    oid = parse_hash("89e5a3e7d8f6c4b2a1e0d9c8b7a6f5e4d3c2b1a0")
    data, obj_type = store.get(oid)
    print(obj_type, len(data))
```

`Store.get` takes the object id as 20 raw bytes or as a 40-character hex
string. It returns a `(data, ObjectType)` tuple. `str(ObjectType.BLOB)` is
`"blob"`.

Errors:

- `ObjectNotFoundError` is raised for an id that no mapped pack contains.
- `StoreError` is raised for unreadable or corrupt pack data, including
  from `open_store` when the directory holds no packs.
- `DeltaError` is raised for malformed deltas, for chains that are too
  deep and for circular chains.
- `IdxError` and its subclasses (`BadIdxChecksumError`,
  `NonMonotonicFanoutError`, `NonMonotonicOffsetsError`,
  `CRCMismatchError`) are raised for index problems.

Settings:

- `store.set_max_delta_depth(25)` limits how many delta hops are followed.
  The default is 50.
- `store.verify_crc = True` checks each non-delta object against the CRC-32
  recorded in its `.idx` file.
- `store.close()` unmaps all files. Using the store as a context manager
  does the same.

The lower-level pieces can be used on their own:

- `gitpackstore.idx.parse_idx` and `gitpackstore.idx.verify_crc32`
- `gitpackstore.midx.parse_midx`
- `gitpackstore.store.read_raw_object` and
  `gitpackstore.store.parse_object_header`
- `gitpackstore.delta.apply_delta`, `gitpackstore.delta.parse_delta_header`
  and `gitpackstore.delta.decode_varint`
- `gitpackstore.objects.detect_type` and
  `gitpackstore.objects.hash_to_uint64`

## Example

The package includes a demonstration command:

```
gitpackstore-example
```

It first shows `parse_hash` on valid and invalid inputs. It then writes a
small pack and index to a temporary directory: three blobs, a tree and a
commit. Finally it reads them back through a `Store`. The command exits
with status 0 when every object comes back intact.

The helpers it uses are available in `gitpackstore.example`:

- `create_example_objects`
- `create_example_pack`
- `create_index_file`
- `encode_object_header`
- `calculate_git_hash`

## What it does not do

- It reads only packed objects. Loose objects under `objects/xx/...` are
  not read.
- It never writes or modifies a repository.
- Only pack index version 2 and multi-pack-index version 1 with SHA-1 are
  understood.
- CRC verification needs the pack's `.idx` file. A pack that is reachable
  only through the multi-pack-index cannot be verified.

## Tests

```
pip install "gitpackstore[test]"
pytest
```