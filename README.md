# iavl

A versioned AVL+ tree stored on an ordered key-value store. Each saved
version gets a Merkle root hash and can be loaded and queried later. A
"fast node" index kept next to the tree serves reads at the latest version
without walking the tree.

## Installation

```
pip install .
```

## Usage

```python
from iavl.nodedb import MemDB, Options
from iavl.mutable_tree import MutableTree

db = MemDB()
tree = MutableTree(db, 1000, False, Options())

tree.set(b"k1", b"v1")
tree.set(b"k2", b"v2")
root_hash, version = tree.save_version()   # version == 1

tree.set(b"k1", b"v1-updated")
tree.save_version()                         # version == 2

tree.get(b"k1")                 # b"v1-updated"
tree.get_versioned(b"k1", 1)    # b"v1"
tree.available_versions()       # [1, 2]

for key, value in tree.items(None, None, True):
    print(key, value)

tree.delete_versions_to(1)      # prune version 1
tree.close()
```

`MutableTree(db, cache_size, skip_fast_storage_upgrade, options)`:

- `set(key, value)` returns `True` when an existing value was replaced;
  `remove(key)` returns `(value, removed)`.
- `get_with_index(key)` returns the leaf index of the key (or where it
  would go) and its value or `None`.
- `save_version()` returns `(hash, version)`. The first version number is
  1, or `Options.initial_version` / `set_initial_version()` when set.
- `load()` and `load_version(n)` restore a saved version from the store
  (both return the latest stored version number);
  `load_version_for_overwriting(n)` also deletes every later version.
- `rollback()` drops changes not yet saved.
- `hash()` and `working_hash()` give the root hash of the last saved and
  of the working tree.
- With `skip_fast_storage_upgrade=False` the fast index is built or
  rebuilt when a version is loaded; `is_fast_cache_enabled()`,
  `is_upgradeable()` and `enable_fast_storage_if_not_enabled()` inspect
  and drive that.

Failures are raised as `iavl.nodedb.NodeDBError`
(`VersionDoesNotExistError` for a missing version),
`iavl.node.NodeError` and `iavl.encoding.EncodingError`.

## Modules

- `iavl.keyformat`: fixed-width, lexicographically sortable database keys
  (`KeyFormat`, `FastPrefixFormatter`).
- `iavl.encoding`: zig-zag varints, uvarints and length-prefixed byte
  strings.
- `iavl.node`: `Node` and `NodeKey`, node serialisation (`to_bytes`,
  `make_node`, `make_legacy_node`) and SHA-256 hashing.
- `iavl.nodedb`: `NodeDB`, which stores nodes, fast nodes and roots with
  LRU caches and batched writes; the in-memory `MemDB`; `Batch`,
  `FastNode` and `Options`.
- `iavl.pruning`: orphan detection (`traverse_orphans`) and deletion of
  old versions (`delete_versions_to`) or newer ones
  (`delete_versions_from`).
- `iavl.avl`: copy-on-write insertion, removal and rebalancing, and
  `save_new_nodes`.
- `iavl.mutable_tree`: the public `MutableTree`.

## What it does not do

- The only store shipped is `MemDB`, which lives in memory. Any object with
  the same `get`, `has`, `set`, `delete`, `iterator` and
  `reverse_iterator` methods can be passed instead, but no on-disk store
  is included.
- There are no membership or range proofs, no export or import of trees,
  no separate read-only tree object and no command-line tool.
- `MutableTree` is not safe for concurrent writers.

## Running the tests

```
pip install .[test]
pytest
```