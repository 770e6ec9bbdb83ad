import pytest

from iavl.node import NodeKey, get_root_key, new_leaf
from iavl.nodedb import (
    DEFAULT_STORAGE_VERSION_VALUE,
    FAST_KEY_FORMAT,
    FAST_STORAGE_VERSION_DELIMITER,
    FAST_STORAGE_VERSION_VALUE,
    LEGACY_ROOT_KEY_FORMAT,
    METADATA_KEY_FORMAT,
    NODE_KEY_FORMAT,
    STORAGE_VERSION_KEY,
    Batch,
    FastNode,
    MemDB,
    NodeDB,
    NodeDBError,
    Options,
    VersionDoesNotExistError,
    deserialize_fast_node,
    is_reference_root,
)


class _BrokenDB(MemDB):
    def get(self, key):
        raise OSError("some db error")


class _FailingBatch:
    def set(self, key, value):
        raise OSError("some db error")

    def delete(self, key):
        raise OSError("some db error")


def _saved_leaf(ndb, key, value, version, nonce=1):
    leaf = new_leaf(key, value)
    leaf.node_key = NodeKey(version, nonce)
    leaf.compute_hash(version)
    ndb.save_node(leaf)
    return leaf


def test_storage_version_read_from_db():
    db = MemDB()
    db.set(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY), b"1.0.0")
    assert NodeDB(db).storage_version == DEFAULT_STORAGE_VERSION_VALUE


def test_storage_version_defaults_on_db_error():
    assert NodeDB(_BrokenDB()).storage_version == DEFAULT_STORAGE_VERSION_VALUE


def test_storage_version_defaults_when_missing():
    assert NodeDB(MemDB()).storage_version == DEFAULT_STORAGE_VERSION_VALUE


def test_set_storage_version_success():
    db = MemDB()
    ndb = NodeDB(db)
    latest = ndb.get_latest_version()
    ndb.set_fast_storage_version_to_batch(latest)
    expected = FAST_STORAGE_VERSION_VALUE + FAST_STORAGE_VERSION_DELIMITER + str(latest)
    assert ndb.storage_version == expected
    ndb.commit()
    assert db.get(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY)) == expected.encode()


def test_set_storage_version_db_failure_keeps_old():
    ndb = NodeDB(MemDB())
    ndb.batch = _FailingBatch()
    with pytest.raises(OSError, match="some db error"):
        ndb.set_fast_storage_version_to_batch(2)
    assert ndb.storage_version == DEFAULT_STORAGE_VERSION_VALUE


def test_set_storage_version_invalid_keeps_old():
    invalid = "1.1.0-1-2"
    db = MemDB()
    db.set(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY), invalid.encode())
    ndb = NodeDB(db)
    assert ndb.storage_version == invalid
    with pytest.raises(NodeDBError, match="fast storage version must be"):
        ndb.set_fast_storage_version_to_batch(0)
    assert ndb.storage_version == invalid


def test_set_storage_version_fast_version_first_appended():
    ndb = NodeDB(MemDB())
    ndb.storage_version = FAST_STORAGE_VERSION_VALUE
    ndb.latest_version = 100
    ndb.set_fast_storage_version_to_batch(ndb.latest_version)
    assert ndb.storage_version == "1.1.0-100"


def test_set_storage_version_fast_version_second_appended_and_idempotent():
    ndb = NodeDB(MemDB())
    ndb.latest_version = 100
    ndb.storage_version = "1.1.1"
    ndb.set_fast_storage_version_to_batch(ndb.latest_version)
    assert ndb.storage_version == "1.1.1-100"
    ndb.set_fast_storage_version_to_batch(ndb.latest_version)
    assert ndb.storage_version == "1.1.1-100"


@pytest.mark.parametrize(
    "storage_version, expected",
    [
        (DEFAULT_STORAGE_VERSION_VALUE, False),
        ("1.1.0-101", True),
        ("1.1.0-99", True),
        ("1.1.0-100", False),
    ],
)
def test_should_force_fast_storage_upgrade(storage_version, expected):
    ndb = NodeDB(MemDB())
    ndb.latest_version = 100
    ndb.storage_version = storage_version
    assert ndb.should_force_fast_storage_upgrade() is expected


def test_has_upgraded_to_fast_storage():
    ndb = NodeDB(MemDB())
    assert ndb.has_upgraded_to_fast_storage() is False
    ndb.storage_version = "1.1.0-100"
    assert ndb.has_upgraded_to_fast_storage() is True


def test_node_round_trip_through_db():
    db = MemDB()
    ndb = NodeDB(db)
    leaf = _saved_leaf(ndb, b"a", b"1", 1)
    ndb.commit()
    loaded = NodeDB(db).get_node(leaf.get_key())
    assert loaded.key == b"a"
    assert loaded.value == b"1"
    assert loaded.hash == leaf.hash
    assert loaded.node_key == NodeKey(1, 1)


def test_get_node_uses_cache_before_commit():
    cached = NodeDB(MemDB(), cache_size=10)
    leaf = _saved_leaf(cached, b"a", b"1", 1)
    assert cached.get_node(leaf.get_key()) is leaf

    uncached = NodeDB(MemDB(), cache_size=0)
    leaf = _saved_leaf(uncached, b"a", b"1", 1)
    with pytest.raises(NodeDBError, match="Value missing"):
        uncached.get_node(leaf.get_key())


def test_get_node_without_key_raises():
    with pytest.raises(NodeDBError, match="nodeKey"):
        NodeDB(MemDB()).get_node(None)


def test_save_node_without_node_key_raises():
    with pytest.raises(NodeDBError):
        NodeDB(MemDB()).save_node(new_leaf(b"a", b"1"))


def test_has_node():
    ndb = NodeDB(MemDB())
    leaf = _saved_leaf(ndb, b"a", b"1", 1)
    assert ndb.has(leaf.get_key()) is False
    ndb.commit()
    assert ndb.has(leaf.get_key()) is True


def test_get_root_variants():
    db = MemDB()
    ndb = NodeDB(db)
    _saved_leaf(ndb, b"a", b"1", 1)
    ndb.save_root(2, NodeKey(1, 1))
    ndb.save_empty_root(3)
    ndb.commit()
    assert ndb.get_root(1) == get_root_key(1)
    assert ndb.get_root(2) == get_root_key(1)
    assert ndb.get_root(3) is None
    with pytest.raises(VersionDoesNotExistError):
        ndb.get_root(4)


def test_get_root_reference_to_pruned_root():
    db = MemDB()
    ndb = NodeDB(db)
    _saved_leaf(ndb, b"a", b"1", 1, nonce=0)
    ndb.save_root(2, NodeKey(1, 1))
    ndb.commit()
    assert ndb.get_root(2) == NodeKey(1, 0).to_bytes()


def test_get_root_old_style_and_invalid_references():
    db = MemDB()
    db.set(NODE_KEY_FORMAT.key(get_root_key(5)), b"s" + (4).to_bytes(8, "big"))
    db.set(NODE_KEY_FORMAT.key(get_root_key(6)), b"s\x01\x02")
    ndb = NodeDB(db)
    assert ndb.get_root(5) == get_root_key(4)
    with pytest.raises(NodeDBError, match="invalid reference root"):
        ndb.get_root(6)


def test_latest_and_first_versions_from_disk():
    db = MemDB()
    writer = NodeDB(db)
    for version in (3, 4, 5):
        _saved_leaf(writer, b"k", bytes([version]), version)
    writer.commit()
    ndb = NodeDB(db)
    assert ndb.get_latest_version() == 5
    assert ndb.get_first_version() == 3
    assert ndb.has_version(4) is True
    assert ndb.has_version(6) is False
    assert ndb.get_legacy_latest_version() == -1


def test_empty_db_versions():
    ndb = NodeDB(MemDB())
    assert ndb.get_latest_version() == 0
    assert ndb.get_first_version() == 0


def test_legacy_versions():
    db = MemDB()
    db.set(LEGACY_ROOT_KEY_FORMAT.key(7), b"\x11" * 32)
    db.set(LEGACY_ROOT_KEY_FORMAT.key(9), b"\x22" * 32)
    ndb = NodeDB(db)
    assert ndb.get_first_version() == 7
    assert ndb.get_legacy_latest_version() == 9
    assert ndb.get_latest_version() == 9
    assert ndb.has_legacy_version(7) is True
    assert ndb.has_legacy_version(8) is False
    assert ndb.get_root(7) == b"\x11" * 32


def test_fast_node_serialisation_round_trip():
    node = FastNode(b"key", b"value", 12)
    decoded = deserialize_fast_node(b"key", node.to_bytes())
    assert decoded == node


def test_get_fast_node_requires_fast_storage():
    ndb = NodeDB(MemDB())
    with pytest.raises(NodeDBError, match="not fast"):
        ndb.get_fast_node(b"a")
    ndb.storage_version = "1.1.0-0"
    with pytest.raises(NodeDBError, match="requires key"):
        ndb.get_fast_node(b"")


def test_fast_node_save_get_delete():
    db = MemDB()
    ndb = NodeDB(db)
    ndb.storage_version = "1.1.0-1"
    ndb.save_fast_node_no_cache(FastNode(b"a", b"1", 1))
    ndb.commit()
    assert ndb.get_fast_node(b"a") == FastNode(b"a", b"1", 1)
    assert ndb.get_fast_node(b"missing") is None
    ndb.delete_fast_node(b"a")
    ndb.commit()
    assert db.get(FAST_KEY_FORMAT.key_bytes(b"a")) is None
    assert ndb.get_fast_node(b"a") is None


def test_fast_items_order_and_range():
    ndb = NodeDB(MemDB())
    for key in (b"c", b"a", b"b", b"d"):
        ndb.save_fast_node(FastNode(key, key.upper(), 1))
    ndb.commit()
    assert [n.key for n in ndb.fast_items(None, None, True)] == [b"a", b"b", b"c", b"d"]
    assert [n.key for n in ndb.fast_items(None, None, False)] == [b"d", b"c", b"b", b"a"]
    assert [n.value for n in ndb.fast_items(b"b", b"d", True)] == [b"B", b"C"]


def test_traverse_prefix_and_range():
    db = MemDB()
    for key in (b"a1", b"a2", b"b1", b"\xff"):
        db.set(key, b"v")
    ndb = NodeDB(db)
    assert [k for k, _ in ndb.traverse_prefix(b"a")] == [b"a1", b"a2"]
    assert [k for k, _ in ndb.traverse_range(b"a2", b"\xff")] == [b"a2", b"b1"]
    assert len(list(ndb.traverse_prefix(b""))) == 4


def test_traverse_nodes_and_leaf_nodes():
    ndb = NodeDB(MemDB())
    _saved_leaf(ndb, b"b", b"2", 1, nonce=2)
    _saved_leaf(ndb, b"a", b"1", 1, nonce=3)
    ndb.save_root(2, NodeKey(1, 2))
    ndb.save_empty_root(3)
    ndb.commit()
    assert [n.key for n in ndb.traverse_nodes()] == [b"a", b"b"]
    assert [n.value for n in ndb.leaf_nodes()] == [b"1", b"2"]


def test_is_reference_root():
    assert is_reference_root(b"s" + b"\x00" * 12) == (True, 13)
    assert is_reference_root(b"\x00\x02") == (False, 0)


def test_version_readers():
    ndb = NodeDB(MemDB())
    ndb.incr_version_readers(3)
    ndb.incr_version_readers(3)
    assert ndb.version_readers == {3: 2}
    ndb.decr_version_readers(3)
    assert ndb.version_readers == {3: 1}
    ndb.decr_version_readers(3)
    ndb.decr_version_readers(3)
    assert ndb.version_readers == {}


def test_close_discards_batch():
    db = MemDB()
    ndb = NodeDB(db)
    _saved_leaf(ndb, b"a", b"1", 1)
    ndb.close()
    assert ndb.batch is None
    assert len(db) == 0
    with pytest.raises(NodeDBError, match="closed"):
        ndb.commit()


def test_dump_lists_nodes():
    ndb = NodeDB(MemDB())
    _saved_leaf(ndb, b"key", b"val", 1)
    ndb.commit()
    text = ndb.dump()
    assert text.startswith("-\n")
    assert text.endswith("-")
    assert "s: key = val" in text
    assert "nodeKey=(1, 1)" in text


def test_memdb_iterators():
    db = MemDB()
    for key in (b"a", b"b", b"c"):
        db.set(key, key)
    assert [k for k, _ in db.iterator(b"a", b"c")] == [b"a", b"b"]
    assert [k for k, _ in db.reverse_iterator(None, None)] == [b"c", b"b", b"a"]
    with pytest.raises(ValueError):
        db.get(b"")
    with pytest.raises(ValueError):
        db.set(b"x", None)


def test_batch_write_and_flush_threshold():
    db = MemDB()
    batch = db.new_batch()
    batch.set(b"a", b"1")
    batch.delete(b"a")
    batch.set(b"b", b"2")
    assert db.get(b"b") is None
    batch.write()
    assert db.get(b"a") is None
    assert db.get(b"b") == b"2"

    flushing = Batch(db, flush_threshold=4)
    flushing.set(b"cc", b"33")
    assert db.get(b"cc") == b"33"
    assert flushing.byte_size == 0

    flushing.close()
    with pytest.raises(NodeDBError):
        flushing.set(b"d", b"4")


def test_options_defaults():
    ndb = NodeDB(MemDB())
    assert ndb.options == Options(initial_version=0, sync=False, flush_threshold=100_000)