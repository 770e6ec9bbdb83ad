"""Node storage: key layout, caching, batched writes and version bookkeeping."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from typing import Iterator, Optional

from cachetools import LRUCache
from sortedcontainers import SortedDict

from iavl.encoding import (
    EncodingError,
    decode_bytes,
    decode_varint,
    encode_bytes,
    encode_varint,
)
from iavl.keyformat import FastPrefixFormatter, KeyFormat
from iavl.node import (
    HASH_SIZE,
    Node,
    NodeError,
    NodeKey,
    get_node_key,
    get_root_key,
    make_legacy_node,
    make_node,
)

INT32_SIZE = 4
INT64_SIZE = 8
INT64_MAX = (1 << 63) - 1
GENESIS_VERSION = 1
STORAGE_VERSION_KEY = b"storage_version"
FAST_STORAGE_VERSION_DELIMITER = "-"
DEFAULT_STORAGE_VERSION_VALUE = "1.0.0"
FAST_STORAGE_VERSION_VALUE = "1.1.0"
FAST_NODE_CACHE_SIZE = 100_000
DEFAULT_FLUSH_THRESHOLD = 100_000

# s<version><nonce>
NODE_KEY_FORMAT = FastPrefixFormatter("s", INT64_SIZE + INT32_SIZE)
# s<version>, used only to bound iteration
NODE_KEY_PREFIX_FORMAT = FastPrefixFormatter("s", INT64_SIZE)
# f<key>
FAST_KEY_FORMAT = KeyFormat("f", 0)
# m<key>
METADATA_KEY_FORMAT = KeyFormat("m", 0)
# n<hash>
LEGACY_NODE_KEY_FORMAT = FastPrefixFormatter("n", HASH_SIZE)
# o<last-version><first-version><hash>
LEGACY_ORPHAN_KEY_FORMAT = KeyFormat("o", INT64_SIZE, INT64_SIZE, HASH_SIZE)
# r<version>
LEGACY_ROOT_KEY_FORMAT = KeyFormat("r", INT64_SIZE)

INVALID_FAST_STORAGE_VERSION_MESSAGE = (
    "fast storage version must be in the format <storage version>"
    f"{FAST_STORAGE_VERSION_DELIMITER}<latest fast cache version>"
)


class NodeDBError(Exception):
    """Raised when the node database cannot read, decode or write a record."""


class VersionDoesNotExistError(NodeDBError):
    """Raised when a requested version does not exist."""

    def __init__(self, message: str = "version does not exist") -> None:
        super().__init__(message)


def _check_key(key: Optional[bytes]) -> bytes:
    if key is None or len(key) == 0:
        raise ValueError("key cannot be empty")
    return bytes(key)


def _check_bound(bound: Optional[bytes]) -> Optional[bytes]:
    if bound is None:
        return None
    return _check_key(bound)


class MemDB:
    """An ordered in-memory key/value store."""

    def __init__(self) -> None:
        self._data: SortedDict = SortedDict()

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: bytes) -> Optional[bytes]:
        return self._data.get(_check_key(key))

    def has(self, key: bytes) -> bool:
        return _check_key(key) in self._data

    def set(self, key: bytes, value: bytes) -> None:
        if value is None:
            raise ValueError("value cannot be nil")
        self._data[_check_key(key)] = bytes(value)

    def delete(self, key: bytes) -> None:
        self._data.pop(_check_key(key), None)

    def _range(self, start, end, reverse: bool) -> Iterator[tuple[bytes, bytes]]:
        keys = list(
            self._data.irange(
                minimum=_check_bound(start),
                maximum=_check_bound(end),
                inclusive=(True, False),
                reverse=reverse,
            )
        )
        return iter([(k, self._data[k]) for k in keys])

    def iterator(self, start: Optional[bytes], end: Optional[bytes]):
        """Iterate ``(key, value)`` pairs with start <= key < end, ascending."""
        return self._range(start, end, reverse=False)

    def reverse_iterator(self, start: Optional[bytes], end: Optional[bytes]):
        """Iterate ``(key, value)`` pairs with start <= key < end, descending."""
        return self._range(start, end, reverse=True)

    def new_batch(self) -> "Batch":
        return Batch(self)


class Batch:
    """Writes buffered until :meth:`write`; flushes itself past a size threshold."""

    def __init__(self, db, flush_threshold: Optional[int] = None) -> None:
        self._db = db
        self._ops: list[tuple[bytes, Optional[bytes]]] = []
        self._size = 0
        self._flush_threshold = flush_threshold
        self._closed = False

    @property
    def byte_size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return len(self._ops)

    def _ensure_open(self) -> None:
        if self._closed:
            raise NodeDBError("batch has been written or closed")

    def _record(self, key: bytes, value: Optional[bytes]) -> None:
        self._ensure_open()
        self._ops.append((key, value))
        self._size += len(key) + (len(value) if value is not None else 0)
        if self._flush_threshold and self._size >= self._flush_threshold:
            self.write()

    def set(self, key: bytes, value: bytes) -> None:
        key = _check_key(key)
        if value is None:
            raise ValueError("value cannot be nil")
        self._record(key, bytes(value))

    def delete(self, key: bytes) -> None:
        self._record(_check_key(key), None)

    def write(self) -> None:
        """Apply the buffered operations in order and start afresh."""
        self._ensure_open()
        ops, self._ops, self._size = self._ops, [], 0
        for key, value in ops:
            if value is None:
                self._db.delete(key)
            else:
                self._db.set(key, value)

    def close(self) -> None:
        self._ops = []
        self._size = 0
        self._closed = True


@dataclass
class FastNode:
    """A key's latest value and the version at which it was last updated."""

    key: bytes
    value: bytes
    version_last_updated_at: int

    def to_bytes(self) -> bytes:
        return encode_varint(self.version_last_updated_at) + encode_bytes(self.value)


def deserialize_fast_node(key: bytes, buf: bytes) -> FastNode:
    """Decode a fast node stored for ``key``."""
    try:
        version, n = decode_varint(buf)
        value, _ = decode_bytes(buf[n:])
    except EncodingError as exc:
        raise NodeDBError(f"decoding fast node, {exc}") from exc
    return FastNode(key=bytes(key), value=value, version_last_updated_at=version)


@dataclass
class Options:
    """Settings of a node database."""

    initial_version: int = 0
    sync: bool = False
    flush_threshold: int = DEFAULT_FLUSH_THRESHOLD


def is_reference_root(bz: bytes) -> tuple[bool, int]:
    """Return whether a root record points at another root, and its length."""
    if bz[:1] == NODE_KEY_FORMAT.prefix:
        return True, len(bz)
    return False, 0


def _prefix_end(prefix: bytes) -> Optional[bytes]:
    data = bytearray(prefix)
    while data and data[-1] == 0xFF:
        data.pop()
    if not data:
        return None
    data[-1] += 1
    return bytes(data)


def _make_cache(size: int) -> Optional[LRUCache]:
    return LRUCache(maxsize=size) if size > 0 else None


class NodeDB:
    """Stores tree nodes, fast nodes and roots on top of an ordered key/value store."""

    def __init__(self, db, cache_size: int = 0, options: Optional[Options] = None) -> None:
        self.options = options if options is not None else Options()
        self.db = db
        try:
            stored = db.get(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY))
        except Exception:
            stored = None
        self.storage_version = (
            stored.decode() if stored is not None else DEFAULT_STORAGE_VERSION_VALUE
        )
        self.batch: Optional[Batch] = Batch(db, self.options.flush_threshold)
        self.first_version = 0
        self.latest_version = 0
        self.legacy_latest_version = 0
        self.version_readers: dict[int, int] = {}
        self.stats: Counter = Counter()
        self._node_cache = _make_cache(cache_size)
        self._fast_node_cache = _make_cache(FAST_NODE_CACHE_SIZE)
        self._lock = threading.RLock()

    def _require_batch(self) -> Batch:
        if self.batch is None:
            raise NodeDBError("node database is closed")
        return self.batch

    # --- nodes -------------------------------------------------------------

    def get_node(self, nk: Optional[bytes]) -> Node:
        """Load a node by node key (or by hash for legacy nodes), children not loaded."""
        if nk is None:
            raise NodeDBError("node does not have a nodeKey")
        nk = bytes(nk)
        with self._lock:
            if self._node_cache is not None and nk in self._node_cache:
                self.stats["cache_hit"] += 1
                return self._node_cache[nk]
            self.stats["cache_miss"] += 1
            is_legacy = len(nk) == HASH_SIZE
            storage_key = (
                LEGACY_NODE_KEY_FORMAT.key(nk) if is_legacy else NODE_KEY_FORMAT.key(nk)
            )
            try:
                buf = self.db.get(storage_key)
            except Exception as exc:
                raise NodeDBError(f"can't get node {nk.hex()}: {exc}") from exc
            if buf is None:
                raise NodeDBError(
                    f"Value missing for key {nk.hex()} corresponding to nodeKey "
                    f"{storage_key.hex()}"
                )
            try:
                node = make_legacy_node(nk, buf) if is_legacy else make_node(nk, buf)
            except NodeError as exc:
                kind = "Legacy Node" if is_legacy else "Node"
                raise NodeDBError(
                    f"error reading {kind}. bytes: {buf.hex()}, error: {exc}"
                ) from exc
            if self._node_cache is not None:
                self._node_cache[nk] = node
            return node

    def save_node(self, node: Node) -> None:
        """Queue a node for writing and cache it."""
        if node.node_key is None:
            raise NodeDBError("node does not have a nodeKey")
        with self._lock:
            key = node.get_key()
            self._require_batch().set(NODE_KEY_FORMAT.key(key), node.to_bytes())
            if self._node_cache is not None:
                self._node_cache[key] = node

    def has(self, nk: bytes) -> bool:
        return self.db.has(NODE_KEY_FORMAT.key(nk))

    # --- fast nodes --------------------------------------------------------

    def get_fast_node(self, key: bytes) -> Optional[FastNode]:
        """Return the fast node for ``key``, or None if there is none."""
        if not self.has_upgraded_to_fast_storage():
            raise NodeDBError("storage version is not fast")
        if not key:
            raise NodeDBError("nodeDB.GetFastNode() requires key, len(key) equals 0")
        key = bytes(key)
        with self._lock:
            if self._fast_node_cache is not None and key in self._fast_node_cache:
                self.stats["fast_cache_hit"] += 1
                return self._fast_node_cache[key]
            self.stats["fast_cache_miss"] += 1
            try:
                buf = self.db.get(FAST_KEY_FORMAT.key_bytes(key))
            except Exception as exc:
                raise NodeDBError(f"can't get FastNode {key.hex().upper()}: {exc}") from exc
            if buf is None:
                return None
            node = deserialize_fast_node(key, buf)
            if self._fast_node_cache is not None:
                self._fast_node_cache[key] = node
            return node

    def _save_fast_node(self, node: FastNode, add_to_cache: bool) -> None:
        if node.key is None:
            raise NodeDBError("cannot have FastNode with a nil value for key")
        with self._lock:
            self._require_batch().set(FAST_KEY_FORMAT.key_bytes(node.key), node.to_bytes())
            if add_to_cache and self._fast_node_cache is not None:
                self._fast_node_cache[bytes(node.key)] = node

    def save_fast_node(self, node: FastNode) -> None:
        """Queue a fast node for writing and cache it."""
        self._save_fast_node(node, True)

    def save_fast_node_no_cache(self, node: FastNode) -> None:
        """Queue a fast node for writing without caching it."""
        self._save_fast_node(node, False)

    def delete_fast_node(self, key: bytes) -> None:
        with self._lock:
            self._require_batch().delete(FAST_KEY_FORMAT.key_bytes(key))
            if self._fast_node_cache is not None:
                self._fast_node_cache.pop(bytes(key), None)

    # --- storage version ---------------------------------------------------

    def set_fast_storage_version_to_batch(self, latest_version: int) -> None:
        """Queue the storage version ``1.1.0-<latest_version>``."""
        with self._lock:
            if self.storage_version >= FAST_STORAGE_VERSION_VALUE:
                versions = self.storage_version.split(FAST_STORAGE_VERSION_DELIMITER)
                if len(versions) > 2:
                    raise NodeDBError(INVALID_FAST_STORAGE_VERSION_MESSAGE)
                new_version = versions[0]
            else:
                new_version = FAST_STORAGE_VERSION_VALUE
            new_version += FAST_STORAGE_VERSION_DELIMITER + str(latest_version)
            self._require_batch().set(
                METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY), new_version.encode()
            )
            self.storage_version = new_version

    def has_upgraded_to_fast_storage(self) -> bool:
        return self.storage_version >= FAST_STORAGE_VERSION_VALUE

    def should_force_fast_storage_upgrade(self) -> bool:
        """Return whether the fast index was built for a different latest version."""
        versions = self.storage_version.split(FAST_STORAGE_VERSION_DELIMITER)
        if len(versions) == 2:
            return versions[1] != str(self.get_latest_version())
        return False

    # --- versions ----------------------------------------------------------

    def get_first_version(self) -> int:
        with self._lock:
            first = self.first_version
        if first > 0:
            return first
        for key, _ in self.traverse_prefix(LEGACY_ROOT_KEY_FORMAT.key()):
            (version,) = LEGACY_ROOT_KEY_FORMAT.scan(key, int)
            return version
        latest = self.get_latest_version()
        while first < latest:
            version = (latest + first) >> 1
            if self.has_version(version):
                latest = version
            else:
                first = version + 1
        self.reset_first_version(latest)
        return latest

    def reset_first_version(self, version: int) -> None:
        with self._lock:
            self.first_version = version

    def get_legacy_latest_version(self) -> int:
        with self._lock:
            latest = self.legacy_latest_version
        if latest != 0:
            return latest
        for key, _ in self.db.reverse_iterator(
            LEGACY_ROOT_KEY_FORMAT.key(1), LEGACY_ROOT_KEY_FORMAT.key(INT64_MAX)
        ):
            (version,) = LEGACY_ROOT_KEY_FORMAT.scan(key, int)
            self.reset_legacy_latest_version(version)
            return version
        self.reset_legacy_latest_version(-1)
        return -1

    def reset_legacy_latest_version(self, version: int) -> None:
        with self._lock:
            self.legacy_latest_version = version

    def get_latest_version(self) -> int:
        with self._lock:
            latest = self.latest_version
        if latest > 0:
            return latest
        for key, _ in self.db.reverse_iterator(
            NODE_KEY_PREFIX_FORMAT.key_int64(1), NODE_KEY_PREFIX_FORMAT.key_int64(INT64_MAX)
        ):
            latest = get_node_key(NODE_KEY_FORMAT.scan(key, bytes)).version
            self.reset_latest_version(latest)
            return latest
        latest = self.get_legacy_latest_version()
        if latest > 0:
            self.reset_latest_version(latest)
            return latest
        return 0

    def reset_latest_version(self, version: int) -> None:
        with self._lock:
            self.latest_version = version

    def has_version(self, version: int) -> bool:
        return self.db.has(NODE_KEY_FORMAT.key(get_root_key(version)))

    def has_legacy_version(self, version: int) -> bool:
        return self.db.has(LEGACY_ROOT_KEY_FORMAT.key(version))

    # --- roots -------------------------------------------------------------

    def get_root(self, version: int) -> Optional[bytes]:
        """Return the root's node key for ``version``; None for an empty tree."""
        root_key = get_root_key(version)
        val = self.db.get(NODE_KEY_FORMAT.key(root_key))
        if val is None:
            legacy = self.db.get(LEGACY_ROOT_KEY_FORMAT.key(version))
            if legacy is None:
                raise VersionDoesNotExistError()
            return legacy or None
        if len(val) == 0:
            return None
        is_ref, n = is_reference_root(val)
        if not is_ref:
            return root_key
        if n == NODE_KEY_FORMAT.length:
            nk = get_node_key(val[1:])
            if self.db.get(val) is None:
                # the referenced root may have been reformatted to (version, 0) by pruning
                reformatted = NodeKey(nk.version, 0).to_bytes()
                if self.db.get(NODE_KEY_FORMAT.key(reformatted)) is None:
                    raise VersionDoesNotExistError()
                return reformatted
            return nk.to_bytes()
        if n == NODE_KEY_PREFIX_FORMAT.length:
            return bytes(val[1:]) + b"\x00\x00\x00\x01"
        raise NodeDBError(f"invalid reference root: {val.hex()}")

    def save_empty_root(self, version: int) -> None:
        with self._lock:
            self._require_batch().set(NODE_KEY_FORMAT.key(get_root_key(version)), b"")

    def save_root(self, version: int, node_key: NodeKey) -> None:
        """Record that ``version`` reuses the root stored under ``node_key``."""
        with self._lock:
            self._require_batch().set(
                NODE_KEY_FORMAT.key(get_root_key(version)),
                NODE_KEY_FORMAT.key(node_key.to_bytes()),
            )

    # --- traversal ---------------------------------------------------------

    def traverse_range(
        self, start: Optional[bytes], end: Optional[bytes]
    ) -> Iterator[tuple[bytes, bytes]]:
        """Yield stored ``(key, value)`` pairs with start <= key < end."""
        yield from self.db.iterator(start, end)

    def traverse_prefix(self, prefix: Optional[bytes]) -> Iterator[tuple[bytes, bytes]]:
        """Yield stored ``(key, value)`` pairs whose key starts with ``prefix``."""
        if not prefix:
            yield from self.db.iterator(None, None)
            return
        yield from self.db.iterator(bytes(prefix), _prefix_end(bytes(prefix)))

    def fast_items(
        self,
        start: Optional[bytes] = None,
        end: Optional[bytes] = None,
        ascending: bool = True,
    ) -> Iterator[FastNode]:
        """Yield stored fast nodes with start <= key < end, in key order."""
        lo = FAST_KEY_FORMAT.key_bytes(start) if start is not None else FAST_KEY_FORMAT.key()
        if end is not None:
            hi = FAST_KEY_FORMAT.key_bytes(end)
        else:
            hi = _prefix_end(FAST_KEY_FORMAT.key())
        pairs = self.db.iterator(lo, hi) if ascending else self.db.reverse_iterator(lo, hi)
        for key, value in pairs:
            yield deserialize_fast_node(key[1:], value)

    def traverse_nodes(self) -> Iterator[Node]:
        """Yield every stored node of the current format, ordered by node key bytes."""
        nodes = []
        for key, value in self.traverse_prefix(NODE_KEY_FORMAT.prefix):
            if not value or is_reference_root(value)[0]:
                continue
            try:
                nodes.append(make_node(key[1:], value))
            except NodeError as exc:
                raise NodeDBError(f"error reading Node. bytes: {value.hex()}, error: {exc}") from exc
        nodes.sort(key=lambda node: node.key)
        yield from nodes

    def leaf_nodes(self) -> list[Node]:
        return [node for node in self.traverse_nodes() if node.is_leaf()]

    # --- lifecycle ---------------------------------------------------------

    def commit(self) -> None:
        """Write the pending batch to the store."""
        with self._lock:
            batch = self._require_batch()
            try:
                batch.write()
            except Exception as exc:
                raise NodeDBError(f"failed to write batch, {exc}") from exc

    def incr_version_readers(self, version: int) -> None:
        with self._lock:
            self.version_readers[version] = self.version_readers.get(version, 0) + 1

    def decr_version_readers(self, version: int) -> None:
        with self._lock:
            count = self.version_readers.get(version, 0)
            if count > 1:
                self.version_readers[version] = count - 1
            else:
                self.version_readers.pop(version, None)

    def close(self) -> None:
        """Discard the pending batch; the underlying store stays open."""
        with self._lock:
            if self.batch is not None:
                self.batch.close()
                self.batch = None

    def dump(self) -> str:
        """Return a human-readable listing of the stored nodes."""
        prefix = NODE_KEY_FORMAT.prefix.decode()
        lines = [
            f"{key.decode('utf-8', 'replace')}: {value.hex()}\n"
            for key, value in self.traverse_prefix(NODE_KEY_FORMAT.prefix)
        ]
        lines.append("\n")
        for node in self.traverse_nodes():
            key = (node.key or b"").decode("utf-8", "replace")
            if node.value is None and node.subtree_height > 0:
                lines.append(
                    f"{prefix}: {key}   {'':<16} h={node.subtree_height} "
                    f"nodeKey={node.node_key}\n"
                )
            else:
                value = (node.value or b"").decode("utf-8", "replace")
                lines.append(
                    f"{prefix}: {key} = {value:<16} h={node.subtree_height} "
                    f"nodeKey={node.node_key}\n"
                )
        return "-\n" + "".join(lines) + "-"