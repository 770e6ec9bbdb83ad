"""Removing tree versions from a node database: orphan detection and deletion."""

from __future__ import annotations

import logging
import threading
import time
from typing import Iterator, Optional

from iavl.node import Node, NodeKey, get_root_key
from iavl.nodedb import (
    LEGACY_NODE_KEY_FORMAT,
    LEGACY_ORPHAN_KEY_FORMAT,
    LEGACY_ROOT_KEY_FORMAT,
    NODE_KEY_FORMAT,
    NODE_KEY_PREFIX_FORMAT,
    Batch,
    NodeDB,
    NodeDBError,
)

DELETE_BATCH_COUNT = 1000
DELETE_PAUSE_SECONDS = 0.1

_log = logging.getLogger(__name__)


def _batch(ndb: NodeDB) -> Batch:
    if ndb.batch is None:
        raise NodeDBError("node database is closed")
    return ndb.batch


class _PreorderWalker:
    """Walks a stored tree in pre-order; a node's subtree can be skipped."""

    def __init__(self, ndb: NodeDB, root_key: Optional[bytes]) -> None:
        self._ndb = ndb
        self._stack: list[Node] = [ndb.get_node(root_key)] if root_key else []

    @property
    def valid(self) -> bool:
        return bool(self._stack)

    @property
    def node(self) -> Node:
        return self._stack[-1]

    def advance(self, skip_children: bool) -> None:
        node = self._stack.pop()
        if skip_children or node.is_leaf():
            return
        self._stack.append(self._ndb.get_node(node.right_node_key))
        self._stack.append(self._ndb.get_node(node.left_node_key))


def traverse_orphans(ndb: NodeDB, prev_version: int, cur_version: int) -> Iterator[Node]:
    """Yield the nodes of ``prev_version`` no longer reachable from ``cur_version``."""
    cur = _PreorderWalker(ndb, ndb.get_root(cur_version))
    prev = _PreorderWalker(ndb, ndb.get_root(prev_version))
    original: Optional[Node] = None
    while prev.valid:
        while original is None and cur.valid:
            node = cur.node
            if node.node_key.version <= prev_version:
                cur.advance(True)
                original = node
            else:
                cur.advance(False)
        candidate = prev.node
        if original is not None and candidate.hash == original.hash:
            prev.advance(True)
            original = None
        else:
            yield candidate
            prev.advance(False)


def delete_version(ndb: NodeDB, version: int) -> None:
    """Queue the deletion of every node orphaned by the version after ``version``."""
    batch = _batch(ndb)
    root_key = ndb.get_root(version)

    for orphan in traverse_orphans(ndb, version, version + 1):
        if orphan.node_key.nonce == 0 and not orphan.is_legacy:
            # a reformatted root may also exist as a legacy root
            batch.delete(LEGACY_NODE_KEY_FORMAT.key(orphan.hash))
        if orphan.node_key.nonce == 1 and orphan.node_key.version < version:
            # a root shared with an earlier version was moved to (version, 0)
            orphan.node_key.nonce = 0
        nk = orphan.get_key()
        if orphan.is_legacy:
            batch.delete(LEGACY_NODE_KEY_FORMAT.key(nk))
        else:
            batch.delete(NODE_KEY_FORMAT.key(nk))

    literal_root_key = get_root_key(version)
    if root_key is None or root_key != literal_root_key:
        # the root record only referred to an earlier version's root
        batch.delete(NODE_KEY_FORMAT.key(literal_root_key))

    next_root_key = ndb.get_root(version + 1)
    if next_root_key == literal_root_key:
        root = ndb.get_node(next_root_key)
        batch.delete(NODE_KEY_FORMAT.key(literal_root_key))
        root.node_key.nonce = 0
        ndb.save_node(root)


def delete_legacy_nodes(ndb: NodeDB, version: int, nk: bytes) -> None:
    """Queue the deletion of legacy nodes under ``nk`` saved at ``version`` or later."""
    node = ndb.get_node(nk)
    if node.node_key.version < version:
        return
    if node.left_node_key is not None:
        delete_legacy_nodes(ndb, version, node.left_node_key)
    if node.right_node_key is not None:
        delete_legacy_nodes(ndb, version, node.right_node_key)
    _batch(ndb).delete(LEGACY_NODE_KEY_FORMAT.key(nk))


def delete_legacy_versions(ndb: NodeDB, legacy_latest_version: int) -> None:
    """Queue the deletion of all legacy orphans, their nodes and all legacy roots."""
    batch = _batch(ndb)
    count = 0

    def pause_now_and_then() -> None:
        nonlocal count
        count += 1
        if count % DELETE_BATCH_COUNT == 0:
            time.sleep(DELETE_PAUSE_SECONDS)
            count = 0

    for key, value in ndb.traverse_prefix(LEGACY_ORPHAN_KEY_FORMAT.key()):
        pause_now_and_then()
        batch.delete(key)
        to_version, from_version = LEGACY_ORPHAN_KEY_FORMAT.scan(key, int, int)
        if (
            from_version <= legacy_latest_version and to_version < legacy_latest_version
        ) or from_version > legacy_latest_version:
            pause_now_and_then()
            batch.delete(LEGACY_NODE_KEY_FORMAT.key(value))

    for key, _ in ndb.traverse_prefix(LEGACY_ROOT_KEY_FORMAT.key()):
        pause_now_and_then()
        batch.delete(key)


def _check_readers(ndb: NodeDB, low: int, high: Optional[int]) -> None:
    for version, readers in dict(ndb.version_readers).items():
        if version >= low and (high is None or version <= high) and readers != 0:
            raise NodeDBError(
                f"unable to delete version {version} with {readers} active readers"
            )


def delete_versions_from(ndb: NodeDB, from_version: int) -> None:
    """Queue the deletion of every version from ``from_version`` upwards."""
    latest = ndb.get_latest_version()
    if latest < from_version:
        return
    _check_readers(ndb, from_version, None)

    batch = _batch(ndb)
    legacy_latest = ndb.get_legacy_latest_version()
    dump_from_version = from_version
    if legacy_latest >= from_version:
        for key, value in ndb.traverse_range(
            LEGACY_ROOT_KEY_FORMAT.key(from_version),
            LEGACY_ROOT_KEY_FORMAT.key(legacy_latest + 1),
        ):
            (version,) = LEGACY_ROOT_KEY_FORMAT.scan(key, int)
            if value:
                delete_legacy_nodes(ndb, version, value)
            # orphans are removed all at once when legacy versions are pruned
            batch.delete(key)
        ndb.reset_legacy_latest_version(0)
        from_version = legacy_latest + 1

    for key, _ in ndb.traverse_range(
        NODE_KEY_PREFIX_FORMAT.key_int64(from_version),
        NODE_KEY_PREFIX_FORMAT.key_int64(latest + 1),
    ):
        batch.delete(key)

    # the fast index is rebuilt later because of the version mismatch
    ndb.reset_latest_version(dump_from_version - 1)


def delete_versions_to(ndb: NodeDB, to_version: int) -> Optional[threading.Thread]:
    """Queue the deletion of the oldest versions up to ``to_version``.

    Legacy versions are removed in a background thread, which is returned
    when one is started.
    """
    legacy_latest = ndb.get_legacy_latest_version()
    if legacy_latest > to_version:
        return None

    first = ndb.get_first_version()
    latest = ndb.get_latest_version()
    if latest <= to_version:
        raise NodeDBError(
            f"latest version {latest} is less than or equal to toVersion {to_version}"
        )
    _check_readers(ndb, first, to_version)

    cleanup: Optional[threading.Thread] = None
    if legacy_latest >= first:
        batch = _batch(ndb)
        for orphan in traverse_orphans(ndb, legacy_latest, legacy_latest + 1):
            batch.delete(LEGACY_NODE_KEY_FORMAT.key(orphan.hash))
        ndb.reset_legacy_latest_version(-1)

        def run() -> None:
            try:
                delete_legacy_versions(ndb, legacy_latest)
            except Exception:
                _log.exception("error deleting legacy versions")

        cleanup = threading.Thread(target=run, daemon=True)
        cleanup.start()
        first = legacy_latest + 1

    for version in range(first, to_version + 1):
        delete_version(ndb, version)
        ndb.reset_first_version(version + 1)
    return cleanup


def orphans(ndb: NodeDB) -> list[bytes]:
    """Return the hashes of nodes orphaned between consecutive stored versions."""
    found: list[bytes] = []
    for version in range(ndb.first_version, ndb.latest_version):
        found.extend(orphan.hash for orphan in traverse_orphans(ndb, version, version + 1))
    return found


__all__ = [
    "NodeKey",
    "delete_legacy_nodes",
    "delete_legacy_versions",
    "delete_version",
    "delete_versions_from",
    "delete_versions_to",
    "orphans",
    "traverse_orphans",
]