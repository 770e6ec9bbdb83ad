"""A versioned, persistent AVL+ tree with an optional fast key/value index."""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, replace
from typing import Iterator, Optional

from iavl.avl import recursive_remove, recursive_set, save_new_nodes
from iavl.node import Node, new_leaf
from iavl.nodedb import (
    DEFAULT_STORAGE_VERSION_VALUE,
    FastNode,
    NodeDB,
    NodeDBError,
    Options,
    VersionDoesNotExistError,
)
from iavl.pruning import delete_versions_from, delete_versions_to

_EMPTY_HASH = hashlib.sha256(b"").digest()


@dataclass(frozen=True)
class _Snapshot:
    root: Optional[Node]
    version: int


def _root_hash(root: Optional[Node], version: int) -> bytes:
    if root is None:
        return _EMPTY_HASH
    return root.hash_with_count(version)


def _in_range(key: bytes, start: Optional[bytes], end: Optional[bytes]) -> bool:
    return (start is None or key >= start) and (end is None or key < end)


class MutableTree:
    """A versioned tree whose working state is saved as numbered versions.

    Not safe for concurrent writers; guard it with a lock where needed.
    """

    def __init__(
        self,
        db,
        cache_size: int = 0,
        skip_fast_storage_upgrade: bool = False,
        options: Optional[Options] = None,
    ) -> None:
        opts = replace(options) if options is not None else Options()
        self.ndb = NodeDB(db, cache_size, opts)
        self.skip_fast_storage_upgrade = skip_fast_storage_upgrade
        self._root: Optional[Node] = None
        self._version = 0
        self._last_saved = _Snapshot(None, 0)
        self._additions: dict[bytes, FastNode] = {}
        self._removals: set[bytes] = set()
        self._lock = threading.RLock()

    # --- state -------------------------------------------------------------

    @property
    def version(self) -> int:
        """The version the working tree is based on."""
        return self._version

    def is_empty(self) -> bool:
        return self.size() == 0

    def size(self) -> int:
        """Return the number of keys in the working tree."""
        return 0 if self._root is None else self._root.size

    def version_exists(self, version: int) -> bool:
        try:
            legacy_latest = self.ndb.get_legacy_latest_version()
            if version <= legacy_latest:
                return self.ndb.has_legacy_version(version)
            first = self.ndb.get_first_version()
            latest = self.ndb.get_latest_version()
        except NodeDBError:
            return False
        return first <= version <= latest

    def available_versions(self) -> list[int]:
        """Return all stored versions in ascending order."""
        try:
            first = self.ndb.get_first_version()
            latest = self.ndb.get_latest_version()
            legacy_latest = self.ndb.get_legacy_latest_version()
            versions: list[int] = []
            if legacy_latest > first:
                versions.extend(
                    v for v in range(first, legacy_latest) if self.ndb.has_legacy_version(v)
                )
                first = legacy_latest
        except NodeDBError:
            return []
        versions.extend(range(first, latest + 1))
        return versions

    def hash(self) -> bytes:
        """Return the hash of the last saved version."""
        return _root_hash(self._last_saved.root, self._last_saved.version + 1)

    def working_hash(self) -> bytes:
        """Return the hash of the working tree."""
        return _root_hash(self._root, self._version + 1)

    def working_version(self) -> int:
        version = self._version + 1
        if version == 1 and self.ndb.options.initial_version > 0:
            version = self.ndb.options.initial_version
        return version

    # --- reads and writes --------------------------------------------------

    def set(self, key: bytes, value: bytes) -> bool:
        """Set ``key``; return True if an existing value was replaced."""
        if value is None:
            raise ValueError(f"attempt to store nil value at key {key!r}")
        key, value = bytes(key), bytes(value)
        if not self.skip_fast_storage_upgrade:
            self._add_unsaved_addition(FastNode(key, value, self._version + 1))
        if self._root is None:
            self._root = new_leaf(key, value)
            return False
        self._root, updated = recursive_set(self.ndb, self._root, key, value)
        return updated

    def get(self, key: bytes) -> Optional[bytes]:
        """Return the working value of ``key``, or None."""
        if self._root is None:
            return None
        key = bytes(key)
        if not self.skip_fast_storage_upgrade:
            addition = self._additions.get(key)
            if addition is not None:
                return addition.value
            if key in self._removals:
                return None
        return self._tree_get(self._root, self._version, key)

    def get_with_index(self, key: bytes) -> tuple[int, Optional[bytes]]:
        """Return the leaf index where ``key`` is or would be, and its value or None."""
        if self._root is None:
            return 0, None
        return self._root.get(self.ndb, bytes(key))

    def remove(self, key: bytes) -> tuple[Optional[bytes], bool]:
        """Remove ``key``; return the removed value and whether it existed."""
        if self._root is None:
            return None, False
        key = bytes(key)
        new_root, _, value, removed = recursive_remove(self.ndb, self._root, key)
        if not removed:
            return None, False
        if not self.skip_fast_storage_upgrade:
            self._add_unsaved_removal(key)
        self._root = new_root
        return value, True

    def items(
        self,
        start: Optional[bytes] = None,
        end: Optional[bytes] = None,
        ascending: bool = True,
    ) -> Iterator[tuple[bytes, bytes]]:
        """Iterate ``(key, value)`` pairs with start <= key < end.

        The tree must not be modified while iterating.
        """
        if not self.skip_fast_storage_upgrade and self.is_fast_cache_enabled():
            return self._fast_items(start, end, ascending)
        return self._walk(self._root, start, end, ascending)

    def _tree_get(self, root: Optional[Node], version: int, key: bytes) -> Optional[bytes]:
        if root is None:
            return None
        if not self.skip_fast_storage_upgrade:
            try:
                fast = self.ndb.get_fast_node(key)
            except NodeDBError:
                return root.get(self.ndb, key)[1]
            if fast is None:
                # the fast index mirrors the latest version exactly
                if version == self.ndb.latest_version:
                    return None
                return root.get(self.ndb, key)[1]
            if fast.version_last_updated_at <= version:
                return fast.value
        return root.get(self.ndb, key)[1]

    def _walk(
        self,
        node: Optional[Node],
        start: Optional[bytes],
        end: Optional[bytes],
        ascending: bool,
    ) -> Iterator[tuple[bytes, bytes]]:
        if node is None:
            return
        if node.is_leaf():
            if _in_range(node.key, start, end):
                yield node.key, node.value
            return
        children = []
        if start is None or start < node.key:
            children.append(node.get_left_node(self.ndb))
        if end is None or end > node.key:
            children.append(node.get_right_node(self.ndb))
        if not ascending:
            children.reverse()
        for child in children:
            yield from self._walk(child, start, end, ascending)

    def _fast_items(
        self, start: Optional[bytes], end: Optional[bytes], ascending: bool
    ) -> Iterator[tuple[bytes, bytes]]:
        merged = {fn.key: fn.value for fn in self.ndb.fast_items(start, end, True)}
        for key in self._removals:
            merged.pop(key, None)
        for key, fn in self._additions.items():
            if _in_range(key, start, end):
                merged[key] = fn.value
        for key in sorted(merged, reverse=not ascending):
            yield key, merged[key]

    # --- loading -----------------------------------------------------------

    def load(self) -> int:
        """Load the latest saved version; return its number."""
        return self.load_version(0)

    def load_version(self, target_version: int) -> int:
        """Load ``target_version`` (latest if <= 0); return the latest version."""
        initial = self.ndb.options.initial_version
        first = self.ndb.get_first_version()
        if 0 < first < initial:
            raise NodeDBError(
                f"initial version set to {initial}, but found earlier version {first}"
            )
        latest = self.ndb.get_latest_version()
        if latest < target_version:
            raise NodeDBError(
                f"wanted to load target {target_version} but only found up to {latest}"
            )
        if first == 0:
            if target_version <= 0:
                if not self.skip_fast_storage_upgrade:
                    with self._lock:
                        self.enable_fast_storage_if_not_enabled()
                return 0
            raise NodeDBError(f"no versions found while trying to load {target_version}")

        if target_version <= 0:
            target_version = latest
        if not self.version_exists(target_version):
            raise VersionDoesNotExistError()
        root_key = self.ndb.get_root(target_version)
        root = self.ndb.get_node(root_key) if root_key is not None else None

        self._root = root
        self._version = target_version
        self._last_saved = _Snapshot(root, target_version)

        if not self.skip_fast_storage_upgrade:
            self.enable_fast_storage_if_not_enabled()
        return latest

    def load_version_for_overwriting(self, target_version: int) -> None:
        """Load ``target_version`` and delete every later version."""
        self.load_version(target_version)
        delete_versions_from(self.ndb, target_version + 1)
        self.ndb.commit()
        if not self.skip_fast_storage_upgrade:
            # the version mismatch makes this rebuild the fast index
            self.enable_fast_storage_if_not_enabled()

    # --- fast storage ------------------------------------------------------

    def is_upgradeable(self) -> bool:
        """Return whether the fast index may be (re)built."""
        should_force = self.ndb.should_force_fast_storage_upgrade()
        return not self.skip_fast_storage_upgrade and (
            not self.ndb.has_upgraded_to_fast_storage() or should_force
        )

    def is_fast_cache_enabled(self) -> bool:
        """Return whether the working tree is the latest version and fast storage is on."""
        return (
            self._version == self.ndb.get_latest_version()
            and self.ndb.has_upgraded_to_fast_storage()
        )

    def enable_fast_storage_if_not_enabled(self) -> bool:
        """Rebuild the fast index from the working tree if needed; return whether it was."""
        if not self.is_upgradeable():
            return False
        # fast nodes left over from a downgrade may be stale
        for stale in list(self.ndb.fast_items()):
            self.ndb.delete_fast_node(stale.key)
        try:
            for key, value in list(self._walk(self._root, None, None, True)):
                self.ndb.save_fast_node_no_cache(FastNode(key, value, self._version))
            self.ndb.set_fast_storage_version_to_batch(self.ndb.get_latest_version())
            self.ndb.commit()
        except Exception:
            self.ndb.storage_version = DEFAULT_STORAGE_VERSION_VALUE
            raise
        return True

    def _add_unsaved_addition(self, node: FastNode) -> None:
        self._removals.discard(node.key)
        self._additions[node.key] = node

    def _add_unsaved_removal(self, key: bytes) -> None:
        self._additions.pop(key, None)
        self._removals.add(key)

    def unsaved_fast_node_additions(self) -> dict[bytes, FastNode]:
        """Return a copy of the fast nodes waiting to be saved."""
        return dict(self._additions)

    def unsaved_fast_node_removals(self) -> set[bytes]:
        """Return a copy of the keys whose fast nodes are waiting to be deleted."""
        return set(self._removals)

    # --- versions ----------------------------------------------------------

    def get_versioned(self, key: bytes, version: int) -> Optional[bytes]:
        """Return the value of ``key`` at ``version``, or None."""
        if not self.version_exists(version):
            return None
        key = bytes(key)
        if not self.skip_fast_storage_upgrade and self.is_fast_cache_enabled():
            try:
                fast = self.ndb.get_fast_node(key)
            except NodeDBError:
                fast = None
            if fast is None and version == self.ndb.latest_version:
                return None
            if fast is not None and fast.version_last_updated_at <= version:
                return fast.value
        try:
            root_key = self.ndb.get_root(version)
            root = self.ndb.get_node(root_key) if root_key is not None else None
        except NodeDBError:
            return None
        return self._tree_get(root, version, key)

    def save_version(self) -> tuple[bytes, int]:
        """Save the working tree as a new version; return its hash and number."""
        version = self.working_version()

        if self.version_exists(version):
            # saving the same content again is a no-op
            existing_key = self.ndb.get_root(version)
            existing_root = (
                self.ndb.get_node(existing_key) if existing_key is not None else None
            )
            new_hash = self.working_hash()
            if (existing_root is None and self._root is None) or (
                existing_root is not None and existing_root.hash == new_hash
            ):
                self._version = version
                self._root = existing_root
                self._last_saved = _Snapshot(existing_root, version)
                return new_hash, version
            existing = existing_key.hex() if existing_key is not None else None
            raise NodeDBError(
                f"version {version} was already saved to different hash from "
                f"{new_hash.hex().upper()} (existing nodeKey {existing})"
            )

        if not self.skip_fast_storage_upgrade:
            self._save_fast_node_version(version)

        root = self._root
        if root is None:
            self.ndb.save_empty_root(version)
        elif root.node_key is not None:
            # nothing changed since the root was saved
            self.ndb.save_root(version, root.node_key)
            if root.is_legacy:
                root.is_legacy = False
                self.ndb.save_node(root)
        else:
            save_new_nodes(self.ndb, root, version)

        self.ndb.commit()
        self.ndb.reset_latest_version(version)
        self._version = version
        self._last_saved = _Snapshot(self._root, version)
        if not self.skip_fast_storage_upgrade:
            self._additions = {}
            self._removals = set()
        return self.hash(), version

    def _save_fast_node_version(self, version: int) -> None:
        for key in sorted(self._additions):
            self.ndb.save_fast_node(self._additions[key])
        for key in sorted(self._removals):
            self.ndb.delete_fast_node(key)
        self.ndb.set_fast_storage_version_to_batch(version)

    def set_initial_version(self, version: int) -> None:
        """Set the number of the first version saved to an empty database."""
        self.ndb.options.initial_version = version

    def delete_versions_to(self, to_version: int) -> None:
        """Delete all versions up to and including ``to_version``."""
        delete_versions_to(self.ndb, to_version)
        self.ndb.commit()

    def rollback(self) -> None:
        """Discard unsaved changes, returning to the last saved version."""
        if self._version > 0:
            self._root = self._last_saved.root
            self._version = self._last_saved.version
        else:
            self._root = None
            self._version = 0
        if not self.skip_fast_storage_upgrade:
            self._additions = {}
            self._removals = set()

    # --- misc --------------------------------------------------------------

    def dump(self) -> str:
        """Return a human-readable listing of the stored nodes."""
        return self.ndb.dump()

    def close(self) -> None:
        """Release the working tree and the pending batch."""
        with self._lock:
            self._root = None
            self._last_saved = _Snapshot(None, 0)
            self.ndb.close()