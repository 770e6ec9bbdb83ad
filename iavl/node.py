"""Tree nodes: in-memory form, hashing and on-disk encoding."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Optional, Protocol

from iavl.encoding import (
    EncodingError,
    bytes_size,
    decode_bytes,
    decode_varint,
    encode_32bytes_hash,
    encode_bytes,
    encode_varint,
    varint_size,
)

MODE_LEGACY_LEFT_NODE = 0x01
MODE_LEGACY_RIGHT_NODE = 0x02
HASH_SIZE = 32
NODE_KEY_SIZE = 12

_INT8_MIN = -128
_INT8_MAX = 127
_UINT32_MAX = 0xFFFFFFFF
_UINT64_MASK = (1 << 64) - 1


class NodeError(Exception):
    """Raised when a node is malformed or cannot be encoded, decoded or copied."""


class _NodeSource(Protocol):
    def get_node(self, nk: bytes) -> "Node": ...


@dataclass
class NodeKey:
    """Location of a node in storage: the version it was saved at and a nonce."""

    version: int
    nonce: int

    def to_bytes(self) -> bytes:
        """Return the 12-byte big-endian form ``<version><nonce>``."""
        return (self.version & _UINT64_MASK).to_bytes(8, "big") + (
            self.nonce & _UINT32_MAX
        ).to_bytes(4, "big")

    def __str__(self) -> str:
        return f"({self.version}, {self.nonce})"


def get_node_key(key: bytes) -> NodeKey:
    """Parse a 12-byte node key."""
    if len(key) < NODE_KEY_SIZE:
        raise NodeError(f"node key must be {NODE_KEY_SIZE} bytes, got {len(key)}")
    return NodeKey(
        version=int.from_bytes(key[:8], "big", signed=True),
        nonce=int.from_bytes(key[8:12], "big"),
    )


def get_root_key(version: int) -> bytes:
    """Return the node key of the root saved at ``version``."""
    return NodeKey(version, 1).to_bytes()


def _hash32(bz: Optional[bytes], what: str) -> bytes:
    if bz is None:
        raise EncodingError(f"{what} is missing")
    return encode_32bytes_hash(bz)


@dataclass(eq=False)
class Node:
    """A leaf (holding a value) or an inner node (holding two children)."""

    key: Optional[bytes] = None
    value: Optional[bytes] = None
    hash: Optional[bytes] = None
    node_key: Optional[NodeKey] = None
    left_node_key: Optional[bytes] = None
    right_node_key: Optional[bytes] = None
    size: int = 0
    left_node: Optional["Node"] = field(default=None, repr=False)
    right_node: Optional["Node"] = field(default=None, repr=False)
    subtree_height: int = 0
    is_legacy: bool = False

    def get_key(self) -> bytes:
        """Return the storage key: the hash for legacy nodes, else the node key."""
        if self.is_legacy:
            return self.hash
        if self.node_key is None:
            raise NodeError("node does not have a nodeKey")
        return self.node_key.to_bytes()

    def is_leaf(self) -> bool:
        return self.subtree_height == 0

    def __str__(self) -> str:
        child = ""
        if self.left_node is not None and self.left_node.node_key is not None:
            child += f"{{left {self.left_node.node_key}}}"
        if self.right_node is not None and self.right_node.node_key is not None:
            child += f"{{right {self.right_node.node_key}}}"
        return (
            f"Node{{{(self.key or b'').hex()}:{(self.value or b'').hex()}@ "
            f"{self.node_key}:{(self.left_node_key or b'').hex()}-"
            f"{(self.right_node_key or b'').hex()} {self.size}-{self.subtree_height} "
            f"{(self.hash or b'').hex()}}}#{child}\n"
        )

    def clone(self, ndb: _NodeSource) -> "Node":
        """Return a shallow, unsaved copy of an inner node with its hash cleared."""
        if self.is_leaf():
            raise NodeError("attempt to copy a leaf node")
        left, right = self.left_node, self.right_node
        if self.node_key is not None:
            left = self.get_left_node(ndb)
            right = self.get_right_node(ndb)
            self.left_node = None
            self.right_node = None
        return Node(
            key=self.key,
            subtree_height=self.subtree_height,
            size=self.size,
            left_node_key=self.left_node_key,
            right_node_key=self.right_node_key,
            left_node=left,
            right_node=right,
        )

    def has(self, ndb: _NodeSource, key: bytes) -> bool:
        """Return whether the subtree holds ``key``."""
        node = self
        while True:
            if node.key == key:
                return True
            if node.is_leaf():
                return False
            node = node.get_left_node(ndb) if key < node.key else node.get_right_node(ndb)

    def get(self, ndb: _NodeSource, key: bytes) -> tuple[int, Optional[bytes]]:
        """Return the leaf index where ``key`` is or would be, and its value or None."""
        index = 0
        node = self
        while not node.is_leaf():
            if key < node.key:
                node = node.get_left_node(ndb)
            else:
                right = node.get_right_node(ndb)
                index += node.size - right.size
                node = right
        if node.key < key:
            return index + 1, None
        if node.key > key:
            return index, None
        return index, node.value

    def get_by_index(
        self, ndb: _NodeSource, index: int
    ) -> tuple[Optional[bytes], Optional[bytes]]:
        """Return the key and value of the leaf at ``index``, or (None, None)."""
        node = self
        while not node.is_leaf():
            left = node.get_left_node(ndb)
            if index < left.size:
                node = left
            else:
                index -= left.size
                node = node.get_right_node(ndb)
        if index == 0:
            return node.key, node.value
        return None, None

    def compute_hash(self, version: int) -> Optional[bytes]:
        """Hash this node, assuming child hashes are known; None if they are not."""
        if self.hash is not None:
            return self.hash
        try:
            data = self.write_hash_bytes(version)
        except (NodeError, EncodingError):
            return None
        self.hash = hashlib.sha256(data).digest()
        return self.hash

    def hash_with_count(self, version: int) -> bytes:
        """Hash this node and any unhashed descendants."""
        if self.hash is not None:
            return self.hash
        if not self.is_leaf():
            if self.left_node is None or self.right_node is None:
                raise NodeError("found an empty child")
            self.left_node.hash_with_count(version)
            self.right_node.hash_with_count(version)
        self.hash = hashlib.sha256(self.write_hash_bytes(version)).digest()
        return self.hash

    def validate(self) -> None:
        """Raise NodeError if the node's contents are inconsistent."""
        if self.key is None:
            raise NodeError("key cannot be nil")
        if self.node_key is None:
            raise NodeError("nodeKey cannot be nil")
        if self.node_key.version <= 0:
            raise NodeError("version must be greater than 0")
        if self.subtree_height < 0:
            raise NodeError("height cannot be less than 0")
        if self.size < 1:
            raise NodeError("size must be at least 1")
        if self.is_leaf():
            if self.value is None:
                raise NodeError("value cannot be nil for leaf node")
            if (
                self.left_node_key is not None
                or self.left_node is not None
                or self.right_node_key is not None
                or self.right_node is not None
            ):
                raise NodeError("leaf node cannot have children")
            if self.size != 1:
                raise NodeError("leaf nodes must have size 1")
        elif self.value is not None:
            raise NodeError("value must be nil for non-leaf node")

    def write_hash_bytes(self, version: int) -> bytes:
        """Return the bytes hashed to produce this node's hash."""
        out = bytearray()
        out += encode_varint(self.subtree_height)
        out += encode_varint(self.size)
        out += encode_varint(version)
        if self.is_leaf():
            out += encode_bytes(self.key or b"")
            out += encode_32bytes_hash(hashlib.sha256(self.value or b"").digest())
        else:
            if self.left_node is None or self.right_node is None:
                raise NodeError("found an empty child")
            out += _hash32(self.left_node.hash, "left hash")
            out += _hash32(self.right_node.hash, "right hash")
        return bytes(out)

    def encoded_size(self) -> int:
        """Return the approximate size of the serialised node."""
        n = 1 + varint_size(self.size) + bytes_size(self.key or b"")
        if self.is_leaf():
            return n + bytes_size(self.value or b"")
        n += bytes_size(self.hash or b"")
        for child_key in (self.left_node_key, self.right_node_key):
            if child_key is not None:
                nk = get_node_key(child_key)
                n += varint_size(nk.version) + varint_size(nk.nonce)
        return n

    def to_bytes(self) -> bytes:
        """Serialise the node to its storage form."""
        out = bytearray()
        out += encode_varint(self.subtree_height)
        out += encode_varint(self.size)
        out += encode_bytes(self.key or b"")
        if self.is_leaf():
            out += encode_bytes(self.value or b"")
            return bytes(out)
        out += _hash32(self.hash, "hash")
        if self.left_node_key is None:
            raise NodeError("node.leftNodeKey was empty in writeBytes")
        mode = 0
        if len(self.left_node_key) == HASH_SIZE:
            mode |= MODE_LEGACY_LEFT_NODE
        if self.right_node_key is not None and len(self.right_node_key) == HASH_SIZE:
            mode |= MODE_LEGACY_RIGHT_NODE
        out += encode_varint(mode)
        out += _encode_child(self.left_node_key, mode & MODE_LEGACY_LEFT_NODE)
        if self.right_node_key is None:
            raise NodeError("node.rightNodeKey was empty in writeBytes")
        out += _encode_child(self.right_node_key, mode & MODE_LEGACY_RIGHT_NODE)
        return bytes(out)

    def get_left_node(self, ndb: _NodeSource) -> "Node":
        if self.left_node is not None:
            return self.left_node
        return ndb.get_node(self.left_node_key)

    def get_right_node(self, ndb: _NodeSource) -> "Node":
        if self.right_node is not None:
            return self.right_node
        return ndb.get_node(self.right_node_key)

    def calc_height_and_size(self, ndb: _NodeSource) -> None:
        """Recompute height and size from the children."""
        left = self.get_left_node(ndb)
        right = self.get_right_node(ndb)
        self.subtree_height = max(left.subtree_height, right.subtree_height) + 1
        self.size = left.size + right.size

    def calc_balance(self, ndb: _NodeSource) -> int:
        """Return the left height minus the right height."""
        left = self.get_left_node(ndb)
        right = self.get_right_node(ndb)
        return left.subtree_height - right.subtree_height


def _encode_child(child_key: bytes, legacy: int) -> bytes:
    if legacy:
        return encode_32bytes_hash(child_key)
    nk = get_node_key(child_key)
    return encode_varint(nk.version) + encode_varint(nk.nonce)


def new_leaf(key: bytes, value: bytes) -> Node:
    """Return a new, unsaved leaf node."""
    return Node(key=key, value=value, subtree_height=0, size=1)


class _Reader:
    def __init__(self, buf: bytes) -> None:
        self._buf = bytes(buf)
        self._pos = 0

    def varint(self, what: str) -> int:
        try:
            value, n = decode_varint(self._buf[self._pos:])
        except EncodingError as exc:
            raise NodeError(f"decoding {what}, {exc}") from exc
        self._pos += n
        return value

    def bytes(self, what: str) -> bytes:
        try:
            value, n = decode_bytes(self._buf[self._pos:])
        except EncodingError as exc:
            raise NodeError(f"decoding {what}, {exc}") from exc
        self._pos += n
        return value


def _read_child_key(reader: _Reader, legacy: int, side: str) -> bytes:
    if legacy:
        return reader.bytes(f"legacy node.{side}NodeKey")
    version = reader.varint(f"node.{side}NodeKey.version")
    nonce = reader.varint(f"node.{side}NodeKey.nonce")
    if not 0 <= nonce <= _UINT32_MAX:
        raise NodeError(f"invalid {side}NodeKey.nonce, out of int32 range")
    return NodeKey(version, nonce).to_bytes()


def make_node(nk: bytes, buf: bytes) -> Node:
    """Decode a node stored under node key ``nk``."""
    reader = _Reader(buf)
    height = reader.varint("node.height")
    if not _INT8_MIN <= height <= _INT8_MAX:
        raise NodeError("invalid height, out of int8 range")
    size = reader.varint("node.size")
    key = reader.bytes("node.key")
    node = Node(subtree_height=height, size=size, node_key=get_node_key(nk), key=key)
    if node.is_leaf():
        node.value = reader.bytes("node.value")
        node.compute_hash(node.node_key.version)
        return node
    node.hash = reader.bytes("node.hash")
    mode = reader.varint("mode")
    if not 0 <= mode <= 3:
        raise NodeError("invalid mode")
    node.left_node_key = _read_child_key(reader, mode & MODE_LEGACY_LEFT_NODE, "left")
    node.right_node_key = _read_child_key(reader, mode & MODE_LEGACY_RIGHT_NODE, "right")
    return node


def make_legacy_node(hash_: bytes, buf: bytes) -> Node:
    """Decode a legacy node stored under its hash."""
    reader = _Reader(buf)
    height = reader.varint("node.height")
    if not _INT8_MIN <= height <= _INT8_MAX:
        raise NodeError("invalid height, must be int8")
    size = reader.varint("node.size")
    version = reader.varint("node.version")
    key = reader.bytes("node.key")
    node = Node(
        subtree_height=height,
        size=size,
        node_key=NodeKey(version, 0),
        key=key,
        hash=hash_,
        is_legacy=True,
    )
    if node.is_leaf():
        node.value = reader.bytes("node.value")
    else:
        node.left_node_key = reader.bytes("node.leftHash")
        node.right_node_key = reader.bytes("node.rightHash")
    return node