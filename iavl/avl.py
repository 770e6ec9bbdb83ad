"""Copy-on-write AVL operations on tree nodes and persisting new nodes."""

from __future__ import annotations

from typing import Optional

from iavl.node import Node, NodeError, NodeKey, new_leaf
from iavl.nodedb import NodeDB


def _set_leaf(node: Node, key: bytes, value: bytes) -> tuple[Node, bool]:
    if key < node.key:
        return (
            Node(
                key=node.key,
                subtree_height=1,
                size=2,
                left_node=new_leaf(key, value),
                right_node=node,
            ),
            False,
        )
    if key > node.key:
        return (
            Node(
                key=key,
                subtree_height=1,
                size=2,
                left_node=node,
                right_node=new_leaf(key, value),
            ),
            False,
        )
    return new_leaf(key, value), True


def recursive_set(ndb: NodeDB, node: Node, key: bytes, value: bytes) -> tuple[Node, bool]:
    """Set ``key`` under ``node``; return the new subtree root and whether a key was updated."""
    if node.is_leaf():
        return _set_leaf(node, key, value)
    node = node.clone(ndb)
    if key < node.key:
        node.left_node, updated = recursive_set(ndb, node.left_node, key, value)
    else:
        node.right_node, updated = recursive_set(ndb, node.right_node, key, value)
    if updated:
        return node, True
    node.calc_height_and_size(ndb)
    return balance(ndb, node), False


def recursive_remove(
    ndb: NodeDB, node: Node, key: bytes
) -> tuple[Optional[Node], Optional[bytes], Optional[bytes], bool]:
    """Remove ``key`` under ``node``.

    Returns the replacement subtree (None if the subtree became empty), the new
    leftmost key of the subtree if it changed, the removed value and whether
    anything was removed.
    """
    if node.is_leaf():
        if key == node.key:
            return None, None, node.value, True
        return node, None, None, False

    node = node.clone(ndb)

    if key < node.key:
        new_left, new_key, value, removed = recursive_remove(ndb, node.left_node, key)
        if not removed:
            return node, None, value, False
        if new_left is None:
            # the left child held the key; the right child takes this node's place
            return node.right_node, node.key, value, True
        node.left_node = new_left
        node.calc_height_and_size(ndb)
        return balance(ndb, node), new_key, value, True

    new_right, new_key, value, removed = recursive_remove(ndb, node.right_node, key)
    if not removed:
        return node, None, value, False
    if new_right is None:
        return node.left_node, None, value, True
    node.right_node = new_right
    if new_key is not None:
        node.key = new_key
    node.calc_height_and_size(ndb)
    return balance(ndb, node), None, value, True


def rotate_right(ndb: NodeDB, node: Node) -> Node:
    """Rotate the subtree right and return its new root."""
    node = node.clone(ndb)
    new_node = node.left_node.clone(ndb)
    node.left_node = new_node.right_node
    new_node.right_node = node
    node.calc_height_and_size(ndb)
    new_node.calc_height_and_size(ndb)
    return new_node


def rotate_left(ndb: NodeDB, node: Node) -> Node:
    """Rotate the subtree left and return its new root."""
    node = node.clone(ndb)
    new_node = node.right_node.clone(ndb)
    node.right_node = new_node.left_node
    new_node.left_node = node
    node.calc_height_and_size(ndb)
    new_node.calc_height_and_size(ndb)
    return new_node


def balance(ndb: NodeDB, node: Node) -> Node:
    """Restore the AVL property at an unsaved node and return the subtree root."""
    if node.node_key is not None:
        raise NodeError("unexpected balance() call on persisted node")
    factor = node.calc_balance(ndb)
    if factor > 1:
        if node.left_node.calc_balance(ndb) >= 0:
            return rotate_right(ndb, node)
        node.left_node_key = None
        node.left_node = rotate_left(ndb, node.left_node)
        return rotate_right(ndb, node)
    if factor < -1:
        right = node.get_right_node(ndb)
        if right.calc_balance(ndb) <= 0:
            return rotate_left(ndb, node)
        node.right_node_key = None
        node.right_node = rotate_right(ndb, right)
        return rotate_left(ndb, node)
    return node


def save_new_nodes(ndb: NodeDB, root: Node, version: int) -> list[Node]:
    """Assign node keys to the unsaved nodes under ``root``, hash and queue them.

    The saved nodes drop their in-memory children. Returns the nodes saved,
    children before parents.
    """
    nonce = 0
    new_nodes: list[Node] = []

    def assign(node: Node) -> bytes:
        nonlocal nonce
        if node.node_key is not None:
            if node.node_key.nonce != 0:
                return node.node_key.to_bytes()
            return node.hash
        nonce += 1
        node.node_key = NodeKey(version, nonce)
        if node.subtree_height > 0:
            node.left_node_key = assign(node.left_node)
            node.right_node_key = assign(node.right_node)
        node.compute_hash(version)
        new_nodes.append(node)
        return node.node_key.to_bytes()

    assign(root)
    for node in new_nodes:
        ndb.save_node(node)
        node.left_node = None
        node.right_node = None
    return new_nodes


def node_count(ndb: NodeDB, node: Optional[Node]) -> int:
    """Return the number of nodes, inner and leaf, in the subtree."""
    if node is None:
        return 0
    if node.is_leaf():
        return 1
    return (
        1
        + node_count(ndb, node.get_left_node(ndb))
        + node_count(ndb, node.get_right_node(ndb))
    )