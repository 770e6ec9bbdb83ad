"""Versioned AVL+ tree with persistent node storage and a fast key index."""

__version__ = "0.1.0"

__all__ = [
    "avl",
    "encoding",
    "keyformat",
    "mutable_tree",
    "node",
    "nodedb",
    "pruning",
]