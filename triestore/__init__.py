"""Storage of merkle trie nodes on a linear byte store, with node encoding,
hashing, free-list allocation and revisions."""

__version__ = "0.1.0"

__all__ = [
    "trie_hash",
    "path",
    "node",
    "serialize",
    "hashednode",
    "storage",
    "layout",
    "nodestore",
]