"""Trie nodes: branches with up to sixteen children, and leaves."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple, Union

from triestore.path import Path
from triestore.trie_hash import TrieHash

MAX_CHILDREN = 16
"""The maximum number of children of a :class:`BranchNode`."""

_MAX_ADDRESS = (1 << 64) - 1


@dataclass(frozen=True)
class AddressWithHash:
    """A child whose storage address and hash are both known."""

    address: int
    hash: TrieHash

    def __post_init__(self) -> None:
        if not 0 < self.address <= _MAX_ADDRESS:
            raise ValueError(f"invalid child address {self.address}")


@dataclass(repr=False)
class LeafNode:
    """A leaf node holding the remaining nibbles of its key and a value."""

    partial_path: Path = field(default_factory=Path)
    value: bytes = b""

    def __post_init__(self) -> None:
        self.value = bytes(self.value)

    def with_partial_path(self, partial_path: Path) -> LeafNode:
        """Return a copy of this leaf with ``partial_path`` in place of its own."""
        return LeafNode(partial_path=partial_path, value=self.value)

    def update_value(self, value: bytes) -> None:
        """Replace the value held by this leaf."""
        self.value = bytes(value)

    def __repr__(self) -> str:
        return f"[Leaf {self.partial_path!r} {self.value.hex()}]"


def _empty_children() -> List[Optional["Child"]]:
    return [None] * MAX_CHILDREN


@dataclass(repr=False)
class BranchNode:
    """A branch node with an optional value and up to sixteen children.

    Each child is either an in-memory node that has not yet been hashed and
    allocated, or an :class:`AddressWithHash`.
    """

    partial_path: Path = field(default_factory=Path)
    value: Optional[bytes] = None
    children: List[Optional["Child"]] = field(default_factory=_empty_children)

    def __post_init__(self) -> None:
        if self.value is not None:
            self.value = bytes(self.value)
        self.children = list(self.children)
        if len(self.children) != MAX_CHILDREN:
            raise ValueError(
                f"a branch has {MAX_CHILDREN} child slots, got {len(self.children)}"
            )

    @staticmethod
    def _check_index(child_index: int) -> None:
        if not 0 <= child_index < MAX_CHILDREN:
            raise IndexError(f"child index {child_index} out of bounds")

    def child(self, child_index: int) -> Optional["Child"]:
        """Return the child at ``child_index``, or None if that slot is empty."""
        self._check_index(child_index)
        return self.children[child_index]

    def update_child(self, child_index: int, new_child: Optional["Child"]) -> None:
        """Set the child at ``child_index``; None removes it."""
        self._check_index(child_index)
        self.children[child_index] = new_child

    def children_iter(self) -> Iterator[Tuple[int, TrieHash]]:
        """Yield ``(index, hash)`` for every child, in index order.

        Raises ValueError on a child that has not been hashed yet.
        """
        for index, child in enumerate(self.children):
            if child is None:
                continue
            if not isinstance(child, AddressWithHash):
                raise ValueError(f"child {index} has not been hashed")
            yield index, child.hash

    @classmethod
    def from_leaf(cls, leaf: LeafNode) -> BranchNode:
        """Return a childless branch with the leaf's path and value."""
        return cls(partial_path=Path(leaf.partial_path), value=leaf.value)

    def with_partial_path(self, partial_path: Path) -> BranchNode:
        """Return a copy of this branch with ``partial_path`` in place of its own."""
        return BranchNode(
            partial_path=partial_path,
            value=self.value,
            children=copy.deepcopy(self.children),
        )

    def update_value(self, value: bytes) -> None:
        """Replace the value held by this branch."""
        self.value = bytes(value)

    def __repr__(self) -> str:
        parts = [f'[BranchNode path="{self.partial_path!r}"']
        for index, child in enumerate(self.children):
            if isinstance(child, AddressWithHash):
                parts.append(
                    f"({index}: address={child.address} hash={child.hash.hex()})"
                )
        value = "nil" if self.value is None else self.value.hex()
        parts.append(f" v={value}]")
        return "".join(parts)


Node = Union[BranchNode, LeafNode]
Child = Union[BranchNode, LeafNode, AddressWithHash]


@dataclass
class PathIterItem:
    """A step along a path through the trie.

    ``key_nibbles`` is the key of ``node`` as nibbles; ``next_nibble`` is the
    index of the child that the next item comes from, or None at the end.
    """

    key_nibbles: bytes
    node: Node
    next_nibble: Optional[int]


def default_node() -> Node:
    """Return the default node: a leaf with an empty path and empty value."""
    return LeafNode(partial_path=Path(), value=b"")