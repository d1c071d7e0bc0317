"""Hash pre-images and hashes of trie nodes."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from itertools import chain
from typing import Iterable, Iterator, Optional, Protocol, Tuple

from triestore.node import BranchNode, LeafNode, Node
from triestore.path import Path
from triestore.serialize import encode_varint
from triestore.trie_hash import TrieHash

_BITS_PER_NIBBLE = 4
_SHORT_VALUE_LIMIT = 32


class _Sink(Protocol):
    def update(self, data: bytes) -> None: ...


class _PreimageBuffer:
    def __init__(self) -> None:
        self.data = bytearray()

    def update(self, data: bytes) -> None:
        self.data += data


@dataclass(frozen=True)
class ValueDigest:
    """A node's value, or the hash of its value when ``is_hash`` is set."""

    data: bytes
    is_hash: bool = False


def _add_len_and_value(sink: _Sink, data: bytes) -> None:
    sink.update(bytes([len(data) & 0xFF]))
    sink.update(data)


def _add_value_digest(sink: _Sink, digest: Optional[ValueDigest]) -> None:
    if digest is None:
        sink.update(b"\x00")
        return
    sink.update(b"\x01")
    data = bytes(digest.data)
    if not digest.is_hash and len(data) >= _SHORT_VALUE_LIMIT:
        data = hashlib.sha256(data).digest()
    _add_len_and_value(sink, data)


class Hashable(ABC):
    """A trie node that can be turned into a hash pre-image."""

    @abstractmethod
    def key(self) -> Iterable[int]:
        """Return the node's full key, one nibble per element."""

    @abstractmethod
    def value_digest(self) -> Optional[ValueDigest]:
        """Return the node's value or its hash, or None when it has no value."""

    @abstractmethod
    def children(self) -> Iterable[Tuple[int, TrieHash]]:
        """Return ``(index, hash)`` for each child; nothing for a leaf."""

    def to_hash(self) -> TrieHash:
        """Return the SHA-256 hash of this node's pre-image."""
        hasher = hashlib.sha256()
        self.write(hasher)
        return TrieHash(hasher.digest())

    def write(self, sink: _Sink) -> None:
        """Feed this node's hash pre-image to ``sink.update``."""
        children = list(self.children())
        sink.update(encode_varint(len(children)))
        for index, child_hash in children:
            sink.update(encode_varint(index))
            sink.update(bytes(child_hash))

        _add_value_digest(sink, self.value_digest())

        key = list(self.key())
        sink.update(encode_varint(_BITS_PER_NIBBLE * len(key)))
        nibbles: Iterator[int] = iter(key)
        sink.update(
            bytes(((high << 4) | next(nibbles, 0)) & 0xFF for high in nibbles)
        )


@dataclass
class NodeAndPrefix(Hashable):
    """A node together with the path that leads to it."""

    node: Node
    prefix: Path

    def key(self) -> Iterable[int]:
        return chain(self.prefix, self.node.partial_path)

    def value_digest(self) -> Optional[ValueDigest]:
        if isinstance(self.node, LeafNode):
            return ValueDigest(self.node.value)
        if self.node.value is None:
            return None
        return ValueDigest(self.node.value)

    def children(self) -> Iterable[Tuple[int, TrieHash]]:
        if isinstance(self.node, BranchNode):
            return list(self.node.children_iter())
        return []


def hash_node(node: Node, path_prefix: Path) -> TrieHash:
    """Return the hash of ``node``, which sits at ``path_prefix``.

    Every child of a branch must already be hashed.
    """
    return NodeAndPrefix(node, path_prefix).to_hash()


def hash_preimage(node: Node, path_prefix: Path) -> bytes:
    """Return the bytes that are hashed to give the hash of ``node``."""
    buffer = _PreimageBuffer()
    NodeAndPrefix(node, path_prefix).write(buffer)
    return bytes(buffer.data)