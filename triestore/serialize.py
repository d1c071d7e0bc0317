"""Compact storage encoding of trie nodes.

A stored node starts with a one-byte prefix (the index of its area size)
followed by a first byte that tells branches and leaves apart:

* Branch: bit 0 is 0, bit 1 says whether a value is present, bits 2-5 hold
  the number of children modulo 16 (0 means all sixteen), and bits 6-7 hold
  the partial path length (3 means the length follows as a varint).
* Leaf: bit 0 is 1 and bits 1-7 hold the partial path length.

A first byte of 255 never starts a node; it marks a freed area.
"""

from __future__ import annotations

import struct
from typing import BinaryIO

from triestore.node import MAX_CHILDREN, AddressWithHash, BranchNode, LeafNode, Node
from triestore.path import Path
from triestore.trie_hash import HASH_LENGTH, TrieHash

MAX_VARINT_SIZE = 10
"""The largest number of bytes a varint-encoded 64-bit integer can take."""

_MAX_U64 = (1 << 64) - 1
_MAX_ENCODED_PARTIAL_PATH_LEN = 2
_LONG_LEAF_PATH = 127
_FREED_AREA_MARKER = 255
_ADDRESS = struct.Struct("=Q")


class NodeDecodeError(ValueError):
    """Raised when stored bytes cannot be decoded into a node."""


def encode_varint(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as a little-endian base-128 varint."""
    if not 0 <= value <= _MAX_U64:
        raise ValueError(f"varint value {value} is out of range")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            raise NodeDecodeError("unexpected end of data")
        data += chunk
    return bytes(data)


def read_varint(stream: BinaryIO) -> int:
    """Read one varint from ``stream``."""
    result = 0
    for shift in range(0, 7 * MAX_VARINT_SIZE, 7):
        byte = _read_exact(stream, 1)[0]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            if result > _MAX_U64:
                raise NodeDecodeError("varint overflows 64 bits")
            return result
    raise NodeDecodeError("varint is too long")


def _encode_branch(branch: BranchNode, out: bytearray) -> None:
    present = [(pos, child) for pos, child in enumerate(branch.children) if child is not None]
    count = len(present)
    path = branch.partial_path
    if len(path) <= _MAX_ENCODED_PARTIAL_PATH_LEN:
        pp_len = len(path)
    else:
        pp_len = _MAX_ENCODED_PARTIAL_PATH_LEN + 1

    first = (
        (int(branch.value is not None) << 1)
        | ((count % MAX_CHILDREN) << 2)
        | (pp_len << 6)
    )
    out.append(first)

    if len(path) > _MAX_ENCODED_PARTIAL_PATH_LEN:
        out += encode_varint(len(path))
    out += bytes(path)

    if branch.value is not None:
        out += encode_varint(len(branch.value))
        out += branch.value

    full = count == MAX_CHILDREN
    for position, child in present:
        if not isinstance(child, AddressWithHash):
            raise ValueError(
                "attempt to serialize to persist a branch with a child "
                "that is not an AddressWithHash"
            )
        if not full:
            out += encode_varint(position)
        out += _ADDRESS.pack(child.address)
        out += bytes(child.hash)


def _encode_leaf(leaf: LeafNode, out: bytearray) -> None:
    path = leaf.partial_path
    out.append(((len(path) & 0x7F) << 1) | 1)
    if len(path) >= _LONG_LEAF_PATH:
        out += encode_varint(len(path))
    out += bytes(path)
    out += encode_varint(len(leaf.value))
    out += leaf.value


def encode_node(node: Node, prefix: int = 0) -> bytes:
    """Return the stored bytes of ``node``, starting with the ``prefix`` byte."""
    if not 0 <= prefix <= 0xFF:
        raise ValueError(f"prefix {prefix} does not fit in a byte")
    out = bytearray([prefix])
    if isinstance(node, LeafNode):
        _encode_leaf(node, out)
    elif isinstance(node, BranchNode):
        _encode_branch(node, out)
    else:
        raise TypeError(f"cannot encode {type(node).__name__}")
    return bytes(out)


def encoded_len(node: Node) -> int:
    """Return the number of bytes :func:`encode_node` produces for ``node``."""
    return len(encode_node(node, 0))


def _read_child(stream: BinaryIO) -> AddressWithHash:
    (address,) = _ADDRESS.unpack(_read_exact(stream, _ADDRESS.size))
    if address == 0:
        raise NodeDecodeError("zero address in child")
    return AddressWithHash(address, TrieHash(_read_exact(stream, HASH_LENGTH)))


def _decode_leaf(first: int, stream: BinaryIO) -> LeafNode:
    partial_path = _read_exact(stream, first >> 1)
    value_len = _read_exact(stream, 1)[0]
    value = _read_exact(stream, value_len)
    return LeafNode(partial_path=Path(partial_path), value=value)


def _decode_branch(first: int, stream: BinaryIO) -> BranchNode:
    has_value = (first >> 1) & 1 == 1
    child_count = (first >> 2) & 0x0F
    pp_len = first >> 6
    if pp_len > _MAX_ENCODED_PARTIAL_PATH_LEN:
        pp_len = read_varint(stream)
    partial_path = _read_exact(stream, pp_len)

    value = None
    if has_value:
        value_len = _read_exact(stream, 1)[0]
        value = _read_exact(stream, value_len)

    children = [None] * MAX_CHILDREN
    if child_count == 0:
        # A count of zero means the branch holds every child.
        for position in range(MAX_CHILDREN):
            children[position] = _read_child(stream)
    else:
        for _ in range(child_count):
            position = _read_exact(stream, 1)[0]
            if position >= MAX_CHILDREN:
                raise NodeDecodeError(f"child position {position} out of range")
            children[position] = _read_child(stream)

    return BranchNode(partial_path=Path(partial_path), value=value, children=children)


def decode_node(stream: BinaryIO) -> Node:
    """Read a node from ``stream``, which must be positioned after the prefix byte."""
    first = _read_exact(stream, 1)[0]
    if first == _FREED_AREA_MARKER:
        raise NodeDecodeError("attempt to read freed area")
    if first & 1:
        return _decode_leaf(first, stream)
    return _decode_branch(first, stream)