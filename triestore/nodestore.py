"""Revisions of the trie and management of the space they occupy in storage.

A :class:`NodeStore` is one revision of the trie. Its ``kind`` says which:

* :class:`Committed` - a revision whose nodes are all in storage.
* :class:`MutableProposal` - a proposal still being modified; its root lives
  in memory.
* :class:`ImmutableProposal` - a proposal that has been hashed and whose new
  nodes have addresses, but may not be written to storage yet.

A mutable proposal is started from a committed revision or an immutable
proposal with :meth:`NodeStore.new_proposal`, turned into an immutable one
with :meth:`NodeStore.freeze`, and written out with the ``flush_*`` methods.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from itertools import chain
from typing import BinaryIO, Dict, List, Optional, Tuple, Union

from triestore.hashednode import hash_node
from triestore.layout import (
    AREA_SIZES,
    FREE_LISTS_OFFSET,
    HEADER_STRUCT_SIZE,
    InvalidDataError,
    NodeStoreHeader,
    area_size_to_index,
    decode_free_area,
    encode_free_area,
    index_name,
    read_area_index,
    version_bytes,
)
from triestore.node import AddressWithHash, BranchNode, Node
from triestore.path import Path
from triestore.serialize import decode_node, encode_node, encoded_len
from triestore.storage import ReadableStorage, WritableStorage
from triestore.trie_hash import TrieHash

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommittedParent:
    """A parent that is a committed revision with the given root hash."""

    root_hash: Optional[TrieHash] = None


class ProposedParent:
    """A parent that is an immutable proposal; equal only to the same proposal."""

    __slots__ = ("proposal",)

    def __init__(self, proposal: "ImmutableProposal") -> None:
        self.proposal = proposal

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ProposedParent):
            return self.proposal is other.proposal
        return NotImplemented

    def __hash__(self) -> int:
        return id(self.proposal)

    def __repr__(self) -> str:
        return f"ProposedParent({id(self.proposal):#x})"


Parent = Union[CommittedParent, ProposedParent]


def _parent_in_memory_node(parent: Parent, addr: int) -> Optional[Node]:
    if isinstance(parent, ProposedParent):
        return parent.proposal.read_in_memory_node(addr)
    return None


@dataclass
class Committed:
    """A committed revision; it keeps no nodes in memory."""

    deleted: Tuple[int, ...] = ()
    root_hash: Optional[TrieHash] = None

    def read_in_memory_node(self, addr: int) -> Optional[Node]:
        """Return None: every node of a committed revision is in storage."""
        return None

    def as_parent(self) -> CommittedParent:
        """Return this revision as the parent of a new proposal."""
        return CommittedParent(self.root_hash)


@dataclass(eq=False)
class MutableProposal:
    """A proposal that is still being modified."""

    root: Optional[Node] = None
    deleted: List[int] = field(default_factory=list)
    parent: Parent = field(default_factory=CommittedParent)

    def read_in_memory_node(self, addr: int) -> Optional[Node]:
        """Look for ``addr`` among the in-memory nodes of parent proposals."""
        return _parent_in_memory_node(self.parent, addr)


@dataclass(eq=False)
class ImmutableProposal:
    """A hashed proposal whose new nodes have been given addresses."""

    new: Dict[int, Tuple[int, Node]] = field(default_factory=dict)
    deleted: Tuple[int, ...] = ()
    parent: Parent = field(default_factory=CommittedParent)
    root_hash: Optional[TrieHash] = None

    def parent_hash_is(self, hash: Optional[TrieHash]) -> bool:
        """Return True if the parent is committed and has root hash ``hash``."""
        parent = self.parent
        return isinstance(parent, CommittedParent) and parent.root_hash == hash

    def read_in_memory_node(self, addr: int) -> Optional[Node]:
        """Return the node at ``addr`` if this proposal or an ancestor created it."""
        entry = self.new.get(addr)
        if entry is not None:
            return entry[1]
        return _parent_in_memory_node(self.parent, addr)

    def as_parent(self) -> ProposedParent:
        """Return this proposal as the parent of a new proposal."""
        return ProposedParent(self)


Kind = Union[Committed, MutableProposal, ImmutableProposal]


def _read_up_to(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


@dataclass(eq=False)
class NodeStore:
    """One revision of the trie on top of linear storage."""

    header: NodeStoreHeader
    kind: Kind
    storage: ReadableStorage

    # ----- construction -------------------------------------------------

    @classmethod
    def open(cls, storage: ReadableStorage) -> NodeStore:
        """Open an existing store whose header is already in ``storage``."""
        with storage.stream_from(0) as stream:
            raw = _read_up_to(stream, HEADER_STRUCT_SIZE)
        header = NodeStoreHeader.from_bytes(raw)
        if header.version != version_bytes():
            raise InvalidDataError("Incompatible triestore version")
        if header.endian_test != 1:
            raise InvalidDataError(
                "Database cannot be opened due to difference in endianness"
            )
        store = cls(header=header, kind=Committed(), storage=storage)
        if header.root_address is not None:
            root = store.read_node_from_disk(header.root_address)
            store.kind.root_hash = hash_node(root, Path())
        return store

    @classmethod
    def new_empty_committed(cls, storage: ReadableStorage) -> NodeStore:
        """Return an empty committed revision; nothing is written to storage."""
        return cls(header=NodeStoreHeader(), kind=Committed(), storage=storage)

    @classmethod
    def new_empty_proposal(cls, storage: WritableStorage) -> NodeStore:
        """Write an empty header to ``storage`` and return an empty mutable proposal."""
        if not isinstance(storage, WritableStorage):
            raise TypeError("an empty proposal needs writable storage")
        header = NodeStoreHeader()
        storage.write(0, header.to_bytes())
        kind = MutableProposal(root=None, deleted=[], parent=CommittedParent(None))
        return cls(header=header, kind=kind, storage=storage)

    @classmethod
    def new_proposal(cls, parent: NodeStore) -> NodeStore:
        """Start a mutable proposal on top of a committed revision or immutable proposal."""
        if not isinstance(parent.kind, (Committed, ImmutableProposal)):
            raise TypeError("a proposal can only be made on a hashed revision")
        deleted: List[int] = []
        root: Optional[Node] = None
        root_addr = parent.header.root_address
        if root_addr is not None:
            deleted.append(root_addr)
            root = copy.deepcopy(parent.read_node(root_addr))
        kind = MutableProposal(root=root, deleted=deleted, parent=parent.kind.as_parent())
        return cls(header=copy.deepcopy(parent.header), kind=kind, storage=parent.storage)

    # ----- helpers ------------------------------------------------------

    def _expect_kind(self, kind_type: type, operation: str):
        if not isinstance(self.kind, kind_type):
            raise TypeError(
                f"{operation} needs a {kind_type.__name__} revision, "
                f"not {type(self.kind).__name__}"
            )
        return self.kind

    def _writable(self, operation: str) -> WritableStorage:
        if not isinstance(self.storage, WritableStorage):
            raise TypeError(f"{operation} needs writable storage")
        return self.storage

    # ----- reading ------------------------------------------------------

    def read_node(self, addr: int) -> Node:
        """Return the node at ``addr`` from memory if present, else from storage."""
        node = self.kind.read_in_memory_node(addr)
        if node is not None:
            return node
        return self.read_node_from_disk(addr)

    def read_node_from_disk(self, addr: int) -> Node:
        """Read the node stored in the area at ``addr``."""
        cached = self.storage.read_cached_node(addr)
        if cached is not None:
            return cached
        # Skip the area-size byte.
        with self.storage.stream_from(addr + 1) as stream:
            return decode_node(stream)

    def area_index_and_size(self, addr: int) -> Tuple[int, int]:
        """Return the area-size index and the area size of the area at ``addr``."""
        with self.storage.stream_from(addr) as stream:
            index = read_area_index(stream)
        return index, AREA_SIZES[index]

    def root_node(self) -> Optional[Node]:
        """Return the root of this revision, or None when it has none."""
        if isinstance(self.kind, MutableProposal):
            return copy.deepcopy(self.kind.root)
        addr = self.header.root_address
        if addr is None:
            return None
        try:
            return self.read_node(addr)
        except (ValueError, OSError):
            return None

    def root_address_and_hash(self) -> Optional[Tuple[int, TrieHash]]:
        """Return the stored root's address and hash, or None when there is no root."""
        addr = self.header.root_address
        if addr is None:
            return None
        return addr, hash_node(self.read_node(addr), Path())

    def root_hash(self) -> Optional[TrieHash]:
        """Return the hash of the stored root, or None when there is no root."""
        found = self.root_address_and_hash()
        return None if found is None else found[1]

    # ----- mutable proposals --------------------------------------------

    def mark_deleted(self, addr: int) -> None:
        """Record that the node at ``addr`` is deleted by this proposal."""
        kind = self._expect_kind(MutableProposal, "mark_deleted")
        _log.debug("Pending delete at %s", addr)
        kind.deleted.append(addr)

    def read_for_update(self, addr: int) -> Node:
        """Mark the node at ``addr`` deleted and return a copy of it to modify."""
        self.mark_deleted(addr)
        return copy.deepcopy(self.read_node(addr))

    def set_root(self, node: Optional[Node]) -> None:
        """Replace the root of this mutable proposal."""
        kind = self._expect_kind(MutableProposal, "set_root")
        kind.root = node

    def freeze(self) -> NodeStore:
        """Hash this mutable proposal, allocate its new nodes and return it immutable."""
        kind = self._expect_kind(MutableProposal, "freeze")
        proposal = ImmutableProposal(
            new={}, deleted=tuple(kind.deleted), parent=kind.parent, root_hash=None
        )
        store = NodeStore(
            header=copy.deepcopy(self.header), kind=proposal, storage=self.storage
        )
        if kind.root is None:
            store.header.root_address = None
            return store
        new_nodes: Dict[int, Tuple[int, Node]] = {}
        root_addr, root_hash = store._hash_helper(
            copy.deepcopy(kind.root), Path(), new_nodes
        )
        store.header.root_address = root_addr
        proposal.new = new_nodes
        proposal.root_hash = root_hash
        return store

    def _hash_helper(
        self, node: Node, path_prefix: Path, new_nodes: Dict[int, Tuple[int, Node]]
    ) -> Tuple[int, TrieHash]:
        if isinstance(node, BranchNode):
            for nibble, child in enumerate(node.children):
                if child is None or isinstance(child, AddressWithHash):
                    continue
                child_prefix = path_prefix + chain(node.partial_path, (nibble,))
                child_addr, child_hash = self._hash_helper(child, child_prefix, new_nodes)
                node.children[nibble] = AddressWithHash(child_addr, child_hash)
        node_hash = hash_node(node, path_prefix)
        addr, index = self.allocate_node(node)
        new_nodes[addr] = (index, node)
        return addr, node_hash

    # ----- allocation ---------------------------------------------------

    def _allocate_from_freed(self, n: int) -> Optional[Tuple[int, int]]:
        wanted = area_size_to_index(n)
        free_lists = self.header.free_lists
        for index in range(wanted, len(free_lists)):
            address = free_lists[index]
            if address is None:
                continue
            free_lists[index] = None
            cached = self.storage.free_list_cache(address)
            if cached is not None:
                _log.debug("free_head@%s(cached): %s size:%s", address, cached, index)
                free_lists[index] = cached or None
            else:
                with self.storage.stream_from(address) as stream:
                    _, next_free = decode_free_area(stream)
                free_lists[index] = next_free
            _log.debug("Allocating from free list: addr: %s, size: %s", address, index)
            return address, index
        _log.debug(
            "No free blocks of sufficient size %s found", index_name(wanted)
        )
        return None

    def _allocate_from_end(self, n: int) -> Tuple[int, int]:
        index = area_size_to_index(n)
        addr = self.header.size
        self.header.size += AREA_SIZES[index]
        _log.debug("Allocating from end: addr: %s, size: %s", addr, index)
        return addr, index

    def allocate_node(self, node: Node) -> Tuple[int, int]:
        """Reserve an area for ``node`` and return its address and area-size index.

        Free lists are tried first; otherwise the area comes from the end of
        the store. Nothing is written to storage.
        """
        self._expect_kind(ImmutableProposal, "allocate_node")
        size = encoded_len(node)
        found = self._allocate_from_freed(size)
        if found is not None:
            return found
        return self._allocate_from_end(size)

    # ----- proposals and commits ----------------------------------------

    def commit_reparent(self, other: NodeStore) -> bool:
        """Make ``other`` a child of this proposal's committed form if it was ours."""
        kind = self._expect_kind(ImmutableProposal, "commit_reparent")
        other_kind = other._expect_kind(ImmutableProposal, "commit_reparent")
        parent = other_kind.parent
        if isinstance(parent, ProposedParent) and parent.proposal is kind:
            other_kind.parent = CommittedParent(kind.root_hash)
            return True
        return False

    def as_committed(self) -> NodeStore:
        """Return the committed revision this proposal becomes once written."""
        kind = self._expect_kind(ImmutableProposal, "as_committed")
        return NodeStore(
            header=copy.deepcopy(self.header),
            kind=Committed(deleted=tuple(kind.deleted), root_hash=kind.root_hash),
            storage=self.storage,
        )

    def free_node(self, addr: int) -> None:
        """Turn the area at ``addr`` into the head of its free list."""
        self._expect_kind(Committed, "free_node")
        storage = self._writable("free_node")
        index, _ = self.area_index_and_size(addr)
        _log.debug("Deleting node at %s of size %s", addr, index_name(index))
        next_free = self.header.free_lists[index]
        storage.write(addr, encode_free_area(index, next_free))
        storage.add_to_free_list_cache(addr, next_free)
        self.header.free_lists[index] = addr

    def reap_deleted(self, proposal: NodeStore) -> None:
        """Free, in ``proposal``, every node this expiring revision deleted."""
        kind = self._expect_kind(Committed, "reap_deleted")
        storage = self._writable("reap_deleted")
        deleted = list(kind.deleted)
        storage.invalidate_cached_nodes(deleted)
        _log.debug("There are %d nodes to reap", len(deleted))
        kind.deleted = ()
        for addr in deleted:
            proposal.free_node(addr)

    # ----- flushing -----------------------------------------------------

    def flush_header(self) -> None:
        """Write the header to the start of storage."""
        self._writable("flush_header").write(0, self.header.to_bytes())

    def flush_header_with_padding(self) -> None:
        """Write the header zero-padded to its full reserved size."""
        self._writable("flush_header_with_padding").write(
            0, self.header.to_padded_bytes()
        )

    def flush_freelist(self) -> None:
        """Write only the free-list heads of the header."""
        self._expect_kind(ImmutableProposal, "flush_freelist")
        self._writable("flush_freelist").write(
            FREE_LISTS_OFFSET, self.header.free_lists_bytes()
        )

    def flush_nodes(self) -> None:
        """Write every node created by this proposal and cache them."""
        kind = self._expect_kind(ImmutableProposal, "flush_nodes")
        storage = self._writable("flush_nodes")
        for addr, (index, node) in kind.new.items():
            storage.write(addr, encode_node(node, index))
        storage.write_cached_nodes(
            (addr, node) for addr, (_, node) in kind.new.items()
        )