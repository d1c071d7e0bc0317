import pytest

from triestore.hashednode import hash_node
from triestore.layout import (
    HEADER_SIZE,
    HEADER_STRUCT_SIZE,
    InvalidDataError,
    NodeStoreHeader,
    version_bytes,
)
from triestore.node import AddressWithHash, BranchNode, LeafNode
from triestore.nodestore import (
    Committed,
    CommittedParent,
    ImmutableProposal,
    MutableProposal,
    NodeStore,
    ProposedParent,
)
from triestore.path import Path
from triestore.storage import FileBacked, MemStore
from triestore.trie_hash import TrieHash


def _leaf(*value):
    return LeafNode(partial_path=Path([0, 1, 2]), value=bytes(value))


def _flush(mutable):
    frozen = mutable.freeze()
    frozen.flush_nodes()
    frozen.flush_freelist()
    frozen.flush_header()
    return frozen


def test_reparent():
    base = NodeStore.new_empty_committed(MemStore())

    r1 = NodeStore.new_proposal(base).freeze()
    assert r1.kind.parent == CommittedParent(None)

    r2 = NodeStore.new_proposal(r1).freeze()
    assert isinstance(r2.kind.parent, ProposedParent)
    assert r2.kind.parent.proposal is r1.kind

    assert r1.commit_reparent(r2) is True
    assert r2.kind.parent == CommittedParent(r1.root_hash())
    assert r2.kind.parent == CommittedParent(None)


def test_commit_reparent_other_parent_is_false():
    base = NodeStore.new_empty_committed(MemStore())
    r1 = NodeStore.new_proposal(base).freeze()
    r2 = NodeStore.new_proposal(base).freeze()
    assert r1.commit_reparent(r2) is False
    assert r2.kind.parent == CommittedParent(None)


def test_node_store_new():
    storage = MemStore()
    NodeStore.new_empty_proposal(storage)
    with storage.stream_from(0) as stream:
        header = NodeStoreHeader.from_bytes(stream.read())
    assert header.version == version_bytes()
    assert header.free_lists == [None] * len(header.free_lists)
    assert storage.size() == HEADER_STRUCT_SIZE


def test_giant_node():
    store = NodeStore.new_empty_proposal(MemStore())
    huge = LeafNode(partial_path=Path([0, 1, 2]), value=bytes(16777216))
    store.set_root(huge)
    with pytest.raises(InvalidDataError, match="Node size 16777225 is too large"):
        store.freeze()


def test_freeze_leaf_allocates_from_end():
    store = NodeStore.new_empty_proposal(MemStore())
    leaf = _leaf(3, 4, 5)
    store.set_root(leaf)
    frozen = store.freeze()
    assert isinstance(frozen.kind, ImmutableProposal)
    assert frozen.header.root_address == 2048
    assert frozen.header.size == 2064
    assert frozen.kind.root_hash == hash_node(leaf, Path())
    assert frozen.kind.new[2048] == (0, leaf)


def test_freeze_empty_proposal_has_no_root():
    frozen = NodeStore.new_empty_proposal(MemStore()).freeze()
    assert frozen.header.root_address is None
    assert frozen.kind.root_hash is None
    assert frozen.root_node() is None


def test_open_rejects_wrong_version():
    header = NodeStoreHeader(version=b"other".ljust(16, b"\x00"))
    with pytest.raises(InvalidDataError, match="Incompatible"):
        NodeStore.open(MemStore(header.to_bytes()))


def test_open_rejects_wrong_endianness():
    header = NodeStoreHeader(endian_test=2)
    with pytest.raises(InvalidDataError, match="endianness"):
        NodeStore.open(MemStore(header.to_bytes()))


def test_open_empty_header_has_no_root():
    storage = MemStore()
    NodeStore.new_empty_committed(storage).flush_header_with_padding()
    assert storage.size() == HEADER_SIZE
    opened = NodeStore.open(storage)
    assert opened.kind.root_hash is None
    assert opened.root_address_and_hash() is None


def _reuse_freed_area(storage):
    p1 = NodeStore.new_empty_proposal(storage)
    p1.set_root(_leaf(3, 4, 5))
    f1 = _flush(p1)
    assert f1.header.root_address == 2048

    c1 = f1.as_committed()
    p2 = NodeStore.new_proposal(c1)
    assert p2.kind.deleted == [2048]
    p2.set_root(_leaf(6, 7, 8))
    f2 = _flush(p2)
    assert f2.header.root_address == 2064

    expiring = f2.as_committed()
    latest = f2.as_committed()
    assert expiring.kind.deleted == (2048,)
    expiring.reap_deleted(latest)
    assert expiring.kind.deleted == ()
    assert latest.header.free_lists[0] == 2048
    assert latest.area_index_and_size(2048) == (0, 16)

    p3 = NodeStore.new_proposal(latest)
    assert p3.root_node() == _leaf(6, 7, 8)
    p3.set_root(_leaf(9))
    f3 = p3.freeze()
    assert f3.header.root_address == 2048
    assert f3.header.free_lists[0] is None
    assert f3.header.size == 2080


def test_freed_area_is_reused_memstore():
    storage = MemStore()
    _reuse_freed_area(storage)
    with storage.stream_from(2048) as stream:
        assert stream.read(3) == b"\x00\xff\x00"


def test_freed_area_is_reused_filebacked(tmp_path):
    with FileBacked(tmp_path / "db", 10, 10, True) as storage:
        _reuse_freed_area(storage)


def test_read_for_update_marks_deleted_and_copies():
    base = NodeStore.new_empty_proposal(MemStore())
    base.set_root(_leaf(1, 2))
    frozen = base.freeze()
    proposal = NodeStore.new_proposal(frozen)
    node = proposal.read_for_update(2048)
    assert proposal.kind.deleted == [2048, 2048]
    node.update_value(b"\x07")
    assert frozen.read_node(2048) == _leaf(1, 2)


def test_in_memory_nodes_found_through_parents():
    base = NodeStore.new_empty_proposal(MemStore())
    base.set_root(_leaf(5))
    frozen = base.freeze()
    child = NodeStore.new_proposal(frozen)
    assert isinstance(child.kind, MutableProposal)
    assert child.kind.read_in_memory_node(2048) == _leaf(5)
    assert child.kind.read_in_memory_node(4096) is None
    grandchild = NodeStore.new_proposal(child.freeze())
    assert grandchild.kind.read_in_memory_node(2048) == _leaf(5)


def test_committed_kind():
    digest = TrieHash(bytes(range(32)))
    committed = Committed(deleted=(), root_hash=digest)
    assert committed.read_in_memory_node(2048) is None
    assert committed.as_parent() == CommittedParent(digest)


def test_parent_hash_is():
    frozen = NodeStore.new_empty_proposal(MemStore()).freeze()
    assert frozen.kind.parent_hash_is(None) is True
    assert frozen.kind.parent_hash_is(TrieHash.zero()) is False
    child = NodeStore.new_proposal(frozen).freeze()
    assert child.kind.parent_hash_is(None) is False


def test_operations_check_revision_kind():
    storage = MemStore()
    committed = NodeStore.new_empty_committed(storage)
    with pytest.raises(TypeError):
        committed.mark_deleted(2048)
    mutable = NodeStore.new_empty_proposal(storage)
    with pytest.raises(TypeError):
        mutable.flush_nodes()
    with pytest.raises(TypeError):
        NodeStore.new_proposal(mutable)
    with pytest.raises(TypeError):
        mutable.allocate_node(_leaf(1))


def test_flush_freelist_writes_heads():
    storage = MemStore()
    store = NodeStore.new_empty_proposal(storage)
    frozen = store.freeze()
    frozen.header.free_lists[2] = 4096
    frozen.flush_freelist()
    with storage.stream_from(0) as stream:
        header = NodeStoreHeader.from_bytes(stream.read())
    assert header.free_lists[2] == 4096
    assert header.free_lists[0] is None