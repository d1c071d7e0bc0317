# triestore

`triestore` is the storage layer of a merkle trie. It keeps trie nodes in a
linear byte store, in memory or in a file, reuses freed areas through per-size
free lists, and tracks revisions of the trie as proposals and commits. It has
no third-party dependencies.

## Modules

- `triestore.trie_hash`: `TrieHash`, an immutable 32-byte hash. `TrieHash.zero()`
  gives the all-zero hash, `hex()` the hexadecimal form, and a format precision
  such as `f"{h:.8}"` truncates it.
- `triestore.path`: `Path`, a sequence of nibbles with `extend`, `+`, slicing,
  `to_bytes()` / `bytes_iter()` (pairs of nibbles packed into bytes, a trailing
  odd nibble dropped), and `iter_encoded()` / `Path.from_encoded()` for the
  flag-prefixed form. `NibblesIterator` walks the nibbles of a byte string from
  either end (`next`, `next_back`, `nth`, `nth_back`, `reversed`, `len`).
- `triestore.node`: `LeafNode`, `BranchNode` (sixteen child slots, see
  `MAX_CHILDREN`), `AddressWithHash` (a child with known address and hash),
  `PathIterItem` and `default_node()`.
- `triestore.serialize`: the compact storage format of nodes. `encode_node(node,
  prefix)`, `decode_node(stream)` (the stream positioned after the prefix byte),
  `encoded_len(node)`, and the varint helpers `encode_varint` / `read_varint`.
  Decoding errors raise `NodeDecodeError`; encoding a branch whose children are
  not all `AddressWithHash` raises `ValueError`.
- `triestore.hashednode`: `hash_node(node, path_prefix)` returns the SHA-256
  `TrieHash` of a node; `hash_preimage(node, path_prefix)` returns the bytes
  that are hashed. The pre-image holds the children's indexes and hashes, the
  value (values of 32 bytes or more are replaced by their SHA-256), and the
  full key as packed nibbles. `NodeAndPrefix` and the abstract `Hashable` are
  the building blocks.
- `triestore.storage`: `ReadableStorage` and `WritableStorage` interfaces,
  `MemStore` (a byte array guarded by a lock), and `FileBacked`, a file with LRU
  caches for nodes and free-list entries. `FileBacked` is a context manager and
  reads through `PredictiveReader`, which never reads across a 1 KiB boundary.
- `triestore.layout`: the 23 area sizes (`AREA_SIZES`, 16 bytes up to 16 MiB),
  `area_size_to_index`, `index_name`, the 2048-byte `NodeStoreHeader`, and the
  freed-area records (`encode_free_area`, `decode_free_area`). Invalid sizes and
  data raise `InvalidDataError`.
- `triestore.nodestore`: `NodeStore`, one revision of the trie, whose `kind` is
  `Committed`, `MutableProposal` or `ImmutableProposal`.

## Example

```python
from triestore.node import LeafNode
from triestore.nodestore import NodeStore
from triestore.path import Path
from triestore.storage import MemStore

store = MemStore(b"")
proposal = NodeStore.new_empty_proposal(store)   # writes an empty header
proposal.set_root(LeafNode(Path([0, 1, 2]), b"value"))

frozen = proposal.freeze()      # hashes nodes and assigns addresses
frozen.flush_nodes()
frozen.flush_header()

print(frozen.root_hash())

reopened = NodeStore.open(store)
print(reopened.root_hash() == frozen.root_hash())   # True
```

## Revisions

1. Start a `MutableProposal` with `NodeStore.new_proposal(parent)`, where the
   parent is a committed revision or an immutable proposal, or with
   `NodeStore.new_empty_proposal(storage)` on a new store. The parent's root is
   copied in and its address recorded as deleted. Change the trie with
   `set_root`, `read_for_update` and `mark_deleted`.
2. Call `freeze()` to get an `ImmutableProposal`. Every in-memory node is
   hashed and given an area, taken from the smallest free list that fits and
   otherwise from the end of the store. A node too large for the biggest area
   raises `InvalidDataError`.
3. Write it out with `flush_nodes()`, `flush_header()` (or
   `flush_header_with_padding()`) and `flush_freelist()`, then take
   `as_committed()`.

When a proposal is committed, `commit_reparent(other)` makes proposals built on
it point at its committed root hash instead. When an old committed revision
expires, `reap_deleted(proposal)` frees the areas it deleted into the free
lists of `proposal` (through `free_node`). `root_node()`,
`root_address_and_hash()` and `root_hash()` read the root of any revision.

Trace messages go to the standard `logging` logger `triestore.nodestore` at
debug level.

## What it does not do

This package stores, hashes and allocates nodes; it does not implement the
trie itself. There is no insert, lookup, delete or iteration over keys, no
proofs, no database object or batch API, and no command-line tool. Callers
build and modify the node tree and hand its root to a proposal.

`FileBacked` uses `os.pread` and `os.pwrite`, so it needs a POSIX system.

## Installation and tests

```
pip install .
pip install ".[test]"
pytest
```