"""Linear byte storage that nodes are read from and written to.

Two backends are provided: :class:`MemStore`, which keeps everything in
memory, and :class:`FileBacked`, which keeps the bytes in a file and caches
recently used nodes and free-list entries.

Free-list cache entries use ``0`` to mean "end of list". This works because a
node address is never zero.
"""

from __future__ import annotations

import io
import os
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import BinaryIO, Generic, Hashable, Iterable, Optional, Tuple, TypeVar, Union

from triestore.node import Node

_K = TypeVar("_K", bound=Hashable)
_V = TypeVar("_V")


def _check_offset(offset: int) -> None:
    if offset < 0:
        raise ValueError(f"negative offset {offset}")


def _check_address(addr: int) -> None:
    if addr <= 0:
        raise ValueError(f"invalid node address {addr}")


class ReadableStorage(ABC):
    """Storage that can be read as a stream of bytes from any offset."""

    @abstractmethod
    def stream_from(self, addr: int) -> BinaryIO:
        """Return a readable stream positioned at ``addr``."""

    @abstractmethod
    def size(self) -> int:
        """Return the size of the underlying storage in bytes."""

    def read_cached_node(self, addr: int) -> Optional[Node]:
        """Return the cached node at ``addr``; storage without a cache has none."""
        _check_address(addr)
        return None

    def free_list_cache(self, addr: int) -> Optional[int]:
        """Remove and return the cached next pointer of the free area at ``addr``.

        Returns None when nothing is cached, and 0 when the cached entry says
        the area is the last one in its free list. Storage without a cache
        always returns None.
        """
        _check_address(addr)
        return None


class WritableStorage(ReadableStorage):
    """Storage that can also be written at any offset."""

    @abstractmethod
    def write(self, offset: int, data: bytes) -> int:
        """Write ``data`` at ``offset`` and return the number of bytes written."""

    def write_cached_nodes(self, nodes: Iterable[Tuple[int, Node]]) -> None:
        """Put ``(address, node)`` pairs into the node cache, if there is one."""

    def invalidate_cached_nodes(self, addresses: Iterable[int]) -> None:
        """Drop the given addresses from the node cache, if there is one."""

    def add_to_free_list_cache(self, addr: int, next_addr: Optional[int]) -> None:
        """Remember that the free area at ``addr`` points to ``next_addr``."""


class MemStore(WritableStorage):
    """An in-memory storage backend."""

    def __init__(self, data: Union[bytes, bytearray] = b"") -> None:
        self._data = bytearray(data)
        self._lock = threading.Lock()

    def write(self, offset: int, data: bytes) -> int:
        _check_offset(offset)
        data = bytes(data)
        end = offset + len(data)
        with self._lock:
            if end > len(self._data):
                self._data.extend(bytes(end - len(self._data)))
            self._data[offset:end] = data
        return len(data)

    def stream_from(self, addr: int) -> BinaryIO:
        _check_offset(addr)
        with self._lock:
            snapshot = bytes(self._data[addr:])
        return io.BytesIO(snapshot)

    def size(self) -> int:
        with self._lock:
            return len(self._data)


class PredictiveReader(io.RawIOBase):
    """Reads a file from ``start`` in chunks that never cross a 1 KiB boundary."""

    BUFFER_SIZE = 1024

    def __init__(self, file: Union[int, BinaryIO], start: int) -> None:
        super().__init__()
        _check_offset(start)
        fd = file if isinstance(file, int) else file.fileno()
        self._fd = os.dup(fd)
        self._offset = start
        self._buffer = b""
        self._pos = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed reader")
        if self._pos == len(self._buffer):
            left_in_page = self.BUFFER_SIZE - self._offset % self.BUFFER_SIZE
            self._buffer = os.pread(self._fd, left_in_page, self._offset)
            self._offset += len(self._buffer)
            self._pos = 0
        view = memoryview(buffer).cast("B")
        count = min(len(view), len(self._buffer) - self._pos)
        view[:count] = self._buffer[self._pos : self._pos + count]
        self._pos += count
        return count

    def close(self) -> None:
        if not self.closed:
            os.close(self._fd)
        super().close()


class _LruCache(Generic[_K, _V]):
    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: "OrderedDict[_K, _V]" = OrderedDict()

    def get(self, key: _K) -> Optional[_V]:
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def put(self, key: _K, value: _V) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self._capacity:
            self._items.popitem(last=False)

    def pop(self, key: _K) -> Optional[_V]:
        return self._items.pop(key, None)


def _check_cache_size(name: str, value: int) -> int:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


class FileBacked(WritableStorage):
    """A storage backend kept in a file, with LRU caches for nodes and free lists."""

    def __init__(
        self,
        path: Union[str, os.PathLike],
        node_cache_size: int,
        free_list_cache_size: int,
        truncate: bool,
    ) -> None:
        node_cache_size = _check_cache_size("node_cache_size", node_cache_size)
        free_list_cache_size = _check_cache_size(
            "free_list_cache_size", free_list_cache_size
        )
        flags = os.O_RDWR | os.O_CREAT | getattr(os, "O_BINARY", 0)
        if truncate:
            flags |= os.O_TRUNC
        self._fd = os.open(os.fspath(path), flags, 0o666)
        self._fd_lock = threading.Lock()
        self._cache: _LruCache[int, Node] = _LruCache(node_cache_size)
        self._cache_lock = threading.Lock()
        self._free_list: _LruCache[int, int] = _LruCache(free_list_cache_size)
        self._free_list_lock = threading.Lock()
        self._closed = False

    def _require_open(self) -> int:
        if self._closed:
            raise ValueError("storage is closed")
        return self._fd

    def stream_from(self, addr: int) -> BinaryIO:
        with self._fd_lock:
            return PredictiveReader(self._require_open(), addr)

    def size(self) -> int:
        with self._fd_lock:
            return os.fstat(self._require_open()).st_size

    def read_cached_node(self, addr: int) -> Optional[Node]:
        with self._cache_lock:
            return self._cache.get(addr)

    def free_list_cache(self, addr: int) -> Optional[int]:
        with self._free_list_lock:
            return self._free_list.pop(addr)

    def write(self, offset: int, data: bytes) -> int:
        _check_offset(offset)
        with self._fd_lock:
            return os.pwrite(self._require_open(), bytes(data), offset)

    def write_cached_nodes(self, nodes: Iterable[Tuple[int, Node]]) -> None:
        with self._cache_lock:
            for addr, node in nodes:
                self._cache.put(addr, node)

    def invalidate_cached_nodes(self, addresses: Iterable[int]) -> None:
        with self._cache_lock:
            for addr in addresses:
                self._cache.pop(addr)

    def add_to_free_list_cache(self, addr: int, next_addr: Optional[int]) -> None:
        with self._free_list_lock:
            self._free_list.put(addr, next_addr or 0)

    def close(self) -> None:
        """Close the underlying file."""
        with self._fd_lock:
            if not self._closed:
                os.close(self._fd)
                self._closed = True

    def __enter__(self) -> FileBacked:
        return self

    def __exit__(self, *args) -> None:
        self.close()