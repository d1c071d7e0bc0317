"""On-disk layout of a node store: area sizes, the header and freed areas.

The store starts with a fixed-size header. Every area after it begins with
one byte holding the index of its size in :data:`AREA_SIZES`. A freed area
then carries the marker byte 255 and an optional pointer to the next free
area of the same size. No stored node starts with 255.
"""

from __future__ import annotations

import struct
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Tuple

AREA_SIZES: Tuple[int, ...] = (
    16,
    32,
    64,
    96,
    128,
    256,
    512,
    768,
    1024,
    *(1024 << shift for shift in range(1, 15)),
)
"""Every valid area size, smallest first."""

NUM_AREA_SIZES = len(AREA_SIZES)
MIN_AREA_SIZE = AREA_SIZES[0]
MAX_AREA_SIZE = AREA_SIZES[-1]

VERSION_SIZE = 16
_VERSION_TEXT = b"triestore 0.1.0"

HEADER_SIZE = 2048
"""Bytes reserved at the start of the storage for the header."""

_MAX_U64 = (1 << 64) - 1
_HEADER = struct.Struct(f"={VERSION_SIZE}sQQ{NUM_AREA_SIZES}QQ")
_FREE_LISTS = struct.Struct(f"={NUM_AREA_SIZES}Q")

HEADER_STRUCT_SIZE = _HEADER.size
"""Bytes taken by the header fields, before padding."""

FREE_LISTS_OFFSET = VERSION_SIZE + 8 + 8
"""Offset of the free-list heads inside the header."""

FREE_AREA_MARKER = 255
"""The byte after the area-size index that marks an area as free."""


class InvalidDataError(ValueError):
    """Raised when stored bytes or sizes are not valid for the store."""


def index_name(index: int) -> str:
    """Return the area size at ``index`` as text, or "unknown"."""
    if 0 <= index < NUM_AREA_SIZES:
        return str(AREA_SIZES[index])
    return "unknown"


def area_size_to_index(n: int) -> int:
    """Return the index of the smallest area size that holds ``n`` bytes."""
    if n > MAX_AREA_SIZE:
        raise InvalidDataError(f"Node size {n} is too large")
    if n <= MIN_AREA_SIZE:
        return 0
    return bisect_left(AREA_SIZES, n)


def version_bytes() -> bytes:
    """Return the version identifier written at the start of every store."""
    return _VERSION_TEXT.ljust(VERSION_SIZE, b"\x00")[:VERSION_SIZE]


def _empty_free_lists() -> List[Optional[int]]:
    return [None] * NUM_AREA_SIZES


def _check_address(addr: Optional[int]) -> None:
    if addr is not None and not 0 < addr <= _MAX_U64:
        raise ValueError(f"invalid address {addr}")


@dataclass
class NodeStoreHeader:
    """Persisted metadata at the start of the storage.

    ``free_lists[i]`` is the address of the first free area of size
    ``AREA_SIZES[i]``, or None when that list is empty.
    """

    version: bytes = field(default_factory=version_bytes)
    endian_test: int = 1
    size: int = HEADER_SIZE
    free_lists: List[Optional[int]] = field(default_factory=_empty_free_lists)
    root_address: Optional[int] = None

    def __post_init__(self) -> None:
        self.version = bytes(self.version)
        if len(self.version) != VERSION_SIZE:
            raise ValueError(f"version must be {VERSION_SIZE} bytes")
        self.free_lists = list(self.free_lists)
        if len(self.free_lists) != NUM_AREA_SIZES:
            raise ValueError(
                f"expected {NUM_AREA_SIZES} free lists, got {len(self.free_lists)}"
            )
        for addr in self.free_lists:
            _check_address(addr)
        _check_address(self.root_address)

    def to_bytes(self) -> bytes:
        """Return the header fields as stored, without padding."""
        return _HEADER.pack(
            self.version,
            self.endian_test,
            self.size,
            *(addr or 0 for addr in self.free_lists),
            self.root_address or 0,
        )

    def to_padded_bytes(self) -> bytes:
        """Return the header zero-padded to :data:`HEADER_SIZE` bytes."""
        return self.to_bytes().ljust(HEADER_SIZE, b"\x00")

    @classmethod
    def from_bytes(cls, data: bytes) -> NodeStoreHeader:
        """Parse a header from the start of ``data``."""
        if len(data) < HEADER_STRUCT_SIZE:
            raise InvalidDataError(
                f"header needs {HEADER_STRUCT_SIZE} bytes, got {len(data)}"
            )
        version, endian_test, size, *rest = _HEADER.unpack_from(data)
        *free_lists, root = rest
        return cls(
            version=version,
            endian_test=endian_test,
            size=size,
            free_lists=[addr or None for addr in free_lists],
            root_address=root or None,
        )

    def free_lists_bytes(self) -> bytes:
        """Return the free-list heads as stored at :data:`FREE_LISTS_OFFSET`."""
        return _FREE_LISTS.pack(*(addr or 0 for addr in self.free_lists))


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            raise InvalidDataError("unexpected end of data")
        data += chunk
    return bytes(data)


def _encode_u64(value: int) -> bytes:
    if value < 251:
        return bytes([value])
    if value < 1 << 16:
        return b"\xfb" + struct.pack("<H", value)
    if value < 1 << 32:
        return b"\xfc" + struct.pack("<I", value)
    return b"\xfd" + struct.pack("<Q", value)


def _decode_u64(stream: BinaryIO) -> int:
    tag = _read_exact(stream, 1)[0]
    if tag < 251:
        return tag
    if tag == 251:
        return struct.unpack("<H", _read_exact(stream, 2))[0]
    if tag == 252:
        return struct.unpack("<I", _read_exact(stream, 4))[0]
    if tag == 253:
        return struct.unpack("<Q", _read_exact(stream, 8))[0]
    raise InvalidDataError(f"invalid integer tag {tag}")


def _check_index(index: int) -> None:
    if not 0 <= index < NUM_AREA_SIZES:
        raise InvalidDataError(f"Invalid area size index {index}")


def encode_free_area(area_size_index: int, next_free_block: Optional[int]) -> bytes:
    """Return the bytes written over an area when it is freed."""
    _check_index(area_size_index)
    _check_address(next_free_block)
    out = bytearray([area_size_index, FREE_AREA_MARKER])
    if next_free_block is None:
        out.append(0)
    else:
        out.append(1)
        out += _encode_u64(next_free_block)
    return bytes(out)


def decode_free_area(stream: BinaryIO) -> Tuple[int, Optional[int]]:
    """Read a freed area; return its size index and the next free address."""
    index = read_area_index(stream)
    if _read_exact(stream, 1)[0] != FREE_AREA_MARKER:
        raise InvalidDataError("Attempted to read a non-free area")
    flag = _read_exact(stream, 1)[0]
    if flag == 0:
        return index, None
    if flag != 1:
        raise InvalidDataError(f"invalid option tag {flag}")
    next_free = _decode_u64(stream)
    if next_free == 0:
        raise InvalidDataError("zero address in free list")
    return index, next_free


def read_area_index(stream: BinaryIO) -> int:
    """Read the area-size index that starts every stored area."""
    index = _read_exact(stream, 1)[0]
    _check_index(index)
    return index