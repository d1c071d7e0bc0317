"""Nibble paths and iteration over the nibbles of byte strings."""

from __future__ import annotations

from typing import Iterable, Iterator, Optional, Union

_ODD_LEN = 0b0001


class Path:
    """Part or all of a node's path in the trie; each element is a nibble."""

    __slots__ = ("_nibbles",)

    def __init__(self, nibbles: Iterable[int] = ()) -> None:
        self._nibbles = bytearray(nibbles)

    @classmethod
    def from_nibbles(cls, nibbles: Iterable[int]) -> Path:
        """Build a path from an iterable of nibbles."""
        return cls(nibbles)

    @classmethod
    def from_encoded(cls, encoded: Iterable[int]) -> Path:
        """Decode a path written by :meth:`iter_encoded`.

        The first byte holds flags (an empty input gives an empty path); when
        the odd-length flag is clear one padding byte follows and is dropped.
        """
        it = iter(encoded)
        flags = next(it, 0)
        if not flags & _ODD_LEN:
            next(it, None)
        return cls(it)

    def iter_encoded(self) -> Iterator[int]:
        """Yield the flag byte, a padding byte for even lengths, then the nibbles."""
        if len(self._nibbles) & 1:
            yield _ODD_LEN
        else:
            yield 0
            yield 0
        yield from self._nibbles

    def extend(self, nibbles: Iterable[int]) -> None:
        """Append nibbles to the end of the path."""
        self._nibbles.extend(nibbles)

    def bytes_iter(self) -> Iterator[int]:
        """Yield bytes made from pairs of nibbles; a trailing odd nibble is dropped."""
        it = iter(self._nibbles)
        for hi in it:
            lo = next(it, None)
            if lo is None:
                return
            yield hi * 16 + lo

    def to_bytes(self) -> bytes:
        """Return the packed bytes of the path."""
        return bytes(self.bytes_iter())

    def __iter__(self) -> Iterator[int]:
        return iter(self._nibbles)

    def __len__(self) -> int:
        return len(self._nibbles)

    def __getitem__(self, index: Union[int, slice]) -> Union[int, Path]:
        if isinstance(index, slice):
            return Path(self._nibbles[index])
        return self._nibbles[index]

    def __add__(self, other: Iterable[int]) -> Path:
        result = Path(self._nibbles)
        result.extend(other)
        return result

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Path):
            return self._nibbles == other._nibbles
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "".join(
            f"[invalid {nib:02x}] " if nib > 0xF else f"{nib:x} "
            for nib in self._nibbles
        )


class NibblesIterator:
    """Iterates over the nibbles of ``data``, high nibble first, from either end."""

    __slots__ = ("_data", "_head", "_tail")

    def __init__(self, data: Union[bytes, bytearray, memoryview]) -> None:
        self._data = bytes(data)
        self._head = 0
        self._tail = 2 * len(self._data)

    def __iter__(self) -> NibblesIterator:
        return self

    def __next__(self) -> int:
        if self.is_empty():
            raise StopIteration
        byte = self._data[self._head // 2]
        result = byte >> 4 if self._head % 2 == 0 else byte & 0xF
        self._head += 1
        return result

    def __reversed__(self) -> Iterator[int]:
        while (value := self.next_back()) is not None:
            yield value

    def __len__(self) -> int:
        return self._tail - self._head

    def is_empty(self) -> bool:
        """Return True when no nibbles remain."""
        return self._head == self._tail

    def next_back(self) -> Optional[int]:
        """Return the last remaining nibble, or None when exhausted."""
        if self.is_empty():
            return None
        if self._tail % 2 == 0:
            result = self._data[self._tail // 2 - 1] & 0xF
        else:
            result = self._data[self._tail // 2] >> 4
        self._tail -= 1
        return result

    def nth(self, n: int) -> Optional[int]:
        """Skip ``n`` nibbles from the front and return the next, or None."""
        self._head += min(n, self._tail - self._head)
        return next(self, None)

    def nth_back(self, n: int) -> Optional[int]:
        """Skip ``n`` nibbles from the back and return the next, or None."""
        self._tail -= min(n, self._tail - self._head)
        return self.next_back()