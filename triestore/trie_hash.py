"""The 32-byte hash value used throughout the merkle trie."""

from __future__ import annotations

from typing import Iterable, Union

HASH_LENGTH = 32

_Digest = Union[bytes, bytearray, memoryview, Iterable[int]]


class TrieHash:
    """An immutable 32-byte hash of a trie node."""

    __slots__ = ("_digest",)

    def __init__(self, digest: _Digest) -> None:
        raw = bytes(digest)
        if len(raw) != HASH_LENGTH:
            raise ValueError(
                f"invalid length {len(raw)}, expected an array of u8 hash bytes "
                f"of length {HASH_LENGTH}"
            )
        self._digest = raw

    @classmethod
    def zero(cls) -> TrieHash:
        """Return the all-zero hash."""
        return cls(bytes(HASH_LENGTH))

    def hex(self) -> str:
        """Return the hash as lower-case hexadecimal."""
        return self._digest.hex()

    def __bytes__(self) -> bytes:
        return self._digest

    def __len__(self) -> int:
        return HASH_LENGTH

    def __iter__(self):
        return iter(self._digest)

    def __format__(self, spec: str) -> str:
        # A precision such as ".8" truncates the hexadecimal form.
        return format(self.hex(), spec)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TrieHash):
            return self._digest == other._digest
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._digest)

    def __repr__(self) -> str:
        return f"TrieHash({self.hex()})"

    def __str__(self) -> str:
        return self.hex()