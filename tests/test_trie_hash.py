import pytest

from triestore.trie_hash import TrieHash


def test_zero_hash_is_all_zero_bytes():
    assert bytes(TrieHash.zero()) == bytes(32)
    assert TrieHash.zero().hex() == "00" * 32


def test_bytes_round_trip():
    raw = bytes(range(32))
    assert bytes(TrieHash(raw)) == raw


def test_accepts_list_of_ints():
    values = list(range(32))
    assert bytes(TrieHash(values)) == bytes(values)


def test_length_is_32():
    assert len(TrieHash.zero()) == 32


def test_hex_matches_digest():
    raw = bytes(range(100, 132))
    assert TrieHash(raw).hex() == raw.hex()


@pytest.mark.parametrize("size", [0, 1, 31, 33, 64])
def test_wrong_length_rejected(size):
    with pytest.raises(ValueError):
        TrieHash(bytes(size))


def test_format_precision_truncates_hex():
    h = TrieHash(bytes(range(32)))
    assert format(h, ".6") == h.hex()[:6]
    assert f"{h:.10}" == h.hex()[:10]


def test_format_without_spec_gives_full_hex():
    h = TrieHash(bytes(range(32)))
    assert format(h, "") == h.hex()


def test_equality_and_hashing():
    a = TrieHash(bytes(range(32)))
    b = TrieHash(bytearray(range(32)))
    c = TrieHash.zero()
    assert a == b
    assert not (a == c)
    assert len({a, b, c}) == 2


def test_iteration_yields_bytes():
    raw = bytes(range(32))
    assert list(TrieHash(raw)) == list(raw)