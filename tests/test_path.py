import pytest

from triestore.path import NibblesIterator, Path

TEST_BYTES = bytes([0xDE, 0xAD, 0xBE, 0xEF])


def test_happy_regular_nibbles():
    assert list(NibblesIterator(TEST_BYTES)) == [0xD, 0xE, 0xA, 0xD, 0xB, 0xE, 0xE, 0xF]


def test_size_hint():
    it = NibblesIterator(TEST_BYTES)
    assert len(it) == 8
    next(it)
    assert len(it) == 7


def test_backwards():
    assert list(reversed(NibblesIterator(TEST_BYTES))) == [
        0xF, 0xE, 0xE, 0xB, 0xD, 0xA, 0xE, 0xD,
    ]


def test_nth_back():
    it = NibblesIterator(TEST_BYTES)
    assert it.nth_back(0) == 0xF
    assert it.nth_back(0) == 0xE
    assert it.nth_back(1) == 0xB
    assert it.nth_back(2) == 0xE
    assert it.nth_back(0) == 0xD
    assert it.nth_back(0) is None


def test_nth_front():
    it = NibblesIterator(TEST_BYTES)
    assert it.nth(2) == 0xA
    assert it.nth(0) == 0xD
    assert it.nth(100) is None
    assert it.is_empty()


def test_empty():
    it = NibblesIterator(b"")
    assert it.is_empty()
    assert len(it) == 0
    assert list(it) == []


def test_not_empty_because_of_data():
    it = NibblesIterator(bytes([1]))
    assert not it.is_empty()
    assert not it.is_empty()
    assert len(it) == 2
    assert next(it) == 0
    assert not it.is_empty()
    assert len(it) == 1
    assert next(it) == 1
    assert it.is_empty()
    assert len(it) == 0


def test_mixed_front_and_back():
    it = NibblesIterator(TEST_BYTES)
    assert next(it) == 0xD
    assert it.next_back() == 0xF
    assert len(it) == 6


@pytest.mark.parametrize(
    "encoded, expected",
    [([0, 0, 2, 3], [2, 3]), ([1, 2, 3, 4], [2, 3, 4])],
)
def test_encode_decode(encoded, expected):
    path = Path.from_encoded(encoded)
    assert list(path) == expected
    assert list(path.iter_encoded()) == encoded


def test_from_encoded_empty_input():
    assert len(Path.from_encoded([])) == 0


def test_bytes_iter_drops_odd_nibble():
    path = Path([0xD, 0xE, 0xA, 0xD, 0x1])
    assert path.to_bytes() == bytes([0xDE, 0xAD])
    assert list(path.bytes_iter()) == [0xDE, 0xAD]


def test_nibbles_round_trip_through_bytes():
    path = Path.from_nibbles(NibblesIterator(TEST_BYTES))
    assert path.to_bytes() == TEST_BYTES


def test_extend_and_add():
    path = Path([1, 2])
    combined = path + [3]
    path.extend([4, 5])
    assert list(path) == [1, 2, 4, 5]
    assert list(combined) == [1, 2, 3]


def test_indexing_and_slicing():
    path = Path([6, 7, 8])
    assert path[1] == 7
    assert path[1:] == Path([7, 8])


def test_repr_marks_invalid_nibbles():
    assert repr(Path([0xD, 0x10, 0x3])) == "d [invalid 10] 3 "


def test_equality():
    assert Path([1, 2]) == Path.from_nibbles(iter([1, 2]))
    assert not (Path([1, 2]) == Path([2, 1]))


def test_rejects_values_out_of_byte_range():
    with pytest.raises(ValueError):
        Path([256])