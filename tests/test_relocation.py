import pytest

from thl_tools.relocation import RelocationMap


@pytest.fixture
def relocation():
    relocation = RelocationMap()
    relocation.add(0, 16, 0, 16)      # unchanged header
    relocation.add(16, 8, 16, 12)     # grown by 4
    relocation.add(24, 8, 28, 8)      # shifted
    relocation.add(32, 10, 36, 6)     # shrunk by 4
    relocation.add(42, 6, 42, 6)
    return relocation


def test_offsets_before_the_change_do_not_move(relocation):
    assert relocation.map(0) == 0
    assert relocation.map(15) == 15
    assert relocation.map(16) == 16


def test_offsets_after_the_change_shift(relocation):
    assert relocation.map(24) == 28
    assert relocation.map(31) == 35
    assert relocation.map(32) == 36
    assert relocation.map(42) == 42
    assert relocation.map(48) == 48


def test_inside_a_resized_span_is_not_mapped(relocation):
    with pytest.raises(KeyError):
        relocation.map(20)
    with pytest.raises(KeyError):
        relocation.map(100)


def test_delta_and_monotonic_registration(relocation):
    assert relocation.delta == 0
    assert len(relocation) == 5
    with pytest.raises(ValueError):
        relocation.add(40, 4, 60, 4)


def test_empty_map_has_no_delta():
    assert RelocationMap().delta == 0
