import struct

import pytest

from thl_tools.check_mbes import check_mbe, check_mbes
from thl_tools.errors import InvalidInput, MalformedHeader, TruncatedFile
from thl_tools.mbe import COL_TYPE_INT, COL_TYPE_INTID, COL_TYPE_STRING, SheetSpec, build_mbe


def good_mbe(text):
    return build_mbe([SheetSpec("dialogue", [COL_TYPE_INTID, COL_TYPE_STRING], [[1, text]])])


@pytest.fixture
def mbe_folder(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "a.mbe").write_bytes(good_mbe("first"))
    (tmp_path / "sub" / "b.mbe").write_bytes(good_mbe("second")[:30])
    (tmp_path / "sub" / "c.mbe").write_bytes(good_mbe("third"))
    (tmp_path / "notes.txt").write_bytes(b"not an mbe")
    return tmp_path


def test_check_good_file(mbe_folder):
    assert check_mbe(mbe_folder / "a.mbe") is None


def test_one_broken_file_does_not_stop_the_batch(mbe_folder):
    failures = check_mbes(mbe_folder)

    assert len(failures) == 1
    failure = failures[0]
    assert failure.path == mbe_folder / "sub" / "b.mbe"
    assert isinstance(failure.error, TruncatedFile)
    assert failure.consumed == 30
    assert failure.offset <= 30
    assert "0x1e bytes" in str(failure)


def test_bad_magic_reports_offset_zero(tmp_path):
    (tmp_path / "x.mbe").write_bytes(b"ABCD" + good_mbe("x")[4:])
    failures = check_mbes(tmp_path)
    assert isinstance(failures[0].error, MalformedHeader)
    assert failures[0].offset == 0


def test_every_file_ok(tmp_path):
    (tmp_path / "a.mbe").write_bytes(good_mbe("fine"))
    assert check_mbes(tmp_path) == []


def test_check_requires_a_directory(tmp_path):
    path = tmp_path / "a.mbe"
    path.write_bytes(good_mbe("x"))
    with pytest.raises(InvalidInput):
        check_mbes(path)


def test_huge_declared_sizes_are_reported_per_file(tmp_path):
    header = b"EXPA" + struct.pack("<II", 1, 4) + b"s\x00\x00\x00" + struct.pack("<II", 1, COL_TYPE_INT)
    (tmp_path / "huge.mbe").write_bytes(header + struct.pack("<II", 0xFFFFFFF8, 0xFFFFFFFF) + b"\x00" * 16)
    (tmp_path / "magic.mbe").write_bytes(b"ABCD" + good_mbe("x")[4:])
    (tmp_path / "ok.mbe").write_bytes(good_mbe("fine"))

    failures = check_mbes(tmp_path)

    assert [failure.path.name for failure in failures] == ["huge.mbe", "magic.mbe"]
    assert isinstance(failures[0].error, TruncatedFile)
    assert failures[0].offset == 32
    assert failures[0].consumed == 48


def test_unreadable_path_is_a_failure(tmp_path):
    folder = tmp_path / "folder.mbe"
    folder.mkdir()
    failure = check_mbe(folder)
    assert isinstance(failure.error, OSError)
    assert failure.offset == 0
