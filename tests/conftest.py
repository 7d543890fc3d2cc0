import struct

import pytest

from thl_tools.mbe import (COL_TYPE_INT, COL_TYPE_INTID, COL_TYPE_STRING,
                           COL_TYPE_STRINGID, SheetSpec, build_mbe)
from thl_tools.mvgl import Archive

DIALOGUE_ENTRY = "text/dialogue.mbe"


def make_archive(files):
    return Archive.from_files(list(files)).build()


def aliased_mbe(texts=("Hi", "Hi", "Bye")):
    """One sheet [IntID, String], slots pointing at payloads, equal texts shared."""
    return build_mbe([SheetSpec("dialogue", [COL_TYPE_INTID, COL_TYPE_STRING],
                                [[i, text] for i, text in enumerate(texts)])],
                     pointer_slots=True, share_strings=True)


def handmade_aliased_mbe():
    """The ["Hi", "Hi", "Bye"] file laid out by hand, rows 0 and 1 sharing "Hi"."""
    out = b'EXPA' + struct.pack('<I', 1)
    out += struct.pack('<I', 12) + b'dialogue\x00\x00\x00\x00'
    out += struct.pack('<III', 2, COL_TYPE_INTID, COL_TYPE_STRING)
    out += struct.pack('<II', 16, 3)
    out += b'\x00' * 4
    assert len(out) == 48
    pointers = [112, 112, 124]
    for i, pointer in enumerate(pointers):
        out += struct.pack('<i', i) + b'\x00' * 4 + struct.pack('<Q', pointer)
    out += b'CHNK' + struct.pack('<I', 2)
    out += struct.pack('<II', 56, 4) + b'Hi\x00\x00'
    out += struct.pack('<II', 88, 8) + b'Bye\x00\x00\x00\x00\x00'
    assert len(out) == 132
    return out


@pytest.fixture
def placeholder_mbe():
    """Two sheets written the way the game does it: zero slots, one CHNK entry per string."""
    return build_mbe([
        SheetSpec("lines", [COL_TYPE_INT, COL_TYPE_STRING, COL_TYPE_STRINGID], [
            [10, "Good morning.", "line_a"],
            [11, "Where, exactly?", "line_b"],
            [12, "", "line_c"],
            [13, "See you \"tomorrow\".", "line_d"],
        ]),
        SheetSpec("names", [COL_TYPE_INTID, COL_TYPE_STRING], [
            [100, "Takumi"],
            [101, "Eri"],
        ]),
    ])


@pytest.fixture
def language_archives():
    """English and Japanese archives; Japanese lacks the last line."""
    english = make_archive([
        ("readme.txt", b"not a dialogue file"),
        (DIALOGUE_ENTRY, build_mbe([SheetSpec("dialogue", [COL_TYPE_INTID, COL_TYPE_STRING],
                                              [[1, "Hello"], [2, "Bye, then"], [3, "Line\nbreak"]])])),
        ("text/other.mbe", build_mbe([SheetSpec("menu", [COL_TYPE_INT, COL_TYPE_STRING],
                                                [[0, "Start"], [0, "Quit"]])])),
        ("image.img", b"DDS \x00\x01\x02"),
    ])
    japanese = make_archive([
        (DIALOGUE_ENTRY, build_mbe([SheetSpec("dialogue", [COL_TYPE_INTID, COL_TYPE_STRING],
                                              [[1, "こんにちは"], [2, "じゃあね"]])])),
        ("text/other.mbe", build_mbe([SheetSpec("menu", [COL_TYPE_INT, COL_TYPE_STRING],
                                                [[0, "スタート"], [0, "終了"]])])),
    ])
    return english, japanese
