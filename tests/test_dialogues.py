import io

import pytest

from conftest import DIALOGUE_ENTRY, aliased_mbe, make_archive
from thl_tools.dialogue_table import DialogueTable
from thl_tools.errors import CodecError, InvalidInput, UnknownRow
from thl_tools.extract_dialogues import DialogueExtractor, LanguageSource, dialogue_rows, entry_of_key
from thl_tools.mbe import (COL_TYPE_INT, COL_TYPE_INTID, COL_TYPE_STRING,
                           MBEFile, SheetSpec, build_mbe, pad_string)
from thl_tools.mvgl import Archive
from thl_tools.repack_dialogues import DialogueRepacker

HELLO = f"{DIALOGUE_ENTRY}/dialogue/#1/1"
BYE = f"{DIALOGUE_ENTRY}/dialogue/#2/1"
BREAK = f"{DIALOGUE_ENTRY}/dialogue/#3/1"
START = "text/other.mbe/menu/0/1"
QUIT = "text/other.mbe/menu/1/1"


def parse(data):
    return Archive.parse(io.BytesIO(data))


def english_table(english):
    return DialogueExtractor().extract_table([LanguageSource("English", english)])


def test_extract_two_languages(language_archives):
    english, japanese = language_archives
    table = DialogueExtractor().extract_table([
        LanguageSource("Japanese", japanese),
        LanguageSource("English", english),
    ])

    assert table.languages == ["Japanese", "English"]
    assert list(table.rows()) == [
        (HELLO, ["こんにちは", "Hello"]),
        (BYE, ["じゃあね", "Bye, then"]),
        (START, ["スタート", "Start"]),
        (QUIT, ["終了", "Quit"]),
        (BREAK, ["", "Line\nbreak"]),
    ]


def test_extraction_is_deterministic(language_archives):
    english, japanese = language_archives
    sources = [(japanese, "Japanese"), (english, "English")]
    first = DialogueExtractor().extract_table(sources).to_tabular()
    assert DialogueExtractor().extract_table(sources).to_tabular() == first


def test_extract_writes_csv(language_archives, tmp_path):
    english, _ = language_archives
    destination = tmp_path / "full-text.csv"
    table = DialogueExtractor().extract([(english, "English")], destination)
    assert DialogueTable.load(destination) == table


def test_patch_entries_override_the_base(language_archives):
    english, _ = language_archives
    patch = make_archive([
        (DIALOGUE_ENTRY, build_mbe([SheetSpec("dialogue", [COL_TYPE_INTID, COL_TYPE_STRING],
                                              [[1, "Hello there"], [2, "Bye, then"], [3, "Fixed"]])])),
        ("text/new.mbe", build_mbe([SheetSpec("extra", [COL_TYPE_INT, COL_TYPE_STRING], [[5, "New"]])])),
    ])
    table = DialogueExtractor().extract_table([LanguageSource("English", english, patch)])
    assert table.get(HELLO, "English") == "Hello there"
    assert table.get(BREAK, "English") == "Fixed"
    assert table.get(START, "English") == "Start"
    assert table.keys()[-1] == "text/new.mbe/extra/0/1"


def test_rows_with_duplicate_ids_are_keyed_by_index():
    mbe = MBEFile.from_bytes(build_mbe([
        SheetSpec("s", [COL_TYPE_INTID, COL_TYPE_STRING], [[7, "a"], [7, "b"]]),
        SheetSpec("s", [COL_TYPE_INTID, COL_TYPE_STRING], [[1, "c"]]),
    ]))
    keys = [key for key, _ in dialogue_rows("x.mbe", mbe)]
    assert keys == ["x.mbe/s@0/0/1", "x.mbe/s@0/1/1", "x.mbe/s@1/#1/1"]


def test_extract_fails_on_a_corrupt_mbe(language_archives):
    english, _ = language_archives
    broken = make_archive([("text/broken.mbe", b"EXPA\x01\x00")])
    with pytest.raises(CodecError):
        DialogueExtractor().extract_table([LanguageSource("English", english, broken)])


def test_repack_without_edits_is_identical(language_archives):
    english, japanese = language_archives
    table = DialogueExtractor().extract_table([(japanese, "Japanese"), (english, "English")])

    data, relocation, report = DialogueRepacker().repack_archive(table, parse(english))

    assert data == english
    assert relocation.delta == 0
    assert report.edited_entries == []
    assert report.matched_rows == 5


def test_repack_relocates_the_following_entries(language_archives):
    english, _ = language_archives
    reference = parse(english)
    table = english_table(english)
    table.set_cell(BYE, "English", "Bye, then, see you")

    data, relocation, report = DialogueRepacker().repack_archive(table, reference)

    growth = len(pad_string("Bye, then, see you")) - len(pad_string("Bye, then"))
    assert report.edited_entries == [DIALOGUE_ENTRY]
    assert report.size_delta == growth
    assert len(data) == len(english) + growth
    rebuilt = parse(data)
    old = {e.name: e for e in reference.entries}
    new = {e.name: e for e in rebuilt.entries}
    assert new["readme.txt"] == old["readme.txt"]
    assert new[DIALOGUE_ENTRY].size == old[DIALOGUE_ENTRY].size + growth
    assert new["text/other.mbe"].offset == old["text/other.mbe"].offset + growth
    assert new["image.img"].offset == old["image.img"].offset + growth
    assert rebuilt.get("image.img") == reference.get("image.img")
    assert relocation.map(old["image.img"].offset) == new["image.img"].offset

    again = english_table(data)
    assert again.get(BYE, "English") == "Bye, then, see you"
    assert again.get(BREAK, "English") == "Line\nbreak"


def test_empty_cells_pass_through(language_archives):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell(HELLO, "English", "")
    table.set_cell(QUIT, "English", "Exit")

    data, _, report = DialogueRepacker().repack_archive(table, parse(english))

    assert report.edited_entries == ["text/other.mbe"]
    again = english_table(data)
    assert again.get(HELLO, "English") == "Hello"
    assert again.get(QUIT, "English") == "Exit"


def test_unknown_row_fails(language_archives):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell(f"{DIALOGUE_ENTRY}/dialogue/#9/1", "English", "Ghost")
    with pytest.raises(UnknownRow) as excinfo:
        DialogueRepacker().repack_archive(table, parse(english))
    assert excinfo.value.key.endswith("#9/1")


@pytest.mark.parametrize("key", ["text/dialogue.mbx/dialogue/#1/1", "garbage", "text/elsewhere.mbe/dialogue/#1/1"])
def test_rows_of_unknown_entries_fail(language_archives, key):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell(key, "English", "Not here")
    with pytest.raises(UnknownRow) as excinfo:
        DialogueRepacker().repack_archive(table, parse(english))
    assert excinfo.value.key == key


def test_rows_of_a_sibling_archive_are_skipped(language_archives):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell("text/elsewhere.mbe/dialogue/#1/1", "English", "Not here")

    data, _, report = DialogueRepacker().repack_archive(table, parse(english), foreign=["text/elsewhere.mbe"])

    assert data == english
    assert report.skipped_rows == 1
    table.set_cell("garbage", "English", "x")
    with pytest.raises(UnknownRow):
        DialogueRepacker().repack_archive(table, parse(english), foreign=["text/elsewhere.mbe"])


def test_skip_foreign_ignores_every_unknown_entry(language_archives):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell("garbage", "English", "x")
    table.set_cell(START, "English", "Go")

    data, _, report = DialogueRepacker(skip_foreign=True).repack_archive(table, parse(english))

    assert report.skipped_rows == 1
    assert english_table(data).get(START, "English") == "Go"

    table.set_cell(f"{DIALOGUE_ENTRY}/dialogue/#9/1", "English", "Ghost")
    with pytest.raises(UnknownRow):
        DialogueRepacker(skip_foreign=True).repack_archive(table, parse(english))


def test_entry_of_key():
    names = ["text/a.mbe", "text/a.mbe/b.mbe"]
    assert entry_of_key("text/a.mbe/s/0/1", names) == "text/a.mbe"
    assert entry_of_key("text/a.mbe/b.mbe/s/#1/1", names) == "text/a.mbe/b.mbe"
    assert entry_of_key("text/ab.mbe/s/0/1", names) is None
    assert entry_of_key("text/a.mbe/menu/sub/0/1") == "text/a.mbe"
    assert entry_of_key("text/a.mbe/x.mbe/0/1") == "text/a.mbe"
    assert entry_of_key("garbage") is None


def test_languages_must_be_unique(language_archives):
    english, _ = language_archives
    with pytest.raises(InvalidInput):
        DialogueExtractor().extract_table([(english, "English"), (english, "English")])


def test_excluded_entries_stay_untouched(language_archives):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell(HELLO, "English", "Howdy")
    table.set_cell(START, "English", "Begin")

    data, _, report = DialogueRepacker().repack_archive(table, parse(english), exclude=[DIALOGUE_ENTRY])

    assert report.edited_entries == ["text/other.mbe"]
    again = english_table(data)
    assert again.get(HELLO, "English") == "Hello"
    assert again.get(START, "English") == "Begin"


def test_repack_fails_on_a_corrupt_reference(language_archives):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell("text/broken.mbe/s/0/1", "English", "x")
    reference = parse(english)
    broken = Archive.from_files(list(zip(reference.names(), reference.payloads)) + [("text/broken.mbe", b"NOPE")])
    with pytest.raises(CodecError):
        DialogueRepacker().repack_archive(table, parse(broken.build()))


def test_repack_selected_column(language_archives):
    english, japanese = language_archives
    table = DialogueExtractor().extract_table([(japanese, "Japanese"), (english, "English")])
    table.set_cell(HELLO, "English", "Good day")

    data, _, report = DialogueRepacker("Japanese").repack_archive(table, parse(english))

    again = english_table(data)
    assert again.get(HELLO, "English") == "こんにちは"
    assert again.get(BREAK, "English") == "Line\nbreak"
    assert sorted(report.edited_entries) == [DIALOGUE_ENTRY, "text/other.mbe"]


def test_repack_unknown_column(language_archives):
    english, _ = language_archives
    with pytest.raises(InvalidInput):
        DialogueRepacker("Klingon").repack_archive(english_table(english), parse(english))


def test_repack_shared_strings_stay_shared():
    reference = make_archive([(DIALOGUE_ENTRY, aliased_mbe())])
    table = english_table(reference)
    assert table.column("English") == {
        f"{DIALOGUE_ENTRY}/dialogue/#0/1": "Hi",
        f"{DIALOGUE_ENTRY}/dialogue/#1/1": "Hi",
        f"{DIALOGUE_ENTRY}/dialogue/#2/1": "Bye",
    }
    table.set_cell(f"{DIALOGUE_ENTRY}/dialogue/#1/1", "English", "Hey")

    data, _, _ = DialogueRepacker().repack_archive(table, parse(reference))

    mbe = MBEFile.from_bytes(parse(data).get(DIALOGUE_ENTRY))
    assert len(mbe.strings) == 2
    assert [mbe.text(slot) for slot in mbe.string_slots()] == ["Hey", "Hey", "Bye"]


def test_repack_writes_to_a_stream(language_archives, tmp_path):
    english, _ = language_archives
    table = english_table(english)
    table.set_cell(START, "English", "Go")
    csv_path = tmp_path / "full-text.csv"
    table.save(csv_path)
    out = io.BytesIO()

    report = DialogueRepacker().repack(csv_path, english, out)

    assert report.edited_entries == ["text/other.mbe"]
    assert english_table(out.getvalue()).get(START, "English") == "Go"
