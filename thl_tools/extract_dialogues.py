import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .dialogue_table import DialogueTable
from .errors import CodecError, InvalidInput
from .mbe import COL_TYPE_INTID, MBEFile, Slot
from .mvgl import Archive, merge_archives

logger = logging.getLogger(__name__)

MBE_EXTENSION = '.mbe'

ArchiveSource = Union[Archive, bytes, str, Path, BinaryIO]


def load_archive(source: ArchiveSource) -> Archive:
    """Parse an archive given as an Archive, raw bytes, a path or a stream."""
    if isinstance(source, Archive):
        return source
    if isinstance(source, (bytes, bytearray)):
        return Archive.parse(io.BytesIO(source))
    if isinstance(source, (str, Path)):
        with open(source, 'rb') as f:
            return Archive.parse(f)
    return Archive.parse(source)


def is_mbe(name: str) -> bool:
    return name.lower().endswith(MBE_EXTENSION)


def entry_of_key(key: str, names: Optional[Iterable[str]] = None) -> Optional[str]:
    """Entry name a row key belongs to.

    With `names`, the longest of them that prefixes the key, or None. Without,
    the first `.mbe` path component that still leaves a sheet, a row and a
    column after it.
    """
    if names is not None:
        matches = [name for name in names if key.startswith(name + '/')]
        return max(matches, key=len) if matches else None
    parts = key.split('/')
    for index in range(len(parts) - 3):
        if is_mbe(parts[index]):
            return '/'.join(parts[:index + 1])
    return None


def _row_labels(mbe: MBEFile, sheet_index: int) -> List[str]:
    """Row part of the key: the IntID of the row when the sheet has unique ones."""
    sheet = mbe.sheets[sheet_index]
    indices = [str(row) for row in range(sheet.row_count)]
    if not sheet.column_types or sheet.column_types[0] != COL_TYPE_INTID:
        return indices
    ids = [mbe.cell_int(sheet_index, row, 0) for row in range(sheet.row_count)]
    if len(set(ids)) != len(ids):
        logger.debug(f"[dialogues] sheet {sheet.name!r} has duplicate ids, keying rows by index")
        return indices
    return [f"#{row_id}" for row_id in ids]


def dialogue_rows(entry_name: str, mbe: MBEFile, dialogue_only: bool = True) -> Iterator[Tuple[str, Slot]]:
    """Yield (row key, slot) for every text cell of an MBE entry.

    Keys look like `<entry>/<sheet>/<row>/<column>` and are unique across
    every entry of an archive.
    """
    names = [sheet.name for sheet in mbe.sheets]
    labels = {}
    for slot in mbe.string_slots(dialogue_only):
        if slot.sheet not in labels:
            labels[slot.sheet] = _row_labels(mbe, slot.sheet)
        sheet_name = names[slot.sheet]
        if names.count(sheet_name) > 1:
            sheet_name = f"{sheet_name}@{slot.sheet}"
        yield f"{entry_name}/{sheet_name}/{labels[slot.sheet][slot.row]}/{slot.column}", slot


@dataclass
class LanguageSource:
    """The dialogue archive of one language, with an optional patch archive over it."""
    language: str
    base: ArchiveSource
    patch: Optional[ArchiveSource] = None

    def archive(self) -> Archive:
        archive = load_archive(self.base)
        if self.patch is not None:
            archive = merge_archives(archive, load_archive(self.patch))
        return archive


class DialogueExtractor:
    """Pulls every dialogue string of one or more languages into a DialogueTable."""

    def __init__(self, dialogue_only: bool = True):
        self.dialogue_only = dialogue_only

    def read_language(self, archive: Archive, language: str) -> List[Tuple[str, str]]:
        """(key, text) pairs of one archive, in archive order."""
        rows = []
        for entry, payload in archive:
            if not is_mbe(entry.name):
                continue
            try:
                mbe = MBEFile.from_bytes(payload)
                for key, slot in dialogue_rows(entry.name, mbe, self.dialogue_only):
                    rows.append((key, mbe.text(slot) or ''))
            except CodecError as e:
                logger.error(f"[dialogues] {language}: failed to parse {entry.name}: {e}")
                raise
        logger.info(f"[dialogues] {language}: {len(rows)} rows")
        return rows

    def extract_table(self, sources: Sequence[Union[LanguageSource, Tuple[ArchiveSource, str]]]) -> DialogueTable:
        """Build the table; nothing is returned unless every source parses."""
        sources = [s if isinstance(s, LanguageSource) else LanguageSource(s[1], s[0]) for s in sources]
        languages = [source.language for source in sources]
        if not languages or len(set(languages)) != len(languages):
            raise InvalidInput(f"languages must be given once each, got {languages}")
        per_language: Dict[str, List[Tuple[str, str]]] = {}
        for source in sources:
            per_language[source.language] = self.read_language(source.archive(), source.language)

        table = DialogueTable(languages)
        for language, rows in per_language.items():
            for key, text in rows:
                table.set_cell(key, language, text)
        return table

    def extract(self, sources, destination: Union[str, Path, io.TextIOBase]) -> DialogueTable:
        """Extract and write the table as CSV to a path or a text stream."""
        table = self.extract_table(sources)
        if isinstance(destination, (str, Path)):
            table.save(destination)
        else:
            table.write(destination)
        return table
