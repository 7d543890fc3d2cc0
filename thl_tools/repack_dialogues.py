import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple, Union

from .dialogue_table import DialogueTable
from .errors import CodecError, InvalidInput, UnknownRow
from .extract_dialogues import ArchiveSource, dialogue_rows, entry_of_key, is_mbe, load_archive
from .mbe import MBEFile
from .mvgl import Archive
from .relocation import RelocationMap

logger = logging.getLogger(__name__)


@dataclass
class RepackReport:
    edited_entries: List[str] = field(default_factory=list)
    matched_rows: int = 0
    skipped_rows: int = 0
    size_delta: int = 0


class DialogueRepacker:
    """Injects the texts of a DialogueTable back into a reference archive.

    The rebuilt archive is the reference with the edited strings swapped in
    and every offset that follows them relocated, first inside each MBE
    file, then in the archive's entry table. Record counts, field order and
    non text fields never change.
    """

    def __init__(self, language: Optional[str] = None, skip_foreign: bool = False):
        # Column holding the texts to inject; defaults to the table's last column
        self.language = language
        # Skip rows of entries no archive of this repack knows, instead of failing
        self.skip_foreign = skip_foreign

    def _texts(self, table: DialogueTable) -> Dict[str, str]:
        language = self.language or table.languages[-1]
        if language not in table.languages:
            raise InvalidInput(f"the table has no {language!r} column, only {table.languages}")
        return {key: text for key, text in table.column(language).items() if text}

    def repack_mbe(self, entry_name: str, payload: bytes, texts: Dict[str, str],
                   dialogue_only: bool = True) -> Optional[bytes]:
        """Rebuild one MBE entry, or return None when nothing changed."""
        mbe = MBEFile.from_bytes(payload)
        replacements = {}
        for key, slot in dialogue_rows(entry_name, mbe, dialogue_only):
            text = texts.get(key)
            if text is not None and text != (mbe.text(slot) or ''):
                replacements[slot.offset] = text
        if not replacements:
            return None
        data, relocation = mbe.build_with_relocation(replacements)
        logger.debug(f"[repack] {entry_name}: {len(replacements)} strings replaced, {relocation.delta:+d} bytes")
        return data

    def check_rows(self, archive: Archive, texts: Dict[str, str], exclude: Iterable[str] = (),
                   foreign: Iterable[str] = ()) -> Dict[str, List[str]]:
        """Group row keys per entry, failing on keys the reference cannot hold.

        Keys of entries named in `exclude` or `foreign` are left to another
        archive. Any other key must name an existing slot of the reference.
        """
        exclude = set(exclude)
        names = {name for name in archive.names() if is_mbe(name)}
        owners = names | exclude | set(foreign)
        per_entry: Dict[str, List[str]] = {}
        for key in texts:
            name = entry_of_key(key, owners)
            if name is None:
                if self.skip_foreign:
                    continue
                raise UnknownRow(key)
            if name in exclude or name not in names:
                continue
            per_entry.setdefault(name, []).append(key)

        for name, keys in per_entry.items():
            try:
                known = {key for key, _ in dialogue_rows(name, MBEFile.from_bytes(archive.get(name)))}
            except CodecError as e:
                logger.error(f"[repack] failed to parse reference {name}: {e}")
                raise
            for key in keys:
                if key not in known:
                    raise UnknownRow(key)
        return per_entry

    def repack_archive(self, table: DialogueTable, reference: Archive,
                       exclude: Iterable[str] = (), foreign: Iterable[str] = ()
                       ) -> Tuple[bytes, RelocationMap, RepackReport]:
        """Rebuild `reference` in memory.

        `foreign` names the entries of a sibling archive repacked from the same
        table; their rows are skipped. `exclude` names entries of `reference`
        that must stay untouched.
        """
        texts = self._texts(table)
        per_entry = self.check_rows(reference, texts, exclude, foreign)
        report = RepackReport()
        report.skipped_rows = len(texts) - sum(len(keys) for keys in per_entry.values())

        replacements = {}
        for name in reference.names():
            if name not in per_entry:
                continue
            entry_texts = {key: texts[key] for key in per_entry[name]}
            data = self.repack_mbe(name, reference.get(name), entry_texts)
            if data is not None:
                replacements[name] = data
                report.edited_entries.append(name)
        report.matched_rows = sum(len(keys) for keys in per_entry.values())

        data, relocation = reference.rebuild(replacements)
        report.size_delta = relocation.delta
        if report.skipped_rows:
            logger.debug(f"[repack] {report.skipped_rows} rows belong to entries repacked elsewhere")
        logger.info(f"[repack] {len(report.edited_entries)} entries rebuilt, archive size {report.size_delta:+d} bytes")
        return data, relocation, report

    def repack(self, table: Union[DialogueTable, str, Path], reference: ArchiveSource,
               destination: BinaryIO, exclude: Iterable[str] = (), foreign: Iterable[str] = ()) -> RepackReport:
        """Rebuild `reference` with the table's texts and write it to `destination`.

        Nothing is written unless the whole archive could be rebuilt.
        """
        if not isinstance(table, DialogueTable):
            table = DialogueTable.load(table)
        data, _, report = self.repack_archive(table, load_archive(reference), exclude, foreign)
        destination.write(data)
        return report
