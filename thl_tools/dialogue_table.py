import csv
import io
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import chardet

from .errors import MalformedTable

logger = logging.getLogger(__name__)

KEY_HEADER = 'key'


class DialogueTable:
    """Ordered dialogue rows, one text cell per language.

    Every row has a cell for every language; a language that lacks the row
    holds an empty string there.
    """

    def __init__(self, languages: List[str]):
        if not languages:
            raise ValueError("a dialogue table needs at least one language")
        if len(set(languages)) != len(languages):
            raise ValueError(f"languages must be unique: {languages}")
        self.languages = list(languages)
        self._rows: Dict[str, List[str]] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: str) -> bool:
        return key in self._rows

    def __eq__(self, other) -> bool:
        if not isinstance(other, DialogueTable):
            return NotImplemented
        return self.languages == other.languages and list(self._rows.items()) == list(other._rows.items())

    def __repr__(self) -> str:
        return f"DialogueTable(languages={self.languages!r}, rows={len(self)})"

    def keys(self) -> List[str]:
        return list(self._rows)

    def rows(self) -> Iterator[Tuple[str, List[str]]]:
        for key, cells in self._rows.items():
            yield key, list(cells)

    def add_row(self, key: str, cells: Optional[List[str]] = None) -> None:
        """Append a row; fails on a key that is already present."""
        if key in self._rows:
            raise MalformedTable(f"duplicate row key {key!r}")
        cells = list(cells) if cells is not None else [''] * len(self.languages)
        if len(cells) != len(self.languages):
            raise MalformedTable(f"row {key!r} has {len(cells)} cells, expected {len(self.languages)}")
        self._rows[key] = cells

    def set_cell(self, key: str, language: str, text: str) -> None:
        """Set one cell, appending an empty row for an unseen key."""
        column = self._column_index(language)
        if key not in self._rows:
            self._rows[key] = [''] * len(self.languages)
        self._rows[key][column] = text

    def get(self, key: str, language: str) -> str:
        return self._rows[key][self._column_index(language)]

    def column(self, language: str) -> Dict[str, str]:
        """Key to text mapping for one language."""
        index = self._column_index(language)
        return {key: cells[index] for key, cells in self._rows.items()}

    def _column_index(self, language: str) -> int:
        try:
            return self.languages.index(language)
        except ValueError:
            raise KeyError(f"unknown language {language!r}, table has {self.languages}") from None

    def write(self, stream) -> None:
        writer = csv.writer(stream, quoting=csv.QUOTE_MINIMAL, lineterminator='\r\n')
        writer.writerow([KEY_HEADER] + self.languages)
        for key, cells in self._rows.items():
            writer.writerow([key] + cells)

    def to_tabular(self) -> str:
        """Render as CSV; fields with separators, quotes or newlines are quoted."""
        out = io.StringIO(newline='')
        self.write(out)
        return out.getvalue()

    @classmethod
    def read(cls, stream) -> 'DialogueTable':
        reader = csv.reader(stream)
        header = next(reader, None)
        if not header or header[0] != KEY_HEADER or len(header) < 2:
            raise MalformedTable(f"header should be '{KEY_HEADER}' followed by language names", 1)
        try:
            table = cls(header[1:])
        except ValueError as e:
            raise MalformedTable(str(e), 1) from e
        for record in reader:
            if not record:
                continue
            if len(record) != len(header):
                raise MalformedTable(f"expected {len(header)} columns, got {len(record)}", reader.line_num)
            key = record[0]
            if not key:
                raise MalformedTable("row has an empty key", reader.line_num)
            if key in table:
                raise MalformedTable(f"duplicate row key {key!r}", reader.line_num)
            table.add_row(key, record[1:])
        return table

    @classmethod
    def from_tabular(cls, text: str) -> 'DialogueTable':
        return cls.read(io.StringIO(text, newline=''))

    def save(self, path: Union[str, Path]) -> None:
        """Write as UTF-8 with a BOM so spreadsheet tools pick the right encoding."""
        with open(path, 'w', encoding='utf-8-sig', newline='') as f:
            self.write(f)
        logger.info(f"[table] wrote {len(self)} rows x {len(self.languages)} languages to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'DialogueTable':
        with open(path, 'rb') as f:
            data = f.read()
        table = cls.from_tabular(decode_table_bytes(data))
        logger.info(f"[table] read {len(table)} rows from {path}")
        return table


def decode_table_bytes(data: bytes) -> str:
    """Decode a CSV saved by any spreadsheet tool."""
    if data.startswith(b'\xef\xbb\xbf'):
        return data[3:].decode('utf-8')
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        pass
    detected = chardet.detect(data)
    encoding = detected.get('encoding')
    if not encoding:
        raise MalformedTable("could not detect the text encoding of the table")
    logger.warning(f"[table] table is not UTF-8, decoding as {encoding} "
                   f"(confidence {detected.get('confidence', 0):.2f})")
    try:
        return data.decode(encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise MalformedTable(f"table could not be decoded as {encoding}") from e
