"""
MBE structured record files (EXPA sheets followed by a CHNK string region).

Rows are fixed size and copied verbatim; only the 8 byte string slots are
interpreted. A CHNK entry binds a NUL terminated UTF-8 payload to the slot
at absolute offset `target`. A slot either holds 0, in which case its
string is the CHNK entry targeting it, or the absolute offset of the payload
it points at. Pointer slots may share one payload.
"""

import io
import logging
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import (InvalidInput, MalformedHeader, MalformedRecord,
                     TruncatedFile, UnexpectedEof)
from .offset_reader import OffsetReader
from .relocation import RelocationMap

logger = logging.getLogger(__name__)

EXPA_MAGIC = b'EXPA'
CHNK_MAGIC = b'CHNK'

COL_TYPE_INT, COL_TYPE_STRING, COL_TYPE_STRINGID, COL_TYPE_INTID = 0x2, 0x7, 0x8, 0x9
COL_TYPE_NAMES = {
    COL_TYPE_INT: "Int",
    COL_TYPE_STRING: "String",
    COL_TYPE_STRINGID: "StringID",
    COL_TYPE_INTID: "IntID",
}
# (size, alignment) inside a row
COLUMN_LAYOUT = {
    COL_TYPE_INT: (4, 4),
    COL_TYPE_STRING: (8, 8),
    COL_TYPE_STRINGID: (8, 8),
    COL_TYPE_INTID: (4, 4),
}
SLOT_COLUMNS = (COL_TYPE_STRING, COL_TYPE_STRINGID)
DIALOGUE_COLUMNS = (COL_TYPE_STRING,)
ROW_ALIGNMENT = 8


def pad_string(text: str) -> bytes:
    """Encode text the way the game stores it: NUL terminated, padded to 4."""
    padded = text.encode('utf-8') + b'\x00\x00'
    return padded + b'\x00' * (-len(padded) % 4)


def decode_payload(payload: bytes) -> str:
    return payload.split(b'\x00', 1)[0].decode('utf-8')


def row_layout(column_types: Sequence[int]) -> Tuple[List[int], int]:
    """Column offsets inside a row and the unpadded row length."""
    offsets = []
    position = 0
    for col_type in column_types:
        size, alignment = COLUMN_LAYOUT[col_type]
        position += -position % alignment
        offsets.append(position)
        position += size
    return offsets, position


@dataclass
class Sheet:
    name: str
    column_types: List[int]
    row_size: int
    row_count: int
    rows_offset: int
    column_offsets: List[int] = field(default_factory=list)

    def cell_offset(self, row: int, column: int) -> int:
        return self.rows_offset + row * self.row_size + self.column_offsets[column]


@dataclass
class StringEntry:
    """One CHNK entry; `offset` is where its 8 byte header starts."""
    offset: int
    target: int
    size: int

    @property
    def payload_offset(self) -> int:
        return self.offset + 8


@dataclass
class Slot:
    """An 8 byte string slot in a row."""
    sheet: int
    row: int
    column: int
    offset: int
    pointer: int
    string: Optional[int]


class MBEFile:
    """A parsed MBE file.

    The raw bytes are kept as an arena; sheets, CHNK entries and slots are
    integer offsets into it and strings are only decoded on demand.
    """

    def __init__(self, data: bytes, sheets: List[Sheet], strings: List[StringEntry],
                 slots: List[Slot], chnk_offset: int, data_end: int):
        self.data = data
        self.sheets = sheets
        self.strings = strings
        self.slots = slots
        self.chnk_offset = chnk_offset
        self.data_end = data_end
        self._slots_by_offset = {slot.offset: slot for slot in slots}

    @property
    def pointer_slots(self) -> bool:
        """True when slots hold payload offsets rather than 0 placeholders."""
        return any(slot.pointer for slot in self.slots)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'MBEFile':
        return cls.parse(OffsetReader(io.BytesIO(data)))

    @classmethod
    def parse(cls, reader: Union[OffsetReader, BinaryIO]) -> 'MBEFile':
        """Parse an MBE file, reporting failures with the offset they happened at."""
        if not isinstance(reader, OffsetReader):
            reader = OffsetReader(reader)
        arena = bytearray()

        def take(size: int, what: str) -> bytes:
            try:
                chunk = reader.read_exact(size)
            except UnexpectedEof as e:
                raise TruncatedFile(f"{what}: wanted {e.wanted} bytes, got {e.got}", e.offset) from e
            arena.extend(chunk)
            return chunk

        def take_u32(what: str) -> int:
            return struct.unpack('<I', take(4, what))[0]

        magic = take(4, "EXPA magic")
        if magic != EXPA_MAGIC:
            raise MalformedHeader(f"bad magic {magic!r}, expected {EXPA_MAGIC!r}", 0)
        sheet_count = take_u32("sheet count")

        sheets = []
        for sheet_index in range(sheet_count):
            name_size = take_u32(f"sheet {sheet_index} name size")
            raw_name = take(name_size, f"sheet {sheet_index} name")
            try:
                name = raw_name.split(b'\x00', 1)[0].decode('utf-8')
            except UnicodeDecodeError as e:
                raise MalformedHeader(f"sheet {sheet_index} name is not valid UTF-8",
                                      reader.offset - name_size) from e
            column_count = take_u32(f"sheet {name!r} column count")
            column_types = []
            for _ in range(column_count):
                type_offset = reader.offset
                col_type = take_u32(f"sheet {name!r} column types")
                if col_type not in COLUMN_LAYOUT:
                    raise MalformedHeader(f"sheet {name!r} has unknown column type 0x{col_type:x}", type_offset)
                column_types.append(col_type)
            layout_offset = reader.offset
            row_size = take_u32(f"sheet {name!r} row size")
            row_count = take_u32(f"sheet {name!r} row count")
            column_offsets, used = row_layout(column_types)
            if used > row_size:
                raise MalformedHeader(
                    f"sheet {name!r} columns need {used} bytes but rows are {row_size} bytes", layout_offset)
            take(-reader.offset % ROW_ALIGNMENT, f"sheet {name!r} header padding")
            rows_offset = reader.offset
            take(row_size * row_count, f"sheet {name!r} declares {row_count} rows of {row_size} bytes")
            sheets.append(Sheet(name, column_types, row_size, row_count, rows_offset, column_offsets))
            logger.debug(f"[mbe] sheet {name!r}: {row_count} rows x {row_size} bytes at 0x{rows_offset:x}")

        chnk_offset = reader.offset
        magic = take(4, "CHNK magic")
        if magic != CHNK_MAGIC:
            raise MalformedHeader(f"bad magic {magic!r}, expected {CHNK_MAGIC!r}", chnk_offset)
        string_count = take_u32("string count")
        strings = []
        for index in range(string_count):
            entry_offset = reader.offset
            target = take_u32(f"string {index} target")
            size = take_u32(f"string {index} size")
            take(size, f"string {index} payload")
            strings.append(StringEntry(entry_offset, target, size))
        data_end = reader.offset
        arena.extend(reader.read())

        data = bytes(arena)
        slots = cls._resolve_slots(data, sheets, strings, chnk_offset, data_end)
        logger.debug(f"[mbe] {len(sheets)} sheets, {len(strings)} strings, {len(slots)} slots")
        return cls(data, sheets, strings, slots, chnk_offset, data_end)

    @staticmethod
    def _resolve_slots(data: bytes, sheets: List[Sheet], strings: List[StringEntry],
                       chnk_offset: int, data_end: int) -> List[Slot]:
        slots = []
        for sheet_index, sheet in enumerate(sheets):
            for row in range(sheet.row_count):
                for column, col_type in enumerate(sheet.column_types):
                    if col_type not in SLOT_COLUMNS:
                        continue
                    offset = sheet.cell_offset(row, column)
                    pointer = struct.unpack_from('<Q', data, offset)[0]
                    slots.append(Slot(sheet_index, row, column, offset, pointer, None))
        by_offset = {slot.offset: slot for slot in slots}
        by_payload = {entry.payload_offset: i for i, entry in enumerate(strings)}

        for index, entry in enumerate(strings):
            slot = by_offset.get(entry.target)
            if slot is None:
                raise MalformedRecord(index, entry.offset,
                                      f"string targets 0x{entry.target:x}, which is not a string slot")
            if slot.string is not None:
                raise MalformedRecord(index, entry.offset,
                                      f"slot 0x{entry.target:x} is targeted by several strings")
            if slot.pointer not in (0, entry.payload_offset):
                raise MalformedRecord(slot.row, slot.offset,
                                      f"slot points at 0x{slot.pointer:x} but its string is at 0x{entry.payload_offset:x}")
            slot.string = index

        for slot in slots:
            if slot.pointer == 0:
                continue
            if not chnk_offset < slot.pointer < data_end:
                raise MalformedRecord(slot.row, slot.offset,
                                      f"slot points at 0x{slot.pointer:x}, outside the string region")
            if slot.pointer not in by_payload:
                raise MalformedRecord(slot.row, slot.offset,
                                      f"slot points at 0x{slot.pointer:x}, which is not the start of a string")
            slot.string = by_payload[slot.pointer]
        return slots

    def payload(self, index: int) -> bytes:
        entry = self.strings[index]
        return self.data[entry.payload_offset:entry.payload_offset + entry.size]

    def text(self, slot: Slot) -> Optional[str]:
        """Decode the string a slot refers to, None when it has none."""
        if slot.string is None:
            return None
        try:
            return decode_payload(self.payload(slot.string))
        except UnicodeDecodeError as e:
            raise MalformedRecord(slot.row, self.strings[slot.string].payload_offset,
                                  "string is not valid UTF-8") from e

    def slot_at(self, offset: int) -> Optional[Slot]:
        return self._slots_by_offset.get(offset)

    def string_slots(self, dialogue_only: bool = True) -> Iterator[Slot]:
        columns = DIALOGUE_COLUMNS if dialogue_only else SLOT_COLUMNS
        for slot in self.slots:
            if self.sheets[slot.sheet].column_types[slot.column] in columns:
                yield slot

    def cell_int(self, sheet: int, row: int, column: int) -> int:
        return struct.unpack_from('<i', self.data, self.sheets[sheet].cell_offset(row, column))[0]

    def aliases(self) -> Dict[int, List[int]]:
        """Slot offsets sharing a payload, keyed by string index."""
        shared: Dict[int, List[int]] = {}
        for slot in self.slots:
            if slot.string is not None:
                shared.setdefault(slot.string, []).append(slot.offset)
        return {index: offsets for index, offsets in shared.items() if len(offsets) > 1}

    def validate(self) -> None:
        """Decode every string so that bad payloads surface as errors."""
        for slot in self.slots:
            self.text(slot)

    def build(self, replacements: Optional[Dict[int, str]] = None) -> bytes:
        return self.build_with_relocation(replacements)[0]

    def build_with_relocation(self, replacements: Optional[Dict[int, str]] = None) -> Tuple[bytes, RelocationMap]:
        """Emit the file with the strings of some slots replaced.

        `replacements` maps slot offsets to new text. Aliased slots keep
        sharing one payload, whichever of them is edited. Payloads are laid
        out again in their original order and pointer slots are relocated;
        rows, padding and every other field are copied verbatim.
        """
        replacements = replacements or {}
        new_texts: Dict[int, str] = {}
        appended: List[Tuple[int, str]] = []
        for offset in sorted(replacements):
            slot = self._slots_by_offset.get(offset)
            if slot is None:
                raise InvalidInput(f"0x{offset:x} is not a string slot")
            text = replacements[offset]
            if slot.string is None:
                if text:
                    appended.append((offset, text))
                continue
            if text == self.text(slot):
                continue
            previous = new_texts.get(slot.string)
            if previous is not None and previous != text:
                logger.warning(f"[mbe] slot 0x{offset:x} shares its string with another edited slot; "
                               f"keeping {previous!r}, ignoring {text!r}")
                continue
            new_texts[slot.string] = text

        head = bytearray(self.data[:self.chnk_offset])
        relocation = RelocationMap()
        relocation.add(0, self.chnk_offset + 8, 0, self.chnk_offset + 8)
        chunks = [CHNK_MAGIC, struct.pack('<I', len(self.strings) + len(appended))]
        position = self.chnk_offset + 8
        for index, entry in enumerate(self.strings):
            if index in new_texts:
                payload = pad_string(new_texts[index])
            else:
                payload = self.payload(index)
            relocation.add(entry.offset, 8, position, 8)
            relocation.add(entry.payload_offset, entry.size, position + 8, len(payload))
            chunks.append(struct.pack('<II', entry.target, len(payload)))
            chunks.append(payload)
            position += 8 + len(payload)

        pointers = self.pointer_slots
        new_pointers: Dict[int, int] = {}
        for target, text in appended:
            payload = pad_string(text)
            chunks.append(struct.pack('<II', target, len(payload)))
            chunks.append(payload)
            if pointers:
                new_pointers[target] = position + 8
            position += 8 + len(payload)

        tail = self.data[self.data_end:]
        relocation.add(self.data_end, len(tail), position, len(tail))

        for slot in self.slots:
            if slot.pointer:
                struct.pack_into('<Q', head, slot.offset, relocation.map(slot.pointer))
        for target, pointer in new_pointers.items():
            struct.pack_into('<Q', head, target, pointer)

        if new_texts or appended:
            logger.debug(f"[mbe] rebuilt with {len(new_texts)} edited and {len(appended)} new strings, "
                         f"size delta {relocation.delta:+d}")
        return bytes(head) + b''.join(chunks) + tail, relocation


@dataclass
class SheetSpec:
    """Sheet contents used to author a new MBE file."""
    name: str
    column_types: List[int]
    rows: List[List[Union[int, str, None]]]


def build_mbe(sheets: Sequence[SheetSpec], pointer_slots: bool = False, share_strings: bool = False) -> bytes:
    """Write a new MBE file from scratch.

    With `share_strings`, identical texts are stored once and every slot
    points at the shared payload, which requires `pointer_slots`.
    """
    if share_strings and not pointer_slots:
        raise InvalidInput("shared strings can only be addressed through pointer slots")
    out = bytearray(EXPA_MAGIC + struct.pack('<I', len(sheets)))
    cells: List[Tuple[int, str]] = []
    for sheet in sheets:
        for col_type in sheet.column_types:
            if col_type not in COLUMN_LAYOUT:
                raise InvalidInput(f"unknown column type 0x{col_type:x}")
        name = pad_string(sheet.name)
        out += struct.pack('<I', len(name)) + name
        out += struct.pack('<I', len(sheet.column_types))
        out += b''.join(struct.pack('<I', t) for t in sheet.column_types)
        offsets, used = row_layout(sheet.column_types)
        row_size = used + (-used % ROW_ALIGNMENT)
        out += struct.pack('<II', row_size, len(sheet.rows))
        out += b'\x00' * (-len(out) % ROW_ALIGNMENT)
        for values in sheet.rows:
            if len(values) != len(sheet.column_types):
                raise InvalidInput(f"sheet {sheet.name!r}: row has {len(values)} cells, "
                                   f"expected {len(sheet.column_types)}")
            row = bytearray(row_size)
            for value, col_type, offset in zip(values, sheet.column_types, offsets):
                if col_type in SLOT_COLUMNS:
                    if value:
                        cells.append((len(out) + offset, str(value)))
                else:
                    struct.pack_into('<i', row, offset, int(value or 0))
            out += row

    chnk = [CHNK_MAGIC, b'']
    position = len(out) + 8
    payloads: Dict[str, int] = {}
    count = 0
    for target, text in cells:
        if share_strings and text in payloads:
            struct.pack_into('<Q', out, target, payloads[text])
            continue
        payload = pad_string(text)
        chnk.append(struct.pack('<II', target, len(payload)))
        chnk.append(payload)
        payloads[text] = position + 8
        if pointer_slots:
            struct.pack_into('<Q', out, target, position + 8)
        position += 8 + len(payload)
        count += 1
    chnk[1] = struct.pack('<I', count)
    return bytes(out) + b''.join(chnk)
