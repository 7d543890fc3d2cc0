"""
MVGL archive container.

An archive is a 32 byte header, a table of fixed size entries and the entry
payloads. Offsets in the table are absolute; the packer lays payloads out
back to back in table order.

    0x00  magic b"MVGL", u32 version, u32 entry count, u32 reserved
    0x10  u64 data start, u64 total size
    0x20  entries: 0x70 bytes name, u64 offset, u64 size
"""

import io
import logging
import os
import re
import struct
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, Iterator, List, Optional, Pattern, Tuple, Union

from .errors import (AlreadyExists, InvalidInput, MalformedHeader,
                     MalformedRecord, TruncatedFile, UnexpectedEof)
from .offset_reader import OffsetReader
from .relocation import RelocationMap

logger = logging.getLogger(__name__)

MAGIC = b'MVGL'
VERSION = 1
HEADER = struct.Struct('<4sIIIQQ')
ENTRY = struct.Struct('<112sQQ')
NAME_SIZE = 0x70

ARCHIVE_IMAGE_EXTENSION = '.img'
EDITOR_IMAGE_EXTENSION = '.dds'


def rename_for_extraction(name: str) -> str:
    """Map an archived image name to the extension image editors expect."""
    if name.lower().endswith(ARCHIVE_IMAGE_EXTENSION):
        return name[:-len(ARCHIVE_IMAGE_EXTENSION)] + EDITOR_IMAGE_EXTENSION
    return name


def rename_for_packing(name: str) -> str:
    """Inverse of rename_for_extraction."""
    if name.lower().endswith(EDITOR_IMAGE_EXTENSION):
        return name[:-len(EDITOR_IMAGE_EXTENSION)] + ARCHIVE_IMAGE_EXTENSION
    return name


@dataclass
class Entry:
    name: str
    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass
class ArchiveHeader:
    entries: List[Entry]
    data_start: int
    total_size: int
    reserved: int = 0


def _encode_name(name: str) -> bytes:
    encoded = name.encode('utf-8')
    if len(encoded) >= NAME_SIZE:
        raise InvalidInput(f"entry name {name!r} is longer than {NAME_SIZE - 1} bytes")
    return encoded


def read_table(reader: OffsetReader) -> ArchiveHeader:
    """Read and validate the header and entry table."""
    try:
        magic, version, count, reserved, data_start, total_size = HEADER.unpack(
            reader.read_exact(HEADER.size))
    except UnexpectedEof as e:
        raise TruncatedFile("archive header is truncated", e.offset) from e
    if magic != MAGIC:
        raise MalformedHeader(f"bad magic {magic!r}, expected {MAGIC!r}", 0)
    if version != VERSION:
        raise MalformedHeader(f"unsupported archive version {version}", 4)

    table_end = HEADER.size + count * ENTRY.size
    if data_start < table_end or data_start > total_size:
        raise MalformedHeader(
            f"data start 0x{data_start:x} does not follow the entry table (ends at 0x{table_end:x})", 0x10)

    entries = []
    seen = set()
    for index in range(count):
        record_offset = reader.offset
        try:
            raw_name, offset, size = ENTRY.unpack(reader.read_exact(ENTRY.size))
        except UnexpectedEof as e:
            raise TruncatedFile(f"entry table is truncated at entry {index}", e.offset) from e
        try:
            name = raw_name.split(b'\x00', 1)[0].decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedRecord(index, record_offset, "entry name is not valid UTF-8") from e
        if not name:
            raise MalformedRecord(index, record_offset, "entry has an empty name")
        if offset < data_start or offset + size > total_size:
            raise MalformedRecord(
                index, record_offset,
                f"entry {name!r} [0x{offset:x}, 0x{offset + size:x}) lies outside the data region")
        if name in seen:
            raise MalformedRecord(index, record_offset, f"entry name {name!r} appears twice")
        seen.add(name)
        entries.append(Entry(name, offset, size))

    previous = None
    for index in sorted(range(count), key=lambda i: (entries[i].offset, entries[i].size)):
        entry = entries[index]
        if previous is not None and entry.offset < previous.end:
            raise MalformedRecord(
                index, HEADER.size + index * ENTRY.size,
                f"entry {entry.name!r} overlaps {previous.name!r}")
        previous = entry

    logger.debug(f"[mvgl] table: {count} entries, data at 0x{data_start:x}, total size 0x{total_size:x}")
    return ArchiveHeader(entries, data_start, total_size, reserved)


def write_table(stream: BinaryIO, names: List[str], sizes: List[int]) -> List[Entry]:
    """Write a header and a table for payloads laid out back to back."""
    data_start = HEADER.size + len(names) * ENTRY.size
    entries = []
    offset = data_start
    for name, size in zip(names, sizes):
        entries.append(Entry(name, offset, size))
        offset += size
    stream.write(HEADER.pack(MAGIC, VERSION, len(entries), 0, data_start, offset))
    for entry in entries:
        stream.write(ENTRY.pack(_encode_name(entry.name), entry.offset, entry.size))
    return entries


class Archive:
    """An archive held in memory: its entry table and a payload per entry.

    Archives parsed from bytes keep the original bytes around, so `rebuild`
    can reproduce them exactly apart from the replaced payloads.
    """

    def __init__(self, entries: List[Entry], payloads: List[bytes],
                 raw: Optional[bytes] = None, header: Optional[ArchiveHeader] = None):
        if len(entries) != len(payloads):
            raise ValueError("every entry needs exactly one payload")
        self.entries = entries
        self.payloads = payloads
        self._raw = raw
        self._header = header

    @classmethod
    def parse(cls, stream: BinaryIO) -> 'Archive':
        raw = stream.read()
        reader = OffsetReader(io.BytesIO(raw))
        header = read_table(reader)
        if len(raw) < header.total_size:
            raise TruncatedFile(
                f"archive declares 0x{header.total_size:x} bytes but only 0x{len(raw):x} are present", len(raw))
        if len(raw) > header.total_size:
            raise MalformedHeader(
                f"archive declares 0x{header.total_size:x} bytes but is 0x{len(raw):x} bytes long", 0x18)
        payloads = [raw[e.offset:e.end] for e in header.entries]
        return cls(list(header.entries), payloads, raw, header)

    @classmethod
    def from_files(cls, files: List[Tuple[str, bytes]]) -> 'Archive':
        entries = []
        offset = HEADER.size + len(files) * ENTRY.size
        for name, data in files:
            entries.append(Entry(name, offset, len(data)))
            offset += len(data)
        return cls(entries, [data for _, data in files])

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Tuple[Entry, bytes]]:
        return iter(zip(self.entries, self.payloads))

    def names(self) -> List[str]:
        return [e.name for e in self.entries]

    def get(self, name: str) -> Optional[bytes]:
        for entry, payload in self:
            if entry.name == name:
                return payload
        return None

    def build(self) -> bytes:
        """Serialize with a fresh table and payloads laid out back to back."""
        out = io.BytesIO()
        write_table(out, self.names(), [len(p) for p in self.payloads])
        for payload in self.payloads:
            out.write(payload)
        return out.getvalue()

    def rebuild(self, replacements: Dict[str, bytes]) -> Tuple[bytes, RelocationMap]:
        """Reproduce the parsed archive with some payloads replaced.

        Everything that is not a replaced payload, including gaps between
        payloads and the reserved header field, is copied verbatim; entry
        offsets and the total size are relocated through the returned map.
        """
        if self._raw is None:
            raise InvalidInput("only a parsed archive can be rebuilt in place")
        unknown = set(replacements) - set(self.names())
        if unknown:
            raise InvalidInput(f"archive has no entries named {sorted(unknown)}")

        raw = self._raw
        header = self._header
        relocation = RelocationMap()
        body = io.BytesIO()
        position = header.data_start
        new_position = header.data_start
        new_offsets = {}
        new_sizes = {}
        for entry, payload in sorted(self, key=lambda item: (item[0].offset, item[0].size)):
            if entry.offset > position:
                gap = raw[position:entry.offset]
                relocation.add(position, len(gap), new_position, len(gap))
                body.write(gap)
                new_position += len(gap)
            data = replacements.get(entry.name, payload)
            relocation.add(entry.offset, entry.size, new_position, len(data))
            body.write(data)
            new_offsets[entry.name] = new_position
            new_sizes[entry.name] = len(data)
            new_position += len(data)
            position = entry.end
        if header.total_size > position:
            tail = raw[position:header.total_size]
            relocation.add(position, len(tail), new_position, len(tail))
            body.write(tail)
            new_position += len(tail)

        out = io.BytesIO()
        out.write(HEADER.pack(MAGIC, VERSION, len(self.entries), header.reserved,
                              header.data_start, new_position))
        for entry in self.entries:
            out.write(ENTRY.pack(_encode_name(entry.name), new_offsets[entry.name], new_sizes[entry.name]))
        out.write(raw[out.tell():header.data_start])
        out.write(body.getvalue())
        logger.debug(f"[mvgl] rebuilt archive: {len(replacements)} entries replaced, size delta {relocation.delta:+d}")
        return out.getvalue(), relocation


def merge_archives(base: Archive, patch: Archive) -> Archive:
    """Overlay `patch` on `base`: same names are replaced in place, new names appended."""
    files = list(zip(base.names(), base.payloads))
    positions = {name: i for i, (name, _) in enumerate(files)}
    for entry, payload in patch:
        if entry.name in positions:
            files[positions[entry.name]] = (entry.name, payload)
        else:
            positions[entry.name] = len(files)
            files.append((entry.name, payload))
    logger.debug(f"[mvgl] merged {len(patch)} patch entries over {len(base)} base entries")
    return Archive.from_files(files)


class Extractor:
    """Writes every entry of an archive as a file under a directory."""

    def __init__(self, rename_images: bool = True, multi_threading: bool = True,
                 name_matcher: Union[str, Pattern, None] = None, overwrite: bool = False,
                 max_workers: Optional[int] = None):
        self.rename_images = rename_images
        self.multi_threading = multi_threading
        self.name_matcher = re.compile(name_matcher) if isinstance(name_matcher, str) else name_matcher
        self.overwrite = overwrite
        self.max_workers = max_workers or os.cpu_count() or 1

    def _destination(self, root: Path, name: str) -> Path:
        if self.rename_images:
            name = rename_for_extraction(name)
        relative = PurePosixPath(name)
        if relative.is_absolute() or '..' in relative.parts:
            raise InvalidInput(f"entry name {name!r} escapes the destination directory")
        return root.joinpath(*relative.parts)

    def _selected(self, entries: List[Entry]) -> List[Entry]:
        if self.name_matcher is None:
            return list(entries)
        return [e for e in entries if self.name_matcher.search(e.name)]

    def extract(self, stream: BinaryIO, destination: Union[str, Path]) -> List[Path]:
        """Extract the archive read from `stream`; returns the written paths."""
        root = Path(destination)
        if root.exists() and not root.is_dir():
            raise InvalidInput(f"{root} is not a directory")
        reader = OffsetReader(stream)
        header = read_table(reader)
        selected = self._selected(header.entries)
        targets = {e.name: self._destination(root, e.name) for e in selected}
        claimed: Dict[str, str] = {}
        for name, path in targets.items():
            key = os.path.normcase(str(path))
            if key in claimed:
                raise InvalidInput(f"entries {claimed[key]!r} and {name!r} would both be written to {path}")
            claimed[key] = name

        if not self.overwrite:
            for path in targets.values():
                if path.exists():
                    raise AlreadyExists(path)

        logger.info(f"[extract] {len(selected)} of {len(header.entries)} entries -> {root}")
        wanted = {e.name for e in selected}
        if self.multi_threading and self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                pending = set()
                for entry, data in self._payloads(reader, header.entries):
                    if entry.name not in wanted:
                        continue
                    if len(pending) >= self.max_workers * 2:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        for future in done:
                            future.result()
                    pending.add(pool.submit(_write_file, targets[entry.name], data))
                for future in pending:
                    future.result()
        else:
            for entry, data in self._payloads(reader, header.entries):
                if entry.name in wanted:
                    _write_file(targets[entry.name], data)
        return list(targets.values())

    @staticmethod
    def _payloads(reader: OffsetReader, entries: List[Entry]) -> Iterator[Tuple[Entry, bytes]]:
        for entry in sorted(entries, key=lambda e: e.offset):
            try:
                reader.skip(entry.offset - reader.offset)
                yield entry, reader.read_exact(entry.size)
            except UnexpectedEof as e:
                raise TruncatedFile(f"payload of {entry.name!r} is truncated", e.offset) from e


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)
    logger.debug(f"[extract] wrote {path} ({len(data)} bytes)")


class Packer:
    """Builds an archive from a directory tree."""

    def __init__(self, rename_images: bool = True):
        self.rename_images = rename_images

    def collect(self, source: Union[str, Path]) -> List[Tuple[str, Path]]:
        """Enumerate the files once, in the order they will be packed."""
        root = Path(source)
        if not root.is_dir():
            raise InvalidInput(f"{root} should be a valid directory")
        files = []
        for path in sorted(p for p in root.rglob('*') if p.is_file()):
            name = path.relative_to(root).as_posix()
            if self.rename_images:
                name = rename_for_packing(name)
            files.append((name, path))
        names = [name for name, _ in files]
        if len(set(names)) != len(names):
            raise InvalidInput(f"{root} holds several files that map to the same entry name")
        return files

    def pack(self, source: Union[str, Path], stream: BinaryIO) -> List[Entry]:
        files = self.collect(source)
        sizes = [path.stat().st_size for _, path in files]
        entries = write_table(stream, [name for name, _ in files], sizes)
        for (name, path), size in zip(files, sizes):
            with open(path, 'rb') as f:
                data = f.read()
            if len(data) != size:
                raise InvalidInput(f"{path} changed size while packing")
            stream.write(data)
        logger.info(f"[pack] {len(entries)} files from {source}")
        return entries
