"""Exceptions raised by the archive, record and dialogue codecs."""

from typing import Optional


class ThlToolsError(Exception):
    """Base class for every error raised by thl_tools."""


class CodecError(ThlToolsError):
    """An error tied to a byte offset in the file being decoded."""

    def __init__(self, message: str, offset: Optional[int] = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} (at offset 0x{offset:x})"
        super().__init__(message)


class UnexpectedEof(CodecError):
    def __init__(self, offset: int, wanted: int, got: int):
        self.wanted = wanted
        self.got = got
        super().__init__(f"unexpected end of stream: wanted {wanted} bytes, got {got}", offset)


class MalformedHeader(CodecError):
    pass


class MalformedRecord(CodecError):
    def __init__(self, index: int, offset: int, reason: str = "invalid record"):
        self.index = index
        super().__init__(f"record {index}: {reason}", offset)


class TruncatedFile(CodecError):
    pass


class InvalidInput(ThlToolsError):
    pass


class AlreadyExists(ThlToolsError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"{path} already exists")


class UnknownRow(ThlToolsError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"row {key!r} does not exist in the reference file")


class MalformedTable(ThlToolsError):
    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
