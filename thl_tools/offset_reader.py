import io
import struct
from typing import BinaryIO, Optional

from .errors import UnexpectedEof


class OffsetReader:
    """Binary stream wrapper that counts how many bytes were consumed.

    The counter is what every codec error reports, so that a failure can be
    matched with a hex offset in the original file.
    """

    def __init__(self, stream: BinaryIO, start: int = 0):
        self._stream = stream
        self._offset = start

    @property
    def offset(self) -> int:
        """Number of bytes consumed so far."""
        return self._offset

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes; a short read only counts what was obtained."""
        data = self._stream.read(size)
        self._offset += len(data)
        return data

    def read_exact(self, size: int) -> bytes:
        """Read exactly `size` bytes or raise UnexpectedEof."""
        start = self._offset
        remaining = self._remaining()
        try:
            data = self.read(size if remaining is None else min(size, remaining))
        except (OverflowError, MemoryError):
            raise UnexpectedEof(start, size, 0) from None
        if len(data) != size:
            raise UnexpectedEof(start, size, len(data))
        return data

    def _remaining(self) -> Optional[int]:
        """Bytes left in a seekable stream, None when the stream cannot tell."""
        if not self._stream.seekable():
            return None
        position = self._stream.tell()
        end = self._stream.seek(0, io.SEEK_END)
        self._stream.seek(position)
        return max(end - position, 0)

    def skip(self, size: int) -> None:
        self.read_exact(size)

    def read_u32(self) -> int:
        return struct.unpack('<I', self.read_exact(4))[0]

    def read_u64(self) -> int:
        return struct.unpack('<Q', self.read_exact(8))[0]

    def align(self, alignment: int) -> bytes:
        """Consume padding up to the next multiple of `alignment`."""
        padding = (alignment - self._offset % alignment) % alignment
        return self.read_exact(padding)
