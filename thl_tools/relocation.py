import bisect
from typing import List, Tuple


class RelocationMap:
    """Old offset to new offset mapping built while a new file is emitted.

    Every emitted span is registered with its position in the old and the
    new file, in emission order. Spans must be registered in increasing old
    offset order, which keeps the mapping monotonic.
    """

    def __init__(self):
        self._old_starts: List[int] = []
        self._spans: List[Tuple[int, int, int, int]] = []

    def add(self, old_start: int, old_size: int, new_start: int, new_size: int) -> None:
        if self._spans:
            last_old, last_old_size, last_new, last_new_size = self._spans[-1]
            if old_start < last_old + last_old_size or new_start < last_new + last_new_size:
                raise ValueError(
                    f"span 0x{old_start:x} registered out of order "
                    f"(previous span ends at 0x{last_old + last_old_size:x})"
                )
        self._old_starts.append(old_start)
        self._spans.append((old_start, old_size, new_start, new_size))

    def map(self, old: int) -> int:
        """Return where `old` ended up in the new file.

        Offsets inside a span whose size changed have no position in the new
        file, only its start and end do.
        """
        i = bisect.bisect_right(self._old_starts, old) - 1
        if i < 0:
            raise KeyError(f"offset 0x{old:x} precedes every relocated span")
        old_start, old_size, new_start, new_size = self._spans[i]
        if old == old_start + old_size:
            return new_start + new_size
        if old > old_start + old_size:
            raise KeyError(f"offset 0x{old:x} is not covered by any relocated span")
        if old_size != new_size and old != old_start:
            raise KeyError(f"offset 0x{old:x} lies inside a resized span")
        return new_start + (old - old_start)

    @property
    def delta(self) -> int:
        """Size difference between the new and the old file so far."""
        if not self._spans:
            return 0
        old_start, old_size, new_start, new_size = self._spans[-1]
        return (new_start + new_size) - (old_start + old_size)

    def __len__(self) -> int:
        return len(self._spans)
