import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Union

logger = logging.getLogger(__name__)


@contextmanager
def atomic_write(path: Union[str, Path]) -> Iterator[BinaryIO]:
    """Write to a temporary file next to `path` and move it into place on success.

    When the block raises, the temporary file is removed and whatever was at
    `path` before is left untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, 'wb') as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        logger.debug(f"[fileio] moved {tmp_name} -> {path}")
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
