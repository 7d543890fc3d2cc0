import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .errors import CodecError, InvalidInput
from .extract_dialogues import is_mbe
from .mbe import MBEFile
from .offset_reader import OffsetReader

logger = logging.getLogger(__name__)


@dataclass
class CheckFailure:
    path: Path
    consumed: int  # bytes read before the failure
    error: Union[CodecError, OSError]

    @property
    def offset(self) -> int:
        offset = getattr(self.error, 'offset', None)
        return offset if offset is not None else self.consumed

    def __str__(self) -> str:
        return f"failed to read file {self.path} after reading 0x{self.consumed:x} bytes: {self.error}"


def iter_mbes(root: Union[str, Path]) -> Iterator[Path]:
    for path in sorted(Path(root).rglob('*')):
        if path.is_file() and is_mbe(path.name):
            yield path


def check_mbe(path: Union[str, Path]) -> Optional[CheckFailure]:
    """Fully parse one file; return its first failure, if any."""
    reader = None
    try:
        with open(path, 'rb') as f:
            reader = OffsetReader(f)
            MBEFile.parse(reader).validate()
    except (CodecError, OSError) as e:
        return CheckFailure(Path(path), reader.offset if reader is not None else 0, e)
    return None


def check_mbes(root: Union[str, Path]) -> List[CheckFailure]:
    """Check every MBE file under `root`, carrying on past broken ones."""
    root = Path(root)
    if not root.is_dir():
        raise InvalidInput(f"{root} should be a valid directory")
    failures = []
    checked = 0
    for path in iter_mbes(root):
        checked += 1
        failure = check_mbe(path)
        if failure is None:
            logger.debug(f"[check] {path}: ok")
            continue
        logger.warning(str(failure))
        failures.append(failure)
    logger.info(f"[check] {checked} files checked, {len(failures)} failed")
    return failures
