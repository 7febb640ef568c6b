"""Completeness checks for installed model directories."""
from pathlib import Path
from typing import List, Sequence, Union

from modelcache.cache.installer import SUCCESS_MARKER
from modelcache.common.logger import create_logger

logger = create_logger(__name__)


def find_missing_files(directory: Union[str, Path], manifest: Sequence[str]) -> List[str]:
    """Manifest entries that are absent or empty under directory."""
    directory = Path(directory)
    missing = []
    for file_name in manifest:
        path = directory / file_name
        if not path.is_file() or path.stat().st_size == 0:
            missing.append(file_name)
    return missing


def is_valid_model_dir(directory: Union[str, Path], manifest: Sequence[str]) -> bool:
    """Checks that an installed directory can be used without re-downloading.

    The directory must exist, carry the success marker, and hold every
    manifest file with non-zero length. Checks stop at the first failure.
    A directory without the marker is rejected whatever it contains.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return False

    if not (directory / SUCCESS_MARKER).exists():
        logger.warning(f"Model directory {SUCCESS_MARKER} marker missing: {directory}")
        return False

    for file_name in manifest:
        path = directory / file_name
        if not path.is_file() or path.stat().st_size == 0:
            logger.warning(f"Missing or empty essential file: {file_name}")
            return False
    return True
