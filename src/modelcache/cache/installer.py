"""Atomic publication of downloaded content at a stable path.

A publish either links the link path to the blob or, where the filesystem
refuses symlinks, copies the blob there. The success marker is written only
after that step has fully succeeded, so a marker always implies complete
content and a crash at any earlier point leaves a path that validation
rejects.
"""
import os
import shutil
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Union

from modelcache.common.logger import create_logger
from modelcache.errors import InstallError

logger = create_logger(__name__)

SUCCESS_MARKER = ".success"

_copy_locks: Dict[str, threading.Lock] = {}
_copy_locks_guard = threading.Lock()


class LinkOutcome(str, Enum):
    """Result of probing symlink creation at a link path."""
    CREATED = "created"
    ALREADY_LINKED = "already_linked"
    UNSUPPORTED = "unsupported"


class InstallMethod(str, Enum):
    """How a publish placed content at its link path."""
    LINKED = "linked"
    ALREADY_LINKED = "already_linked"
    COPIED = "copied"


def success_marker_path(link_path: Union[str, Path]) -> Path:
    """Marker location: inside a directory, or `<name>.success` beside a file."""
    link_path = Path(link_path)
    if link_path.is_dir():
        return link_path / SUCCESS_MARKER
    return link_path.with_name(f"{link_path.name}{SUCCESS_MARKER}")


def delete_path(path: Union[str, Path]) -> bool:
    """Remove a symlink, file or directory tree.

    Symlinks are unlinked, never followed. Returns False when nothing existed.
    """
    path = Path(path)
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def copy_tree(src: Union[str, Path], dest: Union[str, Path]) -> int:
    """Recursively copy src into dest, following file symlinks.

    A success marker at the root of src is skipped; markers are only ever
    written by the installer once a copy has completed.
    """
    src, dest = Path(src), Path(dest)
    copied = 0
    for root, dirs, files in os.walk(src):
        rel = os.path.relpath(root, src)
        target_root = dest if rel == os.curdir else dest / rel
        target_root.mkdir(parents=True, exist_ok=True)
        for f in files:
            if rel == os.curdir and f == SUCCESS_MARKER:
                continue
            shutil.copy2(os.path.join(root, f), target_root / f)
            copied += 1
    return copied


def _copy_lock_for(cache_root: Path) -> threading.Lock:
    key = os.path.realpath(cache_root)
    with _copy_locks_guard:
        return _copy_locks.setdefault(key, threading.Lock())


def _points_at(link_path: Path, target: Path) -> bool:
    try:
        existing = os.readlink(link_path)
    except OSError:
        return False
    return os.path.normpath(existing) == os.path.normpath(str(target))


def _clear_marker(link: Path) -> None:
    """Drop the marker of whatever currently sits at link.

    Runs before an existing link is removed or replaced, so a replacement
    that fails part way never leaves a marker behind.
    """
    link.with_name(f"{link.name}{SUCCESS_MARKER}").unlink(missing_ok=True)
    if link.is_dir() and not link.is_symlink():
        (link / SUCCESS_MARKER).unlink(missing_ok=True)


class AtomicInstaller:
    """Publishes blobs at link paths inside one cache root.

    Every installer created for the same (resolved) cache root shares one
    lock for the copy fallback.
    """

    def __init__(self, cache_root: Union[str, Path]):
        self.cache_root = Path(cache_root)
        self._copy_lock = _copy_lock_for(self.cache_root)

    def publish(self, target_blob: Union[str, Path], link_path: Union[str, Path]) -> InstallMethod:
        """Make link_path expose target_blob, then stamp the success marker.

        Raises:
            InstallError: If the blob is missing or copying / marking fails.
        """
        target = Path(target_blob)
        link = Path(link_path)

        if not target.exists():
            raise InstallError(f"Cannot publish missing blob: {target}", str(link))

        try:
            link.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallError(f"Cannot create parent of {link}: {e}", str(link)) from e

        outcome = self._try_symlink(target, link)
        if outcome == LinkOutcome.UNSUPPORTED:
            logger.warning(f"Falling back to hard copy for {link}")
            self._copy_fallback(target, link)
            method = InstallMethod.COPIED
        elif outcome == LinkOutcome.ALREADY_LINKED:
            method = InstallMethod.ALREADY_LINKED
        else:
            method = InstallMethod.LINKED

        self._mark_success(link)
        return method

    def _try_symlink(self, target: Path, link: Path) -> LinkOutcome:
        for attempt in range(2):
            try:
                os.symlink(target, link, target_is_directory=target.is_dir())
                return LinkOutcome.CREATED
            except FileExistsError:
                if attempt > 0:
                    logger.warning(f"Link path {link} reappeared after collision removal")
                    return LinkOutcome.UNSUPPORTED
                if link.is_symlink() and _points_at(link, target):
                    return LinkOutcome.ALREADY_LINKED
                logger.debug(f"Link path already exists: {link}. Replacing it.")
                try:
                    _clear_marker(link)
                    delete_path(link)
                except OSError as e:
                    logger.warning(f"Collision resolution failed for {link}: {e}")
                    return LinkOutcome.UNSUPPORTED
            except (OSError, NotImplementedError) as e:
                logger.warning(f"Direct symlink failed for {link}: {e}")
                return LinkOutcome.UNSUPPORTED
        return LinkOutcome.UNSUPPORTED

    def _copy_fallback(self, target: Path, link: Path) -> None:
        with self._copy_lock:
            try:
                _clear_marker(link)
                delete_path(link)
                if target.is_dir():
                    logger.debug(f"Copying directory recursively from {target} to {link}")
                    copy_tree(target, link)
                else:
                    shutil.copyfile(target, link)
            except OSError as e:
                logger.error(f"Fallback copy failed for {link}: {e}")
                raise InstallError(f"Fallback copy failed for {link}: {e}", str(link)) from e

    def _mark_success(self, link: Path) -> None:
        marker = success_marker_path(link)
        try:
            marker.touch(exist_ok=True)
        except OSError as e:
            raise InstallError(f"Failed to create success marker {marker}: {e}", str(link)) from e
        logger.debug(f"Created success marker: {marker}")
