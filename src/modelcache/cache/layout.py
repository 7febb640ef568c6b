"""Path resolution for cached repositories.

Storage layout under the cache root:

    <root>/models--org--name/
        blobs/<blob_id>                 downloaded content, one file per blob
        blobs/<blob_id>.incomplete      partial transfer, resumed by offset
        refs/<revision>                 commit hash the revision resolved to
        snapshots/<commit>/<rel_path>   pointer paths (symlinks or copies)
        current                         stable download path for consumers

Everything here is string/path construction only; nothing touches the disk
except the small ref helpers on CacheLayout.
"""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

FOLDER_SEPARATOR = "--"
SNAPSHOTS_DIR = "snapshots"
BLOBS_DIR = "blobs"
REFS_DIR = "refs"
CURRENT_LINK = "current"
INCOMPLETE_SUFFIX = ".incomplete"


class RepoKind(str, Enum):
    """Kind of remote repository."""
    MODEL = "model"
    DATASET = "dataset"
    SPACE = "space"


def split_identifier(identifier: str) -> List[str]:
    """Split a repository identifier on '/', dropping empty segments."""
    return [part for part in identifier.split("/") if part]


def repo_folder_name(identifier: Optional[str], kind: Optional[Union[RepoKind, str]]) -> str:
    """Canonical storage folder name, e.g. ("org/name", "model") -> "models--org--name".

    Returns "" when either input is missing or the identifier has no
    segments, so callers probing before validation never crash.
    """
    if not identifier or not kind:
        return ""
    kind_value = kind.value if isinstance(kind, RepoKind) else str(kind)
    segments = split_identifier(identifier)
    if not segments:
        return ""
    return FOLDER_SEPARATOR.join([f"{kind_value}s"] + segments)


def get_pointer_path_parent(storage_folder: Union[str, Path], commit_hash: str) -> Path:
    return Path(storage_folder) / SNAPSHOTS_DIR / commit_hash


def get_pointer_path(storage_folder: Union[str, Path], commit_hash: str, relative_path: str) -> Path:
    return get_pointer_path_parent(storage_folder, commit_hash) / relative_path


def is_safe_relative_path(relative_path: str) -> bool:
    """True when relative_path stays inside the directory it is joined to."""
    if not relative_path:
        return False
    pure = PurePosixPath(relative_path)
    if pure.is_absolute() or "\\" in relative_path:
        return False
    return all(part not in ("..", "") for part in pure.parts)


class RepositoryId(BaseModel):
    """Identifies a remote repository.

    Attributes:
        identifier: Repository identifier (e.g., "Qwen/Qwen2.5-Omni-3B"); empty
            segments are dropped so "org//name" equals "org/name"
        kind: Repository kind, defaults to model
    """
    model_config = ConfigDict(frozen=True)

    identifier: str = Field(..., description="Repository identifier, e.g. org/name")
    kind: RepoKind = Field(RepoKind.MODEL, description="Repository kind")

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        segments = split_identifier(value)
        if not segments:
            raise ValueError("identifier must contain at least one non-empty segment")
        for segment in segments:
            if segment in (".", ".."):
                raise ValueError(f"identifier segment {segment!r} is not allowed")
            if "\\" in segment or FOLDER_SEPARATOR in segment:
                raise ValueError(
                    f"identifier segment {segment!r} may not contain '\\' or '{FOLDER_SEPARATOR}'"
                )
        return "/".join(segments)

    @property
    def segments(self) -> List[str]:
        return self.identifier.split("/")

    @property
    def name(self) -> str:
        return self.segments[-1]

    @property
    def folder_name(self) -> str:
        return repo_folder_name(self.identifier, self.kind)

    def __str__(self) -> str:
        if self.kind == RepoKind.MODEL:
            return self.identifier
        return f"{self.kind.value}s/{self.identifier}"


def parse_folder_name(folder_name: str) -> Optional[RepositoryId]:
    """Inverse of repo_folder_name; None for names that are not storage folders."""
    parts = folder_name.split(FOLDER_SEPARATOR)
    if len(parts) < 2 or not parts[0].endswith("s"):
        return None
    try:
        kind = RepoKind(parts[0][:-1])
        return RepositoryId(identifier="/".join(parts[1:]), kind=kind)
    except (ValueError, ValidationError):
        return None


@dataclass(frozen=True)
class CacheLayout:
    """All on-disk paths of one repository under a cache root."""
    cache_dir: Path
    repo_id: RepositoryId

    @property
    def storage_folder(self) -> Path:
        return Path(self.cache_dir) / self.repo_id.folder_name

    @property
    def blobs_dir(self) -> Path:
        return self.storage_folder / BLOBS_DIR

    @property
    def refs_dir(self) -> Path:
        return self.storage_folder / REFS_DIR

    @property
    def snapshots_dir(self) -> Path:
        return self.storage_folder / SNAPSHOTS_DIR

    @property
    def download_path(self) -> Path:
        return self.storage_folder / CURRENT_LINK

    def snapshot_dir(self, commit_hash: str) -> Path:
        return get_pointer_path_parent(self.storage_folder, commit_hash)

    def pointer_path(self, commit_hash: str, relative_path: str) -> Path:
        return get_pointer_path(self.storage_folder, commit_hash, relative_path)

    def blob_path(self, blob_id: str) -> Path:
        return self.blobs_dir / blob_id

    def incomplete_path(self, blob_id: str) -> Path:
        return self.blobs_dir / f"{blob_id}{INCOMPLETE_SUFFIX}"

    def ref_path(self, revision: str) -> Path:
        return self.refs_dir / revision

    def read_ref(self, revision: str) -> Optional[str]:
        path = self.ref_path(revision)
        if not path.is_file():
            return None
        commit_hash = path.read_text().strip()
        return commit_hash or None

    def write_ref(self, revision: str, commit_hash: str) -> None:
        path = self.ref_path(revision)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(commit_hash)

    def list_snapshots(self) -> List[str]:
        if not self.snapshots_dir.is_dir():
            return []
        return sorted(p.name for p in self.snapshots_dir.iterdir() if p.is_dir())
