"""Type definitions for download management."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from modelcache.cache.layout import RepositoryId


class DownloadState(str, Enum):
    """Lifecycle state of a repository download."""
    NOT_STARTED = "NOT_STARTED"  # Nothing downloaded, or removed
    DOWNLOADING = "DOWNLOADING"  # Transfer in progress
    PAUSED = "PAUSED"  # Transfer stopped, partial blobs kept for resume
    VERIFYING = "VERIFYING"  # Bytes received, installing and validating
    COMPLETE = "COMPLETE"  # Installed and validated
    FAILED = "FAILED"  # Transfer, install or validation failed


ACTIVE_STATES = (DownloadState.DOWNLOADING, DownloadState.VERIFYING)


class DownloadInfo(BaseModel):
    """Immutable snapshot of a repository's download state.

    Attributes:
        state: Current lifecycle state
        bytes_downloaded: Bytes received so far across all files
        total_bytes: Total size of the snapshot (0 until known)
        speed_bytes_per_sec: Recent transfer rate
        last_error: Cause of the last failure
        current_file: Relative path of the file being transferred
        has_update: Remote holds a newer commit than the installed one
        download_path: Validated path, set once the download is complete
    """
    model_config = ConfigDict(frozen=True)

    state: DownloadState = DownloadState.NOT_STARTED
    bytes_downloaded: int = 0
    total_bytes: int = 0
    speed_bytes_per_sec: float = 0.0
    last_error: Optional[str] = None
    current_file: Optional[str] = None
    has_update: bool = False
    download_path: Optional[str] = None

    @computed_field
    @property
    def progress(self) -> float:
        if self.total_bytes <= 0:
            return 1.0 if self.state == DownloadState.COMPLETE else 0.0
        return min(1.0, self.bytes_downloaded / self.total_bytes)

    def is_complete(self) -> bool:
        return self.state == DownloadState.COMPLETE


class DownloadStatusResponse(BaseModel):
    """Response containing a repository's download status.

    Attributes:
        repository: The repository being queried
        info: Snapshot of its download state
    """
    repository: RepositoryId
    info: DownloadInfo


class DownloadStartResponse(BaseModel):
    """Response when starting a download.

    Attributes:
        repository: The repository being downloaded
        state: State right after the start request
    """
    repository: RepositoryId
    state: DownloadState = Field(..., description="Download state")


class DeleteResponse(BaseModel):
    """Response when removing a repository's downloaded files."""
    status: str = Field("removed", description="Action taken")
    repository: RepositoryId


class UpdateCheckResponse(BaseModel):
    """Response of a remote update check."""
    repository: RepositoryId
    has_update: bool


class CachedRepository(BaseModel):
    """A repository found in the cache root.

    Attributes:
        repository: Repository parsed from its storage folder name
        snapshots: Commit hashes with a snapshot directory
        download_path: Stable path consumers open
        is_valid: Whether download_path passes validation
    """
    repository: RepositoryId
    snapshots: List[str] = Field(default_factory=list)
    download_path: str
    is_valid: bool


class CachedRepositoryListResponse(BaseModel):
    """Response containing the repositories found in the cache."""
    repositories: List[CachedRepository] = Field(..., description="Cached repositories")


class DiskSpaceInfo(BaseModel):
    """Information about disk space usage.

    Attributes:
        cache_size_bytes: Bytes used by cached blobs and copies
        available_bytes: Free space on the cache filesystem
        cache_path: Cache root directory
    """
    cache_size_bytes: int = Field(..., description="Total cache size in bytes")
    available_bytes: int = Field(..., description="Available disk space in bytes")
    cache_path: str = Field(..., description="Path to cache directory")
