"""Transport interface for fetching repository metadata and bytes.

A transport resolves a repository revision to a commit and its file list,
and streams one file's bytes from a given offset. Backend implementations
live in their own modules and are selected by name through get_transport();
imports are lazy so a backend's dependencies are only loaded when used.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional

from modelcache.cache.layout import RepositoryId
from modelcache.config import CacheConfig


@dataclass
class RemoteFile:
    """One file of a remote snapshot."""
    path: str
    size: int
    blob_id: str
    url: str = ""


@dataclass
class RemoteSnapshot:
    """A repository revision resolved to a commit."""
    repo_id: RepositoryId
    commit_hash: str
    files: List[RemoteFile] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


class ByteStream:
    """Chunks of one remote file, starting at `offset`.

    `offset` is where the transport actually started. It can be lower than
    the requested offset when the remote ignored the range request, in which
    case the consumer must restart the file from there.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        offset: int = 0,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self._chunks = chunks
        self.offset = offset
        self._on_close = on_close

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._chunks)

    def close(self) -> None:
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()
        if self._on_close is not None:
            self._on_close()
            self._on_close = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class Transport(ABC):
    """Abstract source of repository content."""

    @abstractmethod
    def fetch_snapshot(self, repo_id: RepositoryId, revision: str) -> RemoteSnapshot:
        """Resolve revision to a commit and list its files.

        Raises:
            TransferError: If the repository or revision cannot be resolved.
        """
        raise NotImplementedError()

    @abstractmethod
    def open_stream(self, snapshot: RemoteSnapshot, remote_file: RemoteFile, offset: int = 0) -> ByteStream:
        """Open remote_file for reading from offset.

        Raises:
            TransferError: If the transfer cannot be started or breaks mid-way.
        """
        raise NotImplementedError()


def get_transport(backend: str, config: CacheConfig) -> Transport:
    """Return a transport implementation for the given backend name."""
    if not backend:
        raise RuntimeError("backend must be provided to get_transport")

    backend = backend.lower()
    if backend == "hugging-face":
        from modelcache.downloads.huggingface import HuggingFaceTransport

        return HuggingFaceTransport(
            endpoint=config.endpoint,
            token=config.token,
            timeout=config.request_timeout,
            chunk_size=config.chunk_size,
            metadata_retries=config.metadata_retries,
        )
    if backend == "local":
        from modelcache.downloads.local import LocalTransport

        if not config.source_dir:
            raise RuntimeError("the local backend requires source_dir (MODELCACHE_SOURCE_DIR)")
        return LocalTransport(config.source_dir, chunk_size=config.chunk_size)

    raise RuntimeError(f"unsupported backend: {backend}")
