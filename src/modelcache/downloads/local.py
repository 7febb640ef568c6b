import hashlib
import os
from pathlib import Path
from typing import BinaryIO, Iterator, Union

from modelcache.cache.layout import RepositoryId
from modelcache.common.logger import create_logger
from modelcache.config import DEFAULT_CHUNK_SIZE
from modelcache.downloads.transport import ByteStream, RemoteFile, RemoteSnapshot, Transport
from modelcache.errors import TransferError

logger = create_logger(__name__)


class LocalTransport(Transport):
    """Transport for repositories mirrored on the local filesystem.

    A repository "org/name" is read from `<source_dir>/org/name`. The
    revision is ignored: the commit hash is derived from the current file
    listing (paths, sizes, mtimes), so any change to the mirror yields a new
    snapshot.
    """

    def __init__(self, source_dir: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.source_dir = Path(source_dir)
        self.chunk_size = chunk_size

    def _repo_dir(self, repo_id: RepositoryId) -> Path:
        return self.source_dir / repo_id.identifier

    def fetch_snapshot(self, repo_id: RepositoryId, revision: str) -> RemoteSnapshot:
        src = self._repo_dir(repo_id)
        if not src.is_dir():
            raise TransferError(f"source path does not exist: {src}")

        files = []
        digest = hashlib.sha1()
        for root, dirs, names in os.walk(src):
            dirs[:] = sorted(d for d in dirs if d != ".git")
            for name in sorted(names):
                path = Path(root) / name
                rel = path.relative_to(src).as_posix()
                stat = path.stat()
                blob_id = hashlib.sha256(
                    f"{rel}:{stat.st_size}:{stat.st_mtime_ns}".encode()
                ).hexdigest()
                digest.update(blob_id.encode())
                files.append(RemoteFile(path=rel, size=stat.st_size, blob_id=blob_id, url=path.as_uri()))

        logger.debug(f"Listed {len(files)} files for {repo_id} from {src}")
        return RemoteSnapshot(repo_id=repo_id, commit_hash=digest.hexdigest(), files=files)

    def open_stream(self, snapshot: RemoteSnapshot, remote_file: RemoteFile, offset: int = 0) -> ByteStream:
        path = self._repo_dir(snapshot.repo_id) / remote_file.path
        try:
            f = open(path, "rb")
            f.seek(offset)
        except OSError as e:
            raise TransferError(f"Cannot read {path}: {e}", remote_file.url) from e
        return ByteStream(self._iter_file(f), offset=offset, on_close=f.close)

    def _iter_file(self, f: BinaryIO) -> Iterator[bytes]:
        while True:
            try:
                chunk = f.read(self.chunk_size)
            except OSError as e:
                raise TransferError(f"Read failed: {e}") from e
            if not chunk:
                break
            yield chunk
