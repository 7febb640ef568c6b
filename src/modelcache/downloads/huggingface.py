"""Hugging Face Hub transport.

Metadata comes from the Hub API (file list with sizes and blob ids, pinned
to the resolved commit); bytes are streamed with requests so that a
transfer can resume with a Range header and be interrupted between chunks.
"""
import hashlib
import re
from typing import Iterator, Optional, Tuple

import requests
from huggingface_hub import HfApi, hf_hub_url
from huggingface_hub.utils import (
    HfHubHTTPError,
    RepositoryNotFoundError,
    RevisionNotFoundError,
    build_hf_headers,
)
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from modelcache.cache.layout import RepositoryId, is_safe_relative_path
from modelcache.common.logger import create_logger
from modelcache.config import DEFAULT_CHUNK_SIZE, DEFAULT_METADATA_RETRIES, DEFAULT_TIMEOUT
from modelcache.downloads.transport import ByteStream, RemoteFile, RemoteSnapshot, Transport
from modelcache.errors import TransferError

logger = create_logger(__name__)

# Transient failures worth retrying during metadata lookup
NETWORK_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)

_CONTENT_RANGE_RE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")


def parse_content_range(header_value: str) -> Tuple[int, int, Optional[int]]:
    """Parse a Content-Range header into (start, end, total_or_none).

    Raises:
        ValueError: If the header is malformed.
    """
    match = _CONTENT_RANGE_RE.match(header_value.strip())
    if match is None:
        raise ValueError(f"invalid Content-Range format: {header_value!r}")

    start = int(match.group(1))
    end = int(match.group(2))
    total = None if match.group(3) == "*" else int(match.group(3))
    if end < start:
        raise ValueError(f"invalid Content-Range bounds: {header_value!r}")
    return start, end, total


class HuggingFaceTransport(Transport):
    """Transport for Hugging Face Hub repositories.

    Accepts an optional token and endpoint; metadata lookups retry on
    connection errors and timeouts, byte transfers are never retried here.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        metadata_retries: int = DEFAULT_METADATA_RETRIES,
    ):
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.metadata_retries = metadata_retries
        self.api = HfApi(endpoint=endpoint, token=token)
        self.session = requests.Session()

    def _repo_info(self, repo_id: RepositoryId, revision: str):
        @retry(
            stop=stop_after_attempt(self.metadata_retries),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            retry=retry_if_exception_type(NETWORK_EXCEPTIONS),
            reraise=True,
        )
        def _lookup():
            return self.api.repo_info(
                repo_id=repo_id.identifier,
                repo_type=repo_id.kind.value,
                revision=revision,
                files_metadata=True,
                timeout=self.timeout,
            )

        return _lookup()

    def fetch_snapshot(self, repo_id: RepositoryId, revision: str) -> RemoteSnapshot:
        try:
            info = self._repo_info(repo_id, revision)
        except RepositoryNotFoundError as e:
            raise TransferError(f"Repository not found: {repo_id}") from e
        except RevisionNotFoundError as e:
            raise TransferError(f"Revision not found: {revision}") from e
        except (HfHubHTTPError,) + NETWORK_EXCEPTIONS as e:
            raise TransferError(f"Failed to fetch metadata for {repo_id}: {e}") from e

        commit_hash = info.sha or revision
        files = []
        for sibling in info.siblings or []:
            path = sibling.rfilename
            if not is_safe_relative_path(path):
                logger.warning(f"Skipping unsafe path {path!r} in {repo_id}")
                continue

            lfs = sibling.lfs
            if sibling.size is not None:
                size = sibling.size
            else:
                size = lfs.size if lfs else 0
            blob_id = lfs.sha256 if lfs else sibling.blob_id
            if not blob_id:
                blob_id = hashlib.sha256(f"{commit_hash}:{path}".encode()).hexdigest()

            files.append(RemoteFile(
                path=path,
                size=size,
                blob_id=blob_id,
                url=hf_hub_url(
                    repo_id.identifier,
                    path,
                    repo_type=repo_id.kind.value,
                    revision=commit_hash,
                    endpoint=self.endpoint,
                ),
            ))

        logger.info(
            f"Resolved {repo_id}@{revision} to {commit_hash}: "
            f"{len(files)} files, {sum(f.size for f in files)} bytes"
        )
        return RemoteSnapshot(repo_id=repo_id, commit_hash=commit_hash, files=files)

    def open_stream(self, snapshot: RemoteSnapshot, remote_file: RemoteFile, offset: int = 0) -> ByteStream:
        url = remote_file.url
        headers = build_hf_headers(token=self.token)
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        try:
            response = self.session.get(
                url,
                headers=headers,
                stream=True,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.exceptions.RequestException as e:
            raise TransferError(f"Request failed for {remote_file.path}: {e}", url) from e

        if response.status_code == 416 and offset >= remote_file.size:
            # Partial already holds every byte.
            response.close()
            return ByteStream([], offset=offset)

        if response.status_code not in (200, 206):
            response.close()
            raise TransferError(
                f"HTTP error {response.status_code} for {remote_file.path}", url
            )

        effective_offset = 0
        if response.status_code == 206:
            content_range = response.headers.get("Content-Range", "")
            try:
                start, _, _ = parse_content_range(content_range)
            except ValueError as e:
                response.close()
                raise TransferError(f"Invalid Content-Range header: {content_range!r}", url) from e
            if start != offset:
                response.close()
                raise TransferError(
                    "Server Content-Range start mismatch for resumed download "
                    f"(expected {offset}, got {start})",
                    url,
                )
            effective_offset = offset
        elif offset > 0:
            logger.info(f"Server ignored range request for {remote_file.path}, restarting file")

        return ByteStream(
            self._iter_chunks(response, url),
            offset=effective_offset,
            on_close=response.close,
        )

    def _iter_chunks(self, response: requests.Response, url: str) -> Iterator[bytes]:
        try:
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        except requests.exceptions.RequestException as e:
            raise TransferError(f"Transfer interrupted: {e}", url) from e
