"""Shared fixtures: a local repository mirror and helpers around it."""

import threading
from pathlib import Path
from typing import Dict

import pytest

from modelcache.cache.layout import RepositoryId
from modelcache.config import CacheConfig
from modelcache.downloads.listener import DownloadListener
from modelcache.downloads.local import LocalTransport
from modelcache.downloads.transport import ByteStream


def make_repo(source_dir: Path, identifier: str, files: Dict[str, bytes]) -> Path:
    """Write a repository into the mirror."""
    repo_dir = Path(source_dir) / identifier
    for rel, content in files.items():
        path = repo_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return repo_dir


class GatedTransport(LocalTransport):
    """LocalTransport that can hold every stream after its first chunk."""

    def __init__(self, source_dir, chunk_size=4, gated=False):
        super().__init__(source_dir, chunk_size=chunk_size)
        self.first_chunk_sent = threading.Event()
        self.release = threading.Event()
        if not gated:
            self.release.set()
        self.snapshot_calls = 0
        self.opened = []

    def fetch_snapshot(self, repo_id, revision):
        self.snapshot_calls += 1
        return super().fetch_snapshot(repo_id, revision)

    def open_stream(self, snapshot, remote_file, offset=0):
        self.opened.append((remote_file.path, offset))
        stream = super().open_stream(snapshot, remote_file, offset)
        return ByteStream(self._gate(stream), offset=stream.offset, on_close=stream.close)

    def _gate(self, stream):
        for i, chunk in enumerate(stream):
            yield chunk
            if i == 0:
                self.first_chunk_sent.set()
                self.release.wait(timeout=10)


class RecordingListener(DownloadListener):
    """Collects (event, repo_id, payload) tuples."""

    def __init__(self):
        self.events = []

    def names(self):
        return [event[0] for event in self.events]

    def on_download_start(self, repo_id):
        self.events.append(("start", repo_id, None))

    def on_download_progress(self, repo_id, info):
        self.events.append(("progress", repo_id, info))

    def on_download_finished(self, repo_id, path):
        self.events.append(("finished", repo_id, path))

    def on_download_failed(self, repo_id, error):
        self.events.append(("failed", repo_id, error))

    def on_download_paused(self, repo_id):
        self.events.append(("paused", repo_id, None))

    def on_download_file_removed(self, repo_id):
        self.events.append(("removed", repo_id, None))

    def on_download_total_size(self, repo_id, total_bytes):
        self.events.append(("total_size", repo_id, total_bytes))

    def on_download_has_update(self, repo_id, info):
        self.events.append(("has_update", repo_id, info))


TINY_FILES = {
    "config.json": b'{"model_type": "tiny"}',
    "weights.bin": b"0123456789abcdef",
}


@pytest.fixture
def source_dir(tmp_path):
    path = tmp_path / "mirror"
    path.mkdir()
    return path


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def tiny_repo(source_dir):
    """A small repository "org/tiny-model" in the mirror."""
    make_repo(source_dir, "org/tiny-model", TINY_FILES)
    return RepositoryId(identifier="org/tiny-model")


@pytest.fixture
def config(cache_dir, source_dir):
    return CacheConfig(
        cache_dir=str(cache_dir),
        backend="local",
        source_dir=str(source_dir),
        chunk_size=4,
        progress_interval=0,
    )


@pytest.fixture
def transport(source_dir):
    return GatedTransport(source_dir)
