"""Unit tests for ModelDownloadManager."""

import asyncio
import os
import threading

import pytest
import pytest_asyncio

from conftest import GatedTransport, RecordingListener, make_repo
from modelcache.cache.installer import SUCCESS_MARKER
from modelcache.cache.layout import RepositoryId
from modelcache.cache.manifests import ManifestRegistry
from modelcache.downloads import manager as manager_module
from modelcache.downloads.local import LocalTransport
from modelcache.downloads.manager import (
    ModelDownloadManager,
    get_instance,
    init_instance,
    reset_instance,
)
from modelcache.downloads.types import DownloadState
from modelcache.errors import CacheCorruptError, DownloadLimitError


class TruncatingTransport(LocalTransport):
    """Advertises weights.bin as larger than the bytes it serves."""

    def fetch_snapshot(self, repo_id, revision):
        snapshot = super().fetch_snapshot(repo_id, revision)
        for remote_file in snapshot.files:
            if remote_file.path == "weights.bin":
                remote_file.size += 8
        return snapshot


@pytest.fixture
def listener():
    return RecordingListener()


@pytest_asyncio.fixture
async def manager(config, transport, listener):
    manager = ModelDownloadManager(config, transport=transport)
    manager.add_listener(listener)
    yield manager
    transport.release.set()
    await manager.shutdown()


async def _wait_first_chunk(transport):
    assert await asyncio.to_thread(transport.first_chunk_sent.wait, 5)


@pytest.mark.asyncio
async def test_download_installs_and_notifies(manager, listener, tiny_repo, cache_dir):
    info = await manager.start_download(tiny_repo)
    assert info.state == DownloadState.DOWNLOADING

    info = await manager.wait_for_download(tiny_repo)

    path = cache_dir / "models--org--tiny-model" / "current"
    assert info.state == DownloadState.COMPLETE
    assert info.download_path == str(path)
    assert info.has_update is False
    assert path.is_symlink()
    assert (path / SUCCESS_MARKER).exists()
    assert (path / "weights.bin").read_bytes() == b"0123456789abcdef"
    assert manager.get_downloaded_file(tiny_repo) == path

    layout = manager.layout(tiny_repo)
    commit = layout.read_ref("main")
    assert layout.list_snapshots() == [commit]
    assert (layout.snapshot_dir(commit) / "config.json").is_symlink()

    names = listener.names()
    assert names[0] == "start"
    assert names[1] == "total_size"
    assert "progress" in names
    assert names[-1] == "finished"
    assert listener.events[-1][2] == path


@pytest.mark.asyncio
async def test_concurrent_starts_run_one_transfer(manager, listener, transport, tiny_repo):
    await asyncio.gather(*(manager.start_download(tiny_repo) for _ in range(5)))
    await manager.wait_for_download(tiny_repo)

    assert transport.snapshot_calls == 1
    assert listener.names().count("start") == 1
    assert manager.get_download_info(tiny_repo).state == DownloadState.COMPLETE


@pytest.mark.asyncio
async def test_start_when_complete_is_noop(manager, listener, transport, tiny_repo):
    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)

    info = await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)

    assert info.state == DownloadState.COMPLETE
    assert transport.snapshot_calls == 1
    assert listener.names().count("start") == 1


@pytest.mark.asyncio
async def test_existing_installation_seeds_complete(manager, config, transport, tiny_repo):
    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)

    fresh = ModelDownloadManager(config, transport=transport)
    try:
        info = fresh.get_download_info(tiny_repo)
        assert info.state == DownloadState.COMPLETE
        assert info.download_path == str(manager.layout(tiny_repo).download_path)
    finally:
        await fresh.shutdown()


@pytest.mark.asyncio
async def test_unknown_repository_is_not_started(manager):
    info = manager.get_download_info(RepositoryId(identifier="org/unknown"))
    assert info.state == DownloadState.NOT_STARTED
    assert manager.get_downloaded_file(RepositoryId(identifier="org/unknown")) is None


@pytest.mark.asyncio
async def test_pause_keeps_partial_and_resume_continues(manager, listener, transport, tiny_repo):
    transport.release.clear()
    await manager.start_download(tiny_repo)
    await _wait_first_chunk(transport)

    pause = asyncio.create_task(manager.pause_download(tiny_repo))
    await asyncio.sleep(0.05)
    transport.release.set()
    info = await pause

    assert info.state == DownloadState.PAUSED
    layout = manager.layout(tiny_repo)
    partials = list(layout.blobs_dir.glob("*.incomplete"))
    assert len(partials) == 1
    assert partials[0].stat().st_size == 4
    assert not os.path.lexists(layout.download_path)

    await manager.start_download(tiny_repo)
    info = await manager.wait_for_download(tiny_repo)

    assert info.state == DownloadState.COMPLETE
    assert ("config.json", 4) in transport.opened
    assert (layout.download_path / "weights.bin").read_bytes() == b"0123456789abcdef"
    assert list(layout.blobs_dir.glob("*.incomplete")) == []
    assert listener.names().count("paused") == 1
    assert listener.names().count("start") == 2


@pytest.mark.asyncio
async def test_pause_when_not_downloading(manager, tiny_repo):
    with pytest.raises(ValueError):
        await manager.pause_download(tiny_repo)


@pytest.mark.asyncio
async def test_remove_during_download(manager, listener, transport, tiny_repo):
    transport.release.clear()
    await manager.start_download(tiny_repo)
    await _wait_first_chunk(transport)

    remove = asyncio.create_task(manager.remove_download(tiny_repo))
    await asyncio.sleep(0.05)
    transport.release.set()
    result = await remove
    await manager.dispatcher.drain()

    layout = manager.layout(tiny_repo)
    assert result == "cancelled"
    assert manager.get_download_info(tiny_repo).state == DownloadState.NOT_STARTED
    assert not layout.storage_folder.exists()
    assert not os.path.lexists(layout.download_path)
    assert "removed" in listener.names()
    assert "finished" not in listener.names()
    assert "paused" not in listener.names()


@pytest.mark.asyncio
async def test_remove_complete_download(manager, listener, tiny_repo):
    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)

    result = await manager.remove_download(tiny_repo)
    await manager.dispatcher.drain()

    layout = manager.layout(tiny_repo)
    assert result == "removed"
    assert manager.get_download_info(tiny_repo).state == DownloadState.NOT_STARTED
    assert manager.get_downloaded_file(tiny_repo) is None
    assert not layout.storage_folder.exists()
    assert listener.names()[-1] == "removed"


@pytest.mark.asyncio
async def test_repositories_sharing_a_name_stay_separate(manager, source_dir):
    make_repo(source_dir, "alice/tiny", {"config.json": b"{}", "weights.bin": b"alice weights"})
    make_repo(source_dir, "bob/tiny", {"config.json": b"{}", "weights.bin": b"bob weights"})
    alice = RepositoryId(identifier="alice/tiny")
    bob = RepositoryId(identifier="bob/tiny")

    await manager.start_download(alice)
    await manager.wait_for_download(alice)

    assert manager.get_downloaded_file(bob) is None
    info = await manager.start_download(bob)
    assert info.state == DownloadState.DOWNLOADING
    info = await manager.wait_for_download(bob)

    alice_path = manager.get_downloaded_file(alice)
    bob_path = manager.get_downloaded_file(bob)
    assert info.state == DownloadState.COMPLETE
    assert alice_path != bob_path
    assert (alice_path / "weights.bin").read_bytes() == b"alice weights"
    assert (bob_path / "weights.bin").read_bytes() == b"bob weights"

    assert await manager.remove_download(bob) == "removed"
    assert manager.get_downloaded_file(alice) == alice_path
    assert (alice_path / "weights.bin").read_bytes() == b"alice weights"


@pytest.mark.asyncio
@pytest.mark.parametrize("stop", ["pause_download", "remove_download"])
async def test_stopping_does_not_block_other_repositories(manager, transport, source_dir, tiny_repo, stop):
    make_repo(source_dir, "org/other-model", {"config.json": b"{}"})
    other = RepositoryId(identifier="org/other-model")
    transport.release.clear()
    await manager.start_download(tiny_repo)
    await _wait_first_chunk(transport)

    stopping = asyncio.create_task(getattr(manager, stop)(tiny_repo))
    await asyncio.sleep(0.05)
    assert not stopping.done()

    info = await asyncio.wait_for(manager.start_download(other), timeout=2)
    assert info.state == DownloadState.DOWNLOADING

    transport.release.set()
    await stopping
    info = await manager.wait_for_download(other)
    assert info.state == DownloadState.COMPLETE
    assert manager.get_download_info(tiny_repo).state != DownloadState.DOWNLOADING


@pytest.mark.asyncio
async def test_first_access_validates_off_the_event_loop(manager, tiny_repo, monkeypatch):
    threads = []
    get_downloaded_file = manager.get_downloaded_file

    def recording(repo_id):
        threads.append(threading.get_ident())
        return get_downloaded_file(repo_id)

    monkeypatch.setattr(manager, "get_downloaded_file", recording)
    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)

    assert threads
    assert threading.get_ident() not in threads


@pytest.mark.asyncio
async def test_truncated_file_fails(config, source_dir, listener, tiny_repo):
    manager = ModelDownloadManager(config, transport=TruncatingTransport(source_dir, chunk_size=4))
    manager.add_listener(listener)
    try:
        await manager.start_download(tiny_repo)
        info = await manager.wait_for_download(tiny_repo)
    finally:
        await manager.shutdown()

    layout = manager.layout(tiny_repo)
    assert info.state == DownloadState.FAILED
    assert "Size mismatch" in info.last_error
    assert list(layout.blobs_dir.glob("*.incomplete")) == []
    assert manager.get_downloaded_file(tiny_repo) is None
    assert listener.names()[-1] == "failed"


@pytest.mark.asyncio
async def test_invalid_install_is_deleted(config, source_dir, listener):
    make_repo(source_dir, "org/tiny-broken", {"config.json": b"{}", "weights.bin": b""})
    repo_id = RepositoryId(identifier="org/tiny-broken")
    manifests = ManifestRegistry({"tiny": ["config.json", "weights.bin"]})
    manager = ModelDownloadManager(config, transport=LocalTransport(source_dir), manifests=manifests)
    manager.add_listener(listener)
    try:
        await manager.start_download(repo_id)
        info = await manager.wait_for_download(repo_id)
    finally:
        await manager.shutdown()

    layout = manager.layout(repo_id)
    assert info.state == DownloadState.FAILED
    assert not os.path.lexists(layout.download_path)
    assert not layout.storage_folder.exists()

    name, _, error = listener.events[-1]
    assert name == "failed"
    assert isinstance(error, CacheCorruptError)
    assert error.missing_files == ["weights.bin"]


@pytest.mark.asyncio
async def test_failed_download_can_be_retried(manager, source_dir, tiny_repo):
    (source_dir / "org/tiny-model").rename(source_dir / "moved")
    await manager.start_download(tiny_repo)
    info = await manager.wait_for_download(tiny_repo)
    assert info.state == DownloadState.FAILED

    (source_dir / "moved").rename(source_dir / "org/tiny-model")
    await manager.start_download(tiny_repo)
    info = await manager.wait_for_download(tiny_repo)

    assert info.state == DownloadState.COMPLETE
    assert info.last_error is None


@pytest.mark.asyncio
async def test_ensure_ready(manager, tiny_repo, cache_dir):
    assert await manager.ensure_ready(tiny_repo) is None
    await manager.wait_for_download(tiny_repo)

    assert await manager.ensure_ready(tiny_repo) == cache_dir / "models--org--tiny-model" / "current"


@pytest.mark.asyncio
async def test_ensure_ready_deletes_invalid_leftover(manager, tiny_repo, cache_dir):
    leftover = cache_dir / "models--org--tiny-model" / "current"
    leftover.mkdir(parents=True)
    (leftover / "config.json").write_text("{}")

    assert await manager.ensure_ready(tiny_repo) is None
    info = await manager.wait_for_download(tiny_repo)

    assert info.state == DownloadState.COMPLETE
    assert leftover.is_symlink()
    assert manager.get_downloaded_file(tiny_repo) == leftover


@pytest.mark.asyncio
async def test_ensure_ready_redownloads_broken_install(manager, tiny_repo):
    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)
    (manager.layout(tiny_repo).download_path / SUCCESS_MARKER).unlink()

    assert await manager.ensure_ready(tiny_repo) is None
    info = await manager.wait_for_download(tiny_repo)

    assert info.state == DownloadState.COMPLETE
    assert manager.get_downloaded_file(tiny_repo) is not None


@pytest.mark.asyncio
async def test_check_for_update_and_update(manager, listener, source_dir, tiny_repo):
    assert await manager.check_for_update(tiny_repo) is False

    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)
    layout = manager.layout(tiny_repo)
    old_commit = layout.read_ref("main")

    assert await manager.check_for_update(tiny_repo) is False

    (source_dir / "org/tiny-model/weights.bin").write_bytes(b"new weights, longer")
    assert await manager.check_for_update(tiny_repo) is True
    assert manager.get_download_info(tiny_repo).has_update is True
    assert manager.get_downloaded_file(tiny_repo) is not None

    await manager.update_download(tiny_repo)
    info = await manager.wait_for_download(tiny_repo)

    assert info.state == DownloadState.COMPLETE
    assert info.has_update is False
    assert layout.read_ref("main") != old_commit
    assert (layout.download_path / "weights.bin").read_bytes() == b"new weights, longer"
    assert "has_update" in listener.names()


@pytest.mark.asyncio
async def test_update_without_pending_update(manager, tiny_repo):
    with pytest.raises(ValueError):
        await manager.update_download(tiny_repo)


@pytest.mark.asyncio
async def test_download_limit(config, source_dir):
    make_repo(source_dir, "org/first", {"weights.bin": b"0123456789"})
    make_repo(source_dir, "org/second", {"weights.bin": b"0123456789"})
    transport = GatedTransport(source_dir, gated=True)
    manager = ModelDownloadManager(
        config.model_copy(update={"max_concurrent_downloads": 1}), transport=transport
    )
    try:
        await manager.start_download(RepositoryId(identifier="org/first"))
        with pytest.raises(DownloadLimitError):
            await manager.start_download(RepositoryId(identifier="org/second"))
    finally:
        transport.release.set()
        await manager.wait_for_download(RepositoryId(identifier="org/first"))
        await manager.shutdown()


@pytest.mark.asyncio
async def test_list_downloads_and_disk_space(manager, tiny_repo, cache_dir):
    assert manager.list_downloads() == []

    await manager.start_download(tiny_repo)
    await manager.wait_for_download(tiny_repo)
    (cache_dir / "not-a-repo").mkdir()

    repositories = manager.list_downloads()
    assert len(repositories) == 1
    assert repositories[0].repository == tiny_repo
    assert repositories[0].is_valid
    assert repositories[0].snapshots == [manager.layout(tiny_repo).read_ref("main")]

    space = manager.get_disk_space()
    assert space.cache_path == str(cache_dir)
    assert space.cache_size_bytes >= 16
    assert space.available_bytes > 0


@pytest.mark.asyncio
async def test_shutdown_pauses_live_transfers(config, source_dir, tiny_repo):
    transport = GatedTransport(source_dir, gated=True)
    manager = ModelDownloadManager(config, transport=transport)
    await manager.start_download(tiny_repo)
    await _wait_first_chunk(transport)

    shutdown = asyncio.create_task(manager.shutdown())
    await asyncio.sleep(0.05)
    transport.release.set()
    await shutdown

    assert manager.get_download_info(tiny_repo).state == DownloadState.PAUSED
    with pytest.raises(RuntimeError):
        await manager.start_download(tiny_repo)


@pytest.mark.asyncio
async def test_process_instance_lifecycle(monkeypatch, config, transport, tmp_path):
    monkeypatch.setattr(manager_module, "_instance", None)
    with pytest.raises(RuntimeError):
        get_instance()

    first = init_instance(config, transport=transport)
    assert get_instance() is first
    assert init_instance() is first

    second = await reset_instance(str(tmp_path / "other-cache"))

    assert get_instance() is second
    assert second is not first
    assert second.cache_dir == tmp_path / "other-cache"
    assert second.transport is transport
    with pytest.raises(RuntimeError):
        await first.start_download(RepositoryId(identifier="org/tiny-model"))
    await second.shutdown()
