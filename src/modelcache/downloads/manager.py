import asyncio
import os
import shutil
import threading
import time
from enum import Enum
from pathlib import Path
from typing import (
    Dict,
    Optional,
    List,
)

from modelcache.cache.installer import AtomicInstaller, delete_path
from modelcache.cache.layout import CacheLayout, RepositoryId, parse_folder_name
from modelcache.cache.manifests import ManifestRegistry
from modelcache.cache.validator import find_missing_files, is_valid_model_dir
from modelcache.common.logger import create_logger
from modelcache.config import CacheConfig
from modelcache.downloads.listener import (
    DownloadEvent,
    DownloadEventType,
    DownloadListener,
    EventDispatcher,
    ProgressThrottle,
)
from modelcache.downloads.transport import RemoteFile, RemoteSnapshot, Transport, get_transport
from modelcache.downloads.types import (
    ACTIVE_STATES,
    CachedRepository,
    DiskSpaceInfo,
    DownloadInfo,
    DownloadState,
)
from modelcache.errors import (
    CacheCorruptError,
    DownloadLimitError,
    InstallError,
    ModelCacheError,
    TransferCancelled,
    TransferError,
)

logger = create_logger(__name__)

# Seconds of transfer averaged into one speed sample
SPEED_WINDOW = 1.0


class CancelReason(str, Enum):
    PAUSE = "pause"  # Keep partial blobs for resume
    REMOVE = "remove"  # Storage folder is deleted afterwards


class DownloadTask:
    """Per-repository record: the current DownloadInfo and the live transfer."""

    def __init__(self, repo_id: RepositoryId, progress_interval: float, info: Optional[DownloadInfo] = None):
        self.repo_id = repo_id
        self.info = info or DownloadInfo()
        self.task: Optional[asyncio.Task] = None
        self.cancel_event = threading.Event()
        self.cancel_reason: Optional[CancelReason] = None
        self.throttle = ProgressThrottle(progress_interval)
        self._speed_mark = (time.monotonic(), 0)

    def is_active(self) -> bool:
        return self.task is not None and not self.task.done()

    def begin_run(self) -> threading.Event:
        self.cancel_event = threading.Event()
        self.cancel_reason = None
        self.throttle.reset()
        self._speed_mark = (time.monotonic(), self.info.bytes_downloaded)
        return self.cancel_event

    def cancel(self, reason: CancelReason) -> None:
        self.cancel_reason = reason
        self.cancel_event.set()

    def sample_speed(self, bytes_downloaded: int) -> Optional[float]:
        """Bytes per second since the last sample, or None inside the window."""
        now = time.monotonic()
        mark_time, mark_bytes = self._speed_mark
        elapsed = now - mark_time
        if elapsed < SPEED_WINDOW:
            return None
        self._speed_mark = (now, bytes_downloaded)
        return max(0.0, (bytes_downloaded - mark_bytes) / elapsed)


class ModelDownloadManager:
    """Downloads repositories into the cache and publishes them atomically.

    One record per repository holds an immutable DownloadInfo that is only
    replaced on the event loop thread. Transfers and installs run in worker
    threads; they report progress back through the loop and stop at the next
    chunk once their cancellation flag is set.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        transport: Optional[Transport] = None,
        manifests: Optional[ManifestRegistry] = None,
    ):
        """
        Args:
            config: Cache settings. If None, read from MODELCACHE_* variables.
            transport: Source of repository bytes. If None, built from
                       config.backend.
            manifests: Essential file manifests. If None, the built-in families.
        """
        self.config = config or CacheConfig.from_env()
        self.cache_dir = Path(self.config.cache_dir).expanduser().absolute()
        self.transport = transport or get_transport(self.config.backend, self.config)
        self.manifests = manifests or ManifestRegistry()
        self.installer = AtomicInstaller(self.cache_dir)
        self.dispatcher = EventDispatcher()

        self._download_tasks: Dict[str, DownloadTask] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        logger.info(f"ModelDownloadManager initialized with cache_dir: {self.cache_dir}")

    def layout(self, repo_id: RepositoryId) -> CacheLayout:
        return CacheLayout(self.cache_dir, repo_id)

    def add_listener(self, listener: DownloadListener) -> None:
        self.dispatcher.add_listener(listener)

    def remove_listener(self, listener: DownloadListener) -> None:
        self.dispatcher.remove_listener(listener)

    def _emit(self, event_type: DownloadEventType, repo_id: RepositoryId, **kwargs) -> None:
        self.dispatcher.dispatch(DownloadEvent(type=event_type, repo_id=repo_id, **kwargs))

    def _set_info(self, record: DownloadTask, **changes) -> DownloadInfo:
        record.info = record.info.model_copy(update=changes)
        return record.info

    def _record(self, repo_id: RepositoryId) -> DownloadTask:
        record = self._download_tasks.get(repo_id.folder_name)
        if record is None:
            record = self._store_record(repo_id, self.get_downloaded_file(repo_id))
        return record

    async def _load_record(self, repo_id: RepositoryId) -> DownloadTask:
        """Like _record, but validates an existing installation in a worker thread."""
        record = self._download_tasks.get(repo_id.folder_name)
        if record is None:
            installed = await asyncio.to_thread(self.get_downloaded_file, repo_id)
            record = self._store_record(repo_id, installed)
        return record

    def _store_record(self, repo_id: RepositoryId, installed: Optional[Path]) -> DownloadTask:
        # Another caller may have stored a record while this one was validating.
        key = repo_id.folder_name
        record = self._download_tasks.get(key)
        if record is None:
            record = DownloadTask(repo_id, self.config.progress_interval)
            if installed is not None:
                logger.info(f"Found valid installation of {repo_id} at {installed}")
                record.info = DownloadInfo(state=DownloadState.COMPLETE, download_path=str(installed))
            self._download_tasks[key] = record
        return record

    # Validation

    def manifest_for(self, repo_id: RepositoryId) -> List[str]:
        return self.manifests.for_repository(repo_id)

    @staticmethod
    def is_valid_model_dir(directory, manifest) -> bool:
        return is_valid_model_dir(directory, manifest)

    def get_downloaded_file(self, repo_id: RepositoryId) -> Optional[Path]:
        """Returns the download path if it holds a valid installation."""
        path = self.layout(repo_id).download_path
        if is_valid_model_dir(path, self.manifest_for(repo_id)):
            return path
        return None

    def get_download_info(self, repo_id: RepositoryId) -> DownloadInfo:
        return self._record(repo_id).info

    # Lifecycle

    async def start_download(self, repo_id: RepositoryId) -> DownloadInfo:
        """Starts or resumes a download.

        A repository that is downloading, verifying or complete is left as is.

        Raises:
            DownloadLimitError: If the concurrent download limit is reached.
        """
        record = await self._load_record(repo_id)
        async with self._lock:
            if record.is_active() or record.info.state in ACTIVE_STATES + (DownloadState.COMPLETE,):
                logger.debug(f"Download of {repo_id} not started: {record.info.state.value}")
                return record.info
            return self._launch(record)

    async def update_download(self, repo_id: RepositoryId) -> DownloadInfo:
        """Re-downloads a complete repository that has a newer remote commit.

        The current installation stays usable until the new one replaces it.

        Raises:
            ValueError: If the repository has no pending update.
        """
        record = await self._load_record(repo_id)
        async with self._lock:
            if record.info.state != DownloadState.COMPLETE or not record.info.has_update:
                raise ValueError(f"No pending update for {repo_id}")
            logger.info(f"Updating {repo_id}")
            return self._launch(record)

    def _launch(self, record: DownloadTask) -> DownloadInfo:
        # Must hold self._lock.
        if self._closed:
            raise RuntimeError("ModelDownloadManager is shut down")

        active = sum(1 for r in self._download_tasks.values() if r.is_active())
        if active >= self.config.max_concurrent_downloads:
            raise DownloadLimitError(self.config.max_concurrent_downloads)

        cancel_event = record.begin_run()
        info = self._set_info(
            record,
            state=DownloadState.DOWNLOADING,
            last_error=None,
            speed_bytes_per_sec=0.0,
            current_file=None,
        )
        self._emit(DownloadEventType.STARTED, record.repo_id)
        record.task = asyncio.create_task(self._run_download(record, cancel_event))
        logger.info(f"Started download for {record.repo_id}")
        return info

    async def _run_download(self, record: DownloadTask, cancel_event: threading.Event):
        repo_id = record.repo_id
        layout = self.layout(repo_id)
        loop = asyncio.get_running_loop()
        try:
            snapshot = await asyncio.to_thread(
                self.transport.fetch_snapshot, repo_id, self.config.revision
            )
            _check_cancelled(cancel_event)
            self._set_info(record, total_bytes=snapshot.total_size)
            self._emit(DownloadEventType.TOTAL_SIZE, repo_id, total_bytes=snapshot.total_size)

            await asyncio.to_thread(self._transfer, record, cancel_event, layout, snapshot, loop)

            info = self._set_info(
                record,
                state=DownloadState.VERIFYING,
                bytes_downloaded=snapshot.total_size,
                current_file=None,
            )
            self._emit(DownloadEventType.PROGRESS, repo_id, info=info)
            logger.info(f"Transfer completed for {repo_id}, installing...")

            path = await asyncio.to_thread(self._install, cancel_event, layout, snapshot)
        except TransferCancelled:
            if record.cancel_reason == CancelReason.PAUSE:
                self._set_info(record, state=DownloadState.PAUSED, speed_bytes_per_sec=0.0)
                self._emit(DownloadEventType.PAUSED, repo_id)
                logger.info(f"Paused download for {repo_id}")
            else:
                logger.info(f"Download aborted for {repo_id}")
        except asyncio.CancelledError:
            record.cancel(CancelReason.PAUSE)
            self._set_info(record, state=DownloadState.PAUSED, speed_bytes_per_sec=0.0)
            raise
        except CacheCorruptError as e:
            logger.error(f"Validation failed for {repo_id}: missing {e.missing_files}")
            await asyncio.to_thread(self._discard, layout)
            self._fail(record, e)
        except (TransferError, InstallError) as e:
            logger.error(f"Download of {repo_id} failed: {e}")
            self._fail(record, e)
        except Exception as e:
            logger.error(f"Error downloading {repo_id}: {e}", exc_info=True)
            self._fail(record, ModelCacheError(f"Unexpected error: {e}"))
        else:
            self._set_info(
                record,
                state=DownloadState.COMPLETE,
                download_path=str(path),
                has_update=False,
                speed_bytes_per_sec=0.0,
            )
            self._emit(DownloadEventType.FINISHED, repo_id, path=path)
            logger.info(f"Successfully downloaded and verified {repo_id}")

    def _fail(self, record: DownloadTask, error: ModelCacheError) -> None:
        self._set_info(
            record,
            state=DownloadState.FAILED,
            last_error=str(error),
            speed_bytes_per_sec=0.0,
            current_file=None,
            download_path=None,
        )
        self._emit(DownloadEventType.FAILED, record.repo_id, error=error)

    # Worker thread side

    def _transfer(
        self,
        record: DownloadTask,
        cancel_event: threading.Event,
        layout: CacheLayout,
        snapshot: RemoteSnapshot,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        layout.blobs_dir.mkdir(parents=True, exist_ok=True)
        completed = 0
        for remote_file in snapshot.files:
            _check_cancelled(cancel_event)
            blob = layout.blob_path(remote_file.blob_id)
            if blob.is_file():
                if blob.stat().st_size == remote_file.size:
                    completed += remote_file.size
                    self._post_progress(loop, record, completed, remote_file.path)
                    continue
                logger.warning(f"Discarding blob with unexpected size: {blob}")
                blob.unlink()
            completed += self._fetch_file(
                record, cancel_event, layout, snapshot, remote_file, completed, loop
            )

    def _fetch_file(
        self,
        record: DownloadTask,
        cancel_event: threading.Event,
        layout: CacheLayout,
        snapshot: RemoteSnapshot,
        remote_file: RemoteFile,
        completed: int,
        loop: asyncio.AbstractEventLoop,
    ) -> int:
        partial = layout.incomplete_path(remote_file.blob_id)
        offset = partial.stat().st_size if partial.is_file() else 0
        if offset > remote_file.size:
            partial.unlink()
            offset = 0
        if offset:
            logger.info(f"Resuming {remote_file.path} from byte {offset}")

        with self.transport.open_stream(snapshot, remote_file, offset) as stream:
            if stream.offset not in (0, offset):
                raise TransferError(
                    f"Transport resumed {remote_file.path} at {stream.offset}, expected {offset}",
                    remote_file.url,
                )
            received = stream.offset
            with open(partial, "ab" if received else "wb") as f:
                for chunk in stream:
                    _check_cancelled(cancel_event)
                    f.write(chunk)
                    received += len(chunk)
                    self._post_progress(loop, record, completed + received, remote_file.path)

        if received != remote_file.size:
            partial.unlink(missing_ok=True)
            raise TransferError(
                f"Size mismatch for {remote_file.path}: expected {remote_file.size} bytes, "
                f"received {received}",
                remote_file.url,
            )
        os.replace(partial, layout.blob_path(remote_file.blob_id))
        return received

    def _post_progress(self, loop, record: DownloadTask, bytes_downloaded: int, current_file: str) -> None:
        try:
            loop.call_soon_threadsafe(self._on_progress, record, bytes_downloaded, current_file)
        except RuntimeError:
            logger.debug(f"Event loop closed, dropping progress for {record.repo_id}")

    def _on_progress(self, record: DownloadTask, bytes_downloaded: int, current_file: str) -> None:
        if record.info.state != DownloadState.DOWNLOADING:
            return
        changes = {"bytes_downloaded": bytes_downloaded, "current_file": current_file}
        speed = record.sample_speed(bytes_downloaded)
        if speed is not None:
            changes["speed_bytes_per_sec"] = speed
        info = self._set_info(record, **changes)
        if record.throttle.ready():
            self._emit(DownloadEventType.PROGRESS, record.repo_id, info=info)

    def _install(self, cancel_event: threading.Event, layout: CacheLayout, snapshot: RemoteSnapshot) -> Path:
        commit = snapshot.commit_hash
        for remote_file in snapshot.files:
            _check_cancelled(cancel_event)
            self.installer.publish(
                layout.blob_path(remote_file.blob_id),
                layout.pointer_path(commit, remote_file.path),
            )

        snapshot_dir = layout.snapshot_dir(commit)
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        layout.write_ref(self.config.revision, commit)

        _check_cancelled(cancel_event)
        download_path = layout.download_path
        method = self.installer.publish(snapshot_dir, download_path)
        logger.info(f"Published {layout.repo_id}@{commit} at {download_path} ({method.value})")

        manifest = self.manifest_for(layout.repo_id)
        if not is_valid_model_dir(download_path, manifest):
            missing = find_missing_files(download_path, manifest)
            raise CacheCorruptError(
                f"Installed directory failed validation: {download_path}",
                file_path=str(download_path),
                missing_files=missing,
                details={"commit": commit},
            )
        return download_path

    def _discard(self, layout: CacheLayout) -> None:
        for path in (layout.download_path, layout.storage_folder):
            if delete_path(path):
                logger.info(f"Deleted {path}")

    # Pause / remove

    async def pause_download(self, repo_id: RepositoryId) -> DownloadInfo:
        """Stops a running transfer, keeping partial blobs for resume.

        Raises:
            ValueError: If the repository is not downloading.
        """
        record = await self._load_record(repo_id)
        async with self._lock:
            if record.info.state != DownloadState.DOWNLOADING or not record.is_active():
                raise ValueError(f"{repo_id} is not downloading (state: {record.info.state.value})")
            record.cancel(CancelReason.PAUSE)
            task = record.task

        # Awaited outside the lock: the transfer only stops at its next chunk.
        await _join(task)
        return record.info

    async def remove_download(self, repo_id: RepositoryId) -> str:
        """Aborts any transfer and deletes everything cached for the repository.

        Returns:
            "cancelled" if a transfer was aborted, "removed" otherwise.
        """
        record = await self._load_record(repo_id)
        was_downloading = False
        while True:
            async with self._lock:
                if not record.is_active():
                    await asyncio.to_thread(self._discard, self.layout(repo_id))
                    record.info = DownloadInfo()
                    self._emit(DownloadEventType.REMOVED, repo_id)
                    break
                logger.info(f"Cancelling active download for {repo_id}")
                record.cancel(CancelReason.REMOVE)
                task = record.task
            was_downloading = True
            await _join(task)

        return "cancelled" if was_downloading else "removed"

    # Higher level operations

    async def ensure_ready(self, repo_id: RepositoryId) -> Optional[Path]:
        """Returns the installed path, or starts a download and returns None.

        An invalid leftover at the download path is deleted first. Partial
        blobs are kept so the download resumes.
        """
        path = await asyncio.to_thread(self.get_downloaded_file, repo_id)
        if path is not None:
            return path

        record = await self._load_record(repo_id)
        async with self._lock:
            if record.is_active():
                return None
            if record.info.state == DownloadState.COMPLETE:
                logger.warning(f"Installation of {repo_id} is no longer valid")
                record.info = DownloadInfo()

            download_path = self.layout(repo_id).download_path
            if os.path.lexists(download_path):
                logger.warning(f"Deleting invalid installation at {download_path}")
                await asyncio.to_thread(delete_path, download_path)

            self._launch(record)
        return None

    async def wait_for_download(self, repo_id: RepositoryId) -> DownloadInfo:
        """Waits for the live transfer to finish and its events to be delivered."""
        record = await self._load_record(repo_id)
        if record.task is not None and not record.task.done():
            await record.task
        await self.dispatcher.drain()
        return record.info

    async def check_for_update(self, repo_id: RepositoryId) -> bool:
        """Compares the installed commit with the remote one.

        Raises:
            TransferError: If the remote cannot be reached.
        """
        layout = self.layout(repo_id)
        installed = await asyncio.to_thread(layout.read_ref, self.config.revision)
        if installed is None:
            logger.debug(f"No installed revision for {repo_id}")
            return False

        snapshot = await asyncio.to_thread(self.transport.fetch_snapshot, repo_id, self.config.revision)
        has_update = snapshot.commit_hash != installed

        record = await self._load_record(repo_id)
        info = self._set_info(record, has_update=has_update)
        if has_update:
            logger.info(f"Update available for {repo_id}: {installed} -> {snapshot.commit_hash}")
            self._emit(DownloadEventType.HAS_UPDATE, repo_id, info=info)
        return has_update

    def list_downloads(self) -> List[CachedRepository]:
        """Lists every repository with a storage folder in the cache root."""
        repositories = []
        try:
            if not self.cache_dir.is_dir():
                return []
            for entry in sorted(self.cache_dir.iterdir()):
                if not entry.is_dir() or entry.is_symlink():
                    continue
                repo_id = parse_folder_name(entry.name)
                if repo_id is None:
                    continue
                layout = self.layout(repo_id)
                repositories.append(CachedRepository(
                    repository=repo_id,
                    snapshots=layout.list_snapshots(),
                    download_path=str(layout.download_path),
                    is_valid=self.get_downloaded_file(repo_id) is not None,
                ))
        except OSError as e:
            logger.error(f"Error listing downloads: {e}", exc_info=True)
            return []

        valid_count = sum(1 for r in repositories if r.is_valid)
        logger.info(f"Found {len(repositories)} repositories in cache: {valid_count} valid")
        return repositories

    def get_disk_space(self) -> DiskSpaceInfo:
        """Gets disk space information for the cache."""
        cache_size = 0
        for root, _, files in os.walk(self.cache_dir):
            for name in files:
                path = os.path.join(root, name)
                if not os.path.islink(path):
                    try:
                        cache_size += os.path.getsize(path)
                    except OSError:
                        continue

        probe = self.cache_dir
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        try:
            available = shutil.disk_usage(probe).free
        except OSError as e:
            logger.error(f"Error getting disk space: {e}", exc_info=True)
            available = 0

        return DiskSpaceInfo(
            cache_size_bytes=cache_size,
            available_bytes=available,
            cache_path=str(self.cache_dir),
        )

    async def shutdown(self) -> None:
        """Pauses live transfers and stops event delivery."""
        async with self._lock:
            self._closed = True
            live = [r for r in self._download_tasks.values() if r.is_active()]
            for record in live:
                record.cancel(CancelReason.PAUSE)
            for record in live:
                await _join(record.task)

        await self.dispatcher.drain()
        self.dispatcher.shutdown()
        logger.info(f"ModelDownloadManager shut down ({len(live)} transfers paused)")


def _check_cancelled(cancel_event: threading.Event) -> None:
    if cancel_event.is_set():
        raise TransferCancelled()


async def _join(task: asyncio.Task) -> None:
    try:
        await task
    except asyncio.CancelledError:
        pass


_instance: Optional[ModelDownloadManager] = None


def init_instance(config: Optional[CacheConfig] = None, **kwargs) -> ModelDownloadManager:
    """Create the process-wide manager if there is none yet, and return it."""
    global _instance
    if _instance is None:
        _instance = ModelDownloadManager(config, **kwargs)
    return _instance


def get_instance() -> ModelDownloadManager:
    if _instance is None:
        raise RuntimeError("Download manager not initialized, call init_instance() first")
    return _instance


async def reset_instance(cache_dir: Optional[str] = None) -> ModelDownloadManager:
    """Tear down the process-wide manager and start over on cache_dir.

    All in-memory records and listeners are discarded; paths are derived from
    the new root. The transport and manifests carry over.
    """
    global _instance
    previous = _instance
    _instance = None
    if previous is None:
        return init_instance(CacheConfig.from_env(cache_dir=cache_dir))

    await previous.shutdown()
    config = previous.config
    if cache_dir is not None:
        config = config.model_copy(update={"cache_dir": cache_dir})
    return init_instance(config, transport=previous.transport, manifests=previous.manifests)
