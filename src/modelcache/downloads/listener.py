"""Download lifecycle notifications.

The orchestrator publishes typed events to an EventDispatcher, which hands
them to registered listeners on its own worker thread. Listener code may be
slow or raise; neither blocks the event loop nor reaches the orchestrator.
"""
import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from modelcache.cache.layout import RepositoryId
from modelcache.common.logger import create_logger
from modelcache.downloads.types import DownloadInfo
from modelcache.errors import ModelCacheError

logger = create_logger(__name__)


class DownloadListener:
    """Receives download lifecycle callbacks.

    Every method is optional; subclasses override the ones they need.
    Callbacks run on the dispatcher thread, never on the event loop.
    """

    def on_download_start(self, repo_id: RepositoryId) -> None:
        pass

    def on_download_progress(self, repo_id: RepositoryId, info: DownloadInfo) -> None:
        pass

    def on_download_finished(self, repo_id: RepositoryId, path: Path) -> None:
        pass

    def on_download_failed(self, repo_id: RepositoryId, error: ModelCacheError) -> None:
        pass

    def on_download_paused(self, repo_id: RepositoryId) -> None:
        pass

    def on_download_file_removed(self, repo_id: RepositoryId) -> None:
        pass

    def on_download_total_size(self, repo_id: RepositoryId, total_bytes: int) -> None:
        pass

    def on_download_has_update(self, repo_id: RepositoryId, info: DownloadInfo) -> None:
        pass


class DownloadEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    FINISHED = "finished"
    FAILED = "failed"
    PAUSED = "paused"
    REMOVED = "removed"
    TOTAL_SIZE = "total_size"
    HAS_UPDATE = "has_update"


@dataclass(frozen=True)
class DownloadEvent:
    """One notification for one repository."""
    type: DownloadEventType
    repo_id: RepositoryId
    info: Optional[DownloadInfo] = None
    path: Optional[Path] = None
    error: Optional[ModelCacheError] = None
    total_bytes: int = 0

    def deliver(self, listener: DownloadListener) -> None:
        if self.type == DownloadEventType.STARTED:
            listener.on_download_start(self.repo_id)
        elif self.type == DownloadEventType.PROGRESS:
            listener.on_download_progress(self.repo_id, self.info)
        elif self.type == DownloadEventType.FINISHED:
            listener.on_download_finished(self.repo_id, self.path)
        elif self.type == DownloadEventType.FAILED:
            listener.on_download_failed(self.repo_id, self.error)
        elif self.type == DownloadEventType.PAUSED:
            listener.on_download_paused(self.repo_id)
        elif self.type == DownloadEventType.REMOVED:
            listener.on_download_file_removed(self.repo_id)
        elif self.type == DownloadEventType.TOTAL_SIZE:
            listener.on_download_total_size(self.repo_id, self.total_bytes)
        elif self.type == DownloadEventType.HAS_UPDATE:
            listener.on_download_has_update(self.repo_id, self.info)


class EventDispatcher:
    """Delivers events to listeners in registration order.

    A single worker thread preserves the order in which events were
    dispatched. The listener list is copied at dispatch time, so a listener
    added later never sees earlier events.
    """

    def __init__(self):
        self._listeners: List[DownloadListener] = []
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="modelcache-events")
        self._closed = False

    def add_listener(self, listener: DownloadListener) -> None:
        with self._lock:
            if not any(existing is listener for existing in self._listeners):
                self._listeners.append(listener)

    def remove_listener(self, listener: DownloadListener) -> None:
        with self._lock:
            self._listeners = [existing for existing in self._listeners if existing is not listener]

    @property
    def listeners(self) -> List[DownloadListener]:
        with self._lock:
            return list(self._listeners)

    def dispatch(self, event: DownloadEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping {event.type.value} event for {event.repo_id}: dispatcher closed")
            return
        self._executor.submit(self._deliver, event, self.listeners)

    def _deliver(self, event: DownloadEvent, listeners: List[DownloadListener]) -> None:
        for listener in listeners:
            try:
                event.deliver(listener)
            except Exception as e:
                logger.error(
                    f"Listener {type(listener).__name__} failed on {event.type.value} "
                    f"for {event.repo_id}: {e}",
                    exc_info=True,
                )

    async def drain(self) -> None:
        """Wait until every event dispatched so far has been delivered."""
        if self._closed:
            return
        await asyncio.wrap_future(self._executor.submit(lambda: None))

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait)


class ProgressThrottle:
    """Lets a progress notification through at most once per interval."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self, force: bool = False) -> bool:
        now = self._clock()
        if force or self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False

    def reset(self) -> None:
        self._last = None


class LoggingListener(DownloadListener):
    """Logs lifecycle events through the module logger."""

    def on_download_start(self, repo_id):
        logger.info(f"Download started: {repo_id}")

    def on_download_progress(self, repo_id, info):
        logger.info(
            f"Downloading {repo_id}: {info.bytes_downloaded}/{info.total_bytes} bytes "
            f"({info.progress:.1%}, {info.speed_bytes_per_sec / (1024 * 1024):.2f} MB/s)"
        )

    def on_download_finished(self, repo_id, path):
        logger.info(f"Download finished: {repo_id} -> {path}")

    def on_download_failed(self, repo_id, error):
        logger.error(f"Download failed: {repo_id}: {error}")

    def on_download_paused(self, repo_id):
        logger.info(f"Download paused: {repo_id}")

    def on_download_file_removed(self, repo_id):
        logger.info(f"Download removed: {repo_id}")

    def on_download_total_size(self, repo_id, total_bytes):
        logger.info(f"Total size for {repo_id}: {total_bytes} bytes")

    def on_download_has_update(self, repo_id, info):
        logger.info(f"Update available for {repo_id}")
