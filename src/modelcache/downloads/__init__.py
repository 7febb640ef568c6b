"""Download orchestration for cached repositories."""

from modelcache.downloads.listener import DownloadListener, LoggingListener
from modelcache.downloads.manager import (
    ModelDownloadManager,
    get_instance,
    init_instance,
    reset_instance,
)
from modelcache.downloads.types import DownloadInfo, DownloadState

__all__ = [
    "DownloadListener",
    "LoggingListener",
    "ModelDownloadManager",
    "get_instance",
    "init_instance",
    "reset_instance",
    "DownloadInfo",
    "DownloadState",
]
