"""Exception hierarchy for cache, install and transfer failures."""

from typing import Any, Dict, List, Optional


class ModelCacheError(Exception):
    """Base exception for model cache errors."""

    def __init__(self, message: str, code: str = "E_MODEL"):
        self.message = message
        self.code = code
        super().__init__(message)


class InstallError(ModelCacheError):
    """Raised when publishing content at a link path fails."""

    def __init__(self, message: str, link_path: str = ""):
        self.link_path = link_path
        super().__init__(message, "E_INSTALL")


class TransferError(ModelCacheError):
    """Raised when the transport cannot deliver a repository's bytes."""

    def __init__(self, message: str, url: str = ""):
        self.url = url
        super().__init__(message, "E_NETWORK")


class TransferCancelled(ModelCacheError):
    """Raised inside a transfer when its cancellation flag was set."""

    def __init__(self, message: str = "Transfer cancelled"):
        super().__init__(message, "E_CANCELLED")


class CacheCorruptError(ModelCacheError):
    """Raised when an installed directory fails validation."""

    def __init__(
        self,
        message: str,
        file_path: str = "",
        missing_files: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.file_path = file_path
        self.missing_files = missing_files or []
        self.details = details or {}
        super().__init__(message, "E_CACHE_CORRUPT")


class DownloadLimitError(ModelCacheError, ValueError):
    """Raised when the concurrent download limit is reached."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Maximum concurrent downloads ({limit}) reached", "E_LIMIT")
