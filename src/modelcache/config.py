"""Runtime configuration.

Settings are read from MODELCACHE_* environment variables so that hosts
embedding the cache do not need to pass flags around. Tests and embedders
can also build a CacheConfig directly.
"""
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from modelcache.common.logger import create_logger

logger = create_logger(__name__)

DEFAULT_BACKEND = "hugging-face"
DEFAULT_REVISION = "main"
DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 30.0
DEFAULT_METADATA_RETRIES = 5
DEFAULT_PROGRESS_INTERVAL = 0.5
DEFAULT_MAX_DOWNLOADS = 3


def default_cache_dir() -> str:
    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg_cache) if xdg_cache else Path.home() / ".cache"
    return str(base / "modelcache")


def _env_number(key: str, default, cast):
    raw = os.environ.get(key)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {key}={raw!r}, using {default}")
        return default


class CacheConfig(BaseModel):
    """Process-level settings for the cache and its downloads.

    Attributes:
        cache_dir: Root directory holding every repository storage folder
        backend: Transport backend name ("hugging-face" or "local")
        source_dir: Directory of repositories served by the local backend
        revision: Remote revision resolved for downloads
        endpoint: Optional Hub endpoint override
        token: Optional Hub access token
        chunk_size: Bytes read per transfer chunk
        request_timeout: Per-request network timeout in seconds
        metadata_retries: Attempts for transient metadata lookup failures
        progress_interval: Minimum seconds between progress notifications
        max_concurrent_downloads: Limit on simultaneously running transfers
    """
    cache_dir: str = Field(default_factory=default_cache_dir)
    backend: str = DEFAULT_BACKEND
    source_dir: Optional[str] = None
    revision: str = DEFAULT_REVISION
    endpoint: Optional[str] = None
    token: Optional[str] = None
    chunk_size: int = Field(DEFAULT_CHUNK_SIZE, gt=0)
    request_timeout: float = Field(DEFAULT_TIMEOUT, gt=0)
    metadata_retries: int = Field(DEFAULT_METADATA_RETRIES, ge=1)
    progress_interval: float = Field(DEFAULT_PROGRESS_INTERVAL, ge=0)
    max_concurrent_downloads: int = Field(DEFAULT_MAX_DOWNLOADS, ge=1)

    @classmethod
    def from_env(cls, **overrides) -> "CacheConfig":
        """Build a config from the environment; keyword overrides win."""
        values = {
            "cache_dir": os.environ.get("MODELCACHE_DIR") or default_cache_dir(),
            "backend": os.environ.get("MODELCACHE_BACKEND") or DEFAULT_BACKEND,
            "source_dir": os.environ.get("MODELCACHE_SOURCE_DIR") or None,
            "revision": os.environ.get("MODELCACHE_REVISION") or DEFAULT_REVISION,
            "endpoint": os.environ.get("MODELCACHE_ENDPOINT") or None,
            "token": os.environ.get("MODELCACHE_TOKEN") or os.environ.get("HF_TOKEN") or None,
            "chunk_size": _env_number("MODELCACHE_CHUNK_SIZE", DEFAULT_CHUNK_SIZE, int),
            "request_timeout": _env_number("MODELCACHE_TIMEOUT", DEFAULT_TIMEOUT, float),
            "metadata_retries": _env_number(
                "MODELCACHE_METADATA_RETRIES", DEFAULT_METADATA_RETRIES, int
            ),
            "progress_interval": _env_number(
                "MODELCACHE_PROGRESS_INTERVAL", DEFAULT_PROGRESS_INTERVAL, float
            ),
            "max_concurrent_downloads": _env_number(
                "MODELCACHE_MAX_DOWNLOADS", DEFAULT_MAX_DOWNLOADS, int
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
