from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from modelcache.common.logger import create_logger
from modelcache.config import CacheConfig
from modelcache.downloads.listener import LoggingListener
from modelcache.downloads.manager import ModelDownloadManager
from modelcache.downloads.routes import router
from modelcache.downloads.transport import Transport

logger = create_logger(__name__)

API_PREFIX = "/api/v1/downloads"


def create_app(
    config: Optional[CacheConfig] = None,
    transport: Optional[Transport] = None,
) -> FastAPI:
    """Build the HTTP app; the download manager lives for the app's lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = ModelDownloadManager(config or CacheConfig.from_env(), transport=transport)
        manager.add_listener(LoggingListener())
        app.state.download_manager = manager
        logger.info(f"Serving cache {manager.cache_dir} via {manager.config.backend} backend")

        yield

        await manager.shutdown()
        logger.info("Download manager stopped")

    app = FastAPI(title="modelcache", lifespan=lifespan)
    app.include_router(router, prefix=API_PREFIX)
    return app


app = create_app()
