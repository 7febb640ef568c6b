"""REST API routes for repository downloads."""

from fastapi import APIRouter, HTTPException, Request, status

from modelcache.cache.layout import RepositoryId
from modelcache.common.logger import create_logger
from modelcache.downloads.manager import ModelDownloadManager
from modelcache.downloads.types import (
    CachedRepositoryListResponse,
    DeleteResponse,
    DiskSpaceInfo,
    DownloadStartResponse,
    DownloadStatusResponse,
    UpdateCheckResponse,
)
from modelcache.errors import DownloadLimitError, TransferError

logger = create_logger(__name__)

router = APIRouter()


def get_download_manager(request: Request) -> ModelDownloadManager:
    """Get the ModelDownloadManager from app state."""
    return request.app.state.download_manager


@router.post(
    "/status",
    response_model=DownloadStatusResponse,
    summary="Check download status",
    description="""Return the download state of a repository.

    A repository with a valid installation on disk reports COMPLETE even if
    it was never downloaded by this process.

    Example request:
    ```json
    {
        "identifier": "taobao-mnn/Qwen2.5-Omni-3B-MNN",
        "kind": "model"
    }
    ```

    Example response:
    ```json
    {
        "repository": {"identifier": "taobao-mnn/Qwen2.5-Omni-3B-MNN", "kind": "model"},
        "info": {
            "state": "DOWNLOADING",
            "bytes_downloaded": 1048576,
            "total_bytes": 4194304,
            "speed_bytes_per_sec": 524288.0,
            "last_error": null,
            "current_file": "llm.mnn.weight",
            "has_update": false,
            "download_path": null,
            "progress": 0.25
        }
    }
    ```
    """,
)
async def check_download_status(
    repo_id: RepositoryId,
    request: Request
) -> DownloadStatusResponse:
    """Check the download status of a repository."""
    manager = get_download_manager(request)

    try:
        info = manager.get_download_info(repo_id)
        logger.info(f"Status check for {repo_id}: {info.state.value}")
        return DownloadStatusResponse(repository=repo_id, info=info)
    except Exception as e:
        logger.error(f"Error checking download status: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error checking download status: {str(e)}"
        )


@router.post(
    "/download",
    response_model=DownloadStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        202: {"description": "Download started, resumed, or already complete"},
        429: {"description": "Too many concurrent downloads"},
    },
    summary="Start or resume a download",
    description="""Start downloading a repository in the background.

    Starting a repository that is already downloading or complete changes
    nothing and returns its current state. A paused download resumes from
    its partial files.
    """,
)
async def start_download(
    repo_id: RepositoryId,
    request: Request
) -> DownloadStartResponse:
    """Start downloading a repository."""
    manager = get_download_manager(request)

    try:
        info = await manager.start_download(repo_id)
        logger.info(f"Download requested for {repo_id}: {info.state.value}")
        return DownloadStartResponse(repository=repo_id, state=info.state)
    except DownloadLimitError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Error starting download: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error starting download: {str(e)}"
        )


@router.post(
    "/pause",
    response_model=DownloadStatusResponse,
    responses={409: {"description": "Repository is not downloading"}},
    summary="Pause a download",
)
async def pause_download(
    repo_id: RepositoryId,
    request: Request
) -> DownloadStatusResponse:
    """Pause a running download, keeping partial files."""
    manager = get_download_manager(request)

    try:
        info = await manager.pause_download(repo_id)
        return DownloadStatusResponse(repository=repo_id, info=info)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Error pausing download: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error pausing download: {str(e)}"
        )


@router.delete(
    "",
    response_model=DeleteResponse,
    summary="Remove a repository or cancel its download",
    description="""Delete a repository's cached files from any state.

    A running transfer is aborted first and its partial files are discarded.
    The response status is "cancelled" when a transfer was aborted and
    "removed" otherwise.
    """,
)
async def remove_download(
    repo_id: RepositoryId,
    request: Request
) -> DeleteResponse:
    """Remove a repository from the cache."""
    manager = get_download_manager(request)

    try:
        result = await manager.remove_download(repo_id)
        logger.info(f"Repository {repo_id} {result}")
        return DeleteResponse(status=result, repository=repo_id)
    except Exception as e:
        logger.error(f"Error removing download: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error removing download: {str(e)}"
        )


@router.post(
    "/update",
    response_model=UpdateCheckResponse,
    responses={502: {"description": "Remote could not be reached"}},
    summary="Check for and apply an update",
    description="""Compare the installed commit with the remote revision.

    When the remote has moved on, the new snapshot is downloaded in the
    background; the current installation stays usable until it is replaced.
    """,
)
async def update_download(
    repo_id: RepositoryId,
    request: Request
) -> UpdateCheckResponse:
    """Check a repository for updates and start downloading one if found."""
    manager = get_download_manager(request)

    try:
        has_update = await manager.check_for_update(repo_id)
        if has_update:
            await manager.update_download(repo_id)
        return UpdateCheckResponse(repository=repo_id, has_update=has_update)
    except TransferError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )
    except DownloadLimitError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Error updating download: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error updating download: {str(e)}"
        )


@router.get(
    "/list",
    response_model=CachedRepositoryListResponse,
    summary="List cached repositories",
)
async def list_downloads(request: Request) -> CachedRepositoryListResponse:
    """List all repositories in the cache root."""
    manager = get_download_manager(request)

    try:
        repositories = manager.list_downloads()
        logger.info(f"Listed {len(repositories)} repositories")
        return CachedRepositoryListResponse(repositories=repositories)
    except Exception as e:
        logger.error(f"Error listing downloads: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error listing downloads: {str(e)}"
        )


@router.get(
    "/space",
    response_model=DiskSpaceInfo,
    summary="Get disk space information",
)
async def get_disk_space(request: Request) -> DiskSpaceInfo:
    """Get disk space information."""
    manager = get_download_manager(request)

    try:
        space_info = manager.get_disk_space()
        logger.info(
            f"Disk space: cache={space_info.cache_size_bytes} bytes, "
            f"available={space_info.available_bytes} bytes"
        )
        return space_info
    except Exception as e:
        logger.error(f"Error getting disk space: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error getting disk space: {str(e)}"
        )
