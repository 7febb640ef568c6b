import argparse
import asyncio
import sys
from typing import List, Optional

from modelcache.cache.layout import RepoKind, RepositoryId
from modelcache.cache.validator import find_missing_files, is_valid_model_dir
from modelcache.common.logger import create_logger
from modelcache.config import CacheConfig
from modelcache.downloads.listener import LoggingListener
from modelcache.downloads.manager import ModelDownloadManager
from modelcache.downloads.types import DownloadState

logger = create_logger(__name__)


def _config_from_args(args: argparse.Namespace) -> CacheConfig:
    return CacheConfig.from_env(
        cache_dir=args.cache_dir,
        backend=args.backend,
        source_dir=args.source_dir,
        revision=args.revision,
    )


async def _fetch(config: CacheConfig, repo_id: RepositoryId) -> int:
    manager = ModelDownloadManager(config)
    manager.add_listener(LoggingListener())
    try:
        path = await manager.ensure_ready(repo_id)
        if path is None:
            info = await manager.wait_for_download(repo_id)
            if info.state != DownloadState.COMPLETE:
                print(f"Download of {repo_id} failed: {info.last_error}", file=sys.stderr)
                return 1
            path = info.download_path
        print(path)
        return 0
    finally:
        await manager.shutdown()


def _check(directory: str, manifest: List[str]) -> int:
    if is_valid_model_dir(directory, manifest):
        print(f"{directory}: valid")
        return 0
    missing = find_missing_files(directory, manifest)
    detail = f" (missing or empty: {', '.join(missing)})" if missing else ""
    print(f"{directory}: invalid{detail}", file=sys.stderr)
    return 1


def _serve(config: CacheConfig, host: str, port: int) -> int:
    import uvicorn

    from modelcache.app import create_app

    uvicorn.run(create_app(config), host=host, port=port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modelcache",
        description="Download model repositories into a local cache and install them atomically.",
    )
    parser.add_argument("--cache-dir", help="Cache root directory (default: $MODELCACHE_DIR)")
    parser.add_argument("--backend", choices=["hugging-face", "local"], help="Transport backend")
    parser.add_argument("--source-dir", help="Repository mirror for the local backend")
    parser.add_argument("--revision", help="Remote revision to download")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch = subparsers.add_parser("fetch", help="Download a repository and print its path")
    fetch.add_argument("identifier", help="Repository identifier, e.g. org/name")
    fetch.add_argument(
        "--kind",
        choices=[kind.value for kind in RepoKind],
        default=RepoKind.MODEL.value,
        help="Repository kind",
    )

    check = subparsers.add_parser("check", help="Validate an installed directory")
    check.add_argument("directory", help="Installed model directory")
    check.add_argument(
        "--manifest",
        nargs="*",
        default=[],
        help="File names that must be present and non-empty",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "check":
        return _check(args.directory, args.manifest)

    config = _config_from_args(args)
    if args.command == "fetch":
        repo_id = RepositoryId(identifier=args.identifier, kind=RepoKind(args.kind))
        return asyncio.run(_fetch(config, repo_id))
    return _serve(config, args.host, args.port)


if __name__ == "__main__":
    sys.exit(main())
