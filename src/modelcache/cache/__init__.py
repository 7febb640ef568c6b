"""Cache layout, atomic installation and completeness validation."""

from modelcache.cache.installer import AtomicInstaller, InstallMethod, SUCCESS_MARKER
from modelcache.cache.layout import CacheLayout, RepoKind, RepositoryId, repo_folder_name
from modelcache.cache.manifests import ManifestRegistry
from modelcache.cache.validator import is_valid_model_dir

__all__ = [
    "AtomicInstaller",
    "InstallMethod",
    "SUCCESS_MARKER",
    "CacheLayout",
    "RepoKind",
    "RepositoryId",
    "repo_folder_name",
    "ManifestRegistry",
    "is_valid_model_dir",
]
