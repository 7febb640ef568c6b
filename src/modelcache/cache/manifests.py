"""Essential file manifests per model family.

A manifest lists the files an installed model directory must contain before
it is considered usable. Families are matched against the last segment of
the repository identifier, case-insensitively; the longest matching pattern
wins. Repositories of unknown families get an empty manifest, which leaves
only the success marker check.
"""
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from modelcache.cache.layout import RepositoryId

QWEN_OMNI_MNN_FILES: Tuple[str, ...] = (
    "config.json",
    "llm.mnn",
    "llm.mnn.weight",
    "embeddings_bf16.bin",
    "tokenizer.txt",
    "audio.mnn",
    "audio.mnn.weight",
    "bigvgan.mnn",
    "bigvgan.mnn.weight",
    "dit.mnn",
    "dit.mnn.weight",
    "predit.mnn",
    "predit.mnn.weight",
)

MNN_LLM_FILES: Tuple[str, ...] = (
    "config.json",
    "llm.mnn",
    "llm.mnn.weight",
    "tokenizer.txt",
)

DEFAULT_MANIFESTS: Dict[str, Tuple[str, ...]] = {
    "qwen2.5-omni": QWEN_OMNI_MNN_FILES,
    "-mnn": MNN_LLM_FILES,
}


class ManifestRegistry:
    """Maps repositories to their essential file manifest."""

    def __init__(self, families: Optional[Mapping[str, Sequence[str]]] = None):
        self._families: Dict[str, Tuple[str, ...]] = {}
        self._exact: Dict[str, Tuple[str, ...]] = {}
        for pattern, files in (families if families is not None else DEFAULT_MANIFESTS).items():
            self.register_family(pattern, files)

    def register_family(self, pattern: str, files: Sequence[str]) -> None:
        self._families[pattern.lower()] = tuple(files)

    def register_repository(self, repo_id: RepositoryId, files: Sequence[str]) -> None:
        """Pin a manifest to one repository, overriding family matching."""
        self._exact[repo_id.folder_name] = tuple(files)

    def for_repository(self, repo_id: RepositoryId) -> List[str]:
        if repo_id.folder_name in self._exact:
            return list(self._exact[repo_id.folder_name])

        name = repo_id.name.lower()
        matches = [pattern for pattern in self._families if pattern in name]
        if not matches:
            return []
        return list(self._families[max(matches, key=len)])
