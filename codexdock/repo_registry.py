"""JSON-file registry of repositories."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .models import RepoEntry

logger = logging.getLogger(__name__)


class RepoRegistryError(ValueError):
    """Raised for invalid registry mutations."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


def hash_path(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


class RepoRegistry:
    """Repositories persisted as {"repos": [...]}; all access is serialized."""

    def __init__(self, data_dir: str, file_name: str = "repos.json"):
        self.file_path = Path(data_dir) / file_name
        self._lock = asyncio.Lock()
        self._repos: Optional[list[RepoEntry]] = None

    async def list(self) -> list[RepoEntry]:
        async with self._lock:
            return list(self._load())

    async def get(self, repo_id: str) -> Optional[RepoEntry]:
        async with self._lock:
            return next((repo for repo in self._load() if repo.repo_id == repo_id), None)

    async def create(self, name: str, path: str) -> RepoEntry:
        async with self._lock:
            repos = self._load()
            normalized = self._normalize_path(path)
            if any(repo.path == normalized for repo in repos):
                raise RepoRegistryError("conflict", "Repository path already registered")
            repo_id = f"repo_{hash_path(normalized)}"
            if any(repo.repo_id == repo_id for repo in repos):
                raise RepoRegistryError("conflict", "Repository id collision")
            entry = RepoEntry(repo_id=repo_id, name=name, path=normalized)
            self._save([*repos, entry])
            logger.info(f"Registered repo {repo_id} at {normalized}")
            return entry

    async def update(
        self,
        repo_id: str,
        name: Optional[str] = None,
        last_opened_thread_id: Optional[str] = None,
    ) -> RepoEntry:
        """Change a repo's display name or last opened thread; the path is fixed."""
        async with self._lock:
            repos = self._load()
            current = next((repo for repo in repos if repo.repo_id == repo_id), None)
            if not current:
                raise RepoRegistryError("not_found", "Repository not found")
            updated = replace(
                current,
                name=current.name if name is None else name,
                last_opened_thread_id=(
                    current.last_opened_thread_id if last_opened_thread_id is None else last_opened_thread_id
                ),
            )
            self._save([updated if repo is current else repo for repo in repos])
            logger.info(f"Updated repo {repo_id}")
            return updated

    async def remove(self, repo_id: str):
        async with self._lock:
            repos = self._load()
            remaining = [repo for repo in repos if repo.repo_id != repo_id]
            if len(remaining) == len(repos):
                raise RepoRegistryError("not_found", "Repository not found")
            self._save(remaining)
            logger.info(f"Removed repo {repo_id}")

    def _load(self) -> list[RepoEntry]:
        if self._repos is not None:
            return self._repos
        if not self.file_path.exists():
            self._save([])
            return self._repos
        with open(self.file_path) as f:
            data = json.load(f)
        self._repos = [RepoEntry.from_dict(item) for item in data.get("repos", [])]
        return self._repos

    def _save(self, repos: list[RepoEntry]):
        """Write via temp file + rename so readers never see a partial file."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump({"repos": [repo.to_dict() for repo in repos]}, f, indent=2)
        temp_file.replace(self.file_path)
        self._repos = repos

    @staticmethod
    def _normalize_path(path: str) -> str:
        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            raise RepoRegistryError("unprocessable_entity", "Repository path does not exist")
        if not resolved.is_dir():
            raise RepoRegistryError("unprocessable_entity", "Repository path is not a directory")
        return str(resolved)
