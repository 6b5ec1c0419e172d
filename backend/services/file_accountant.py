"""File accounting: distinct source files per framework.

Walks the owner's commits of every repository with detected frameworks
and records each changed file whose extension belongs to one of those
frameworks. A file edited in many commits counts once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from app.config import Settings, get_settings
from app.logging_config import get_logger
from services.framework_rules import RuleSet, get_ruleset
from services.github_rest import GitHubRestClient
from services.models import RepositoryInfo
from services.task_pool import BoundedTaskPool

logger = get_logger(__name__)


class FrameworkFileIndex:
    """framework -> set of repo-qualified paths, safe for concurrent inserts."""

    def __init__(self) -> None:
        self._paths: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def add(self, framework: str, path: str) -> bool:
        """Insert a path; returns False when it was already recorded."""
        async with self._lock:
            paths = self._paths.setdefault(framework, set())
            if path in paths:
                return False
            paths.add(path)
            return True

    def paths(self, framework: str) -> frozenset[str]:
        return frozenset(self._paths.get(framework, ()))

    def counts(self) -> dict[str, int]:
        return {framework: len(paths) for framework, paths in self._paths.items() if paths}

    def __len__(self) -> int:
        return len(self._paths)


class FileAccountant:
    def __init__(
        self,
        rest: GitHubRestClient,
        rules: RuleSet | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.rest = rest
        self.rules = rules or get_ruleset()
        self.settings = settings or get_settings()

    async def account(
        self,
        detected: Mapping[RepositoryInfo, frozenset[str]],
        owner: str,
    ) -> FrameworkFileIndex:
        """Build the index. Repositories run one after another."""
        index = FrameworkFileIndex()
        for repository, frameworks in detected.items():
            if not frameworks or not repository.commit_shas:
                logger.debug(
                    "accountant_repository_skipped",
                    repo=repository.name,
                    frameworks=len(frameworks),
                    commits=len(repository.commit_shas),
                )
                continue
            await self._account_repository(repository, frameworks, owner, index)

        logger.info("files_accounted", counts=index.counts())
        return index

    async def _account_repository(
        self,
        repository: RepositoryInfo,
        frameworks: frozenset[str],
        owner: str,
        index: FrameworkFileIndex,
    ) -> None:
        pool = BoundedTaskPool.sized_for(
            "file_accountant",
            unit_count=len(repository.commit_shas),
            cap=self.settings.commit_pool_cap,
            task_timeout=self.settings.commit_task_timeout,
            drain_timeout=self.settings.commit_drain_timeout,
        )

        async def record_commit(sha: str) -> int:
            files = await self.rest.get_commit_files(owner, repository.name, sha)
            added = 0
            for path in files:
                if self.rules.is_vendored(path):
                    continue
                for framework in frameworks:
                    if self.rules.counts_as_usage(path, framework):
                        added += await index.add(framework, f"{repository.name}/{path}")
            return added

        outcome = await pool.run(
            repository.commit_shas,
            record_commit,
            describe=lambda sha: f"{repository.name}@{sha[:7]}",
        )
        logger.debug(
            "accountant_repository_done",
            repo=repository.name,
            commits=len(repository.commit_shas),
            new_files=sum(outcome.results),
        )
