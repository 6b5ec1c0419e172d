"""Commit collection: the owner's recent commit SHAs per repository."""

from __future__ import annotations

from collections.abc import Sequence

from app.config import Settings, get_settings
from app.logging_config import get_logger
from services.github_rest import GitHubRestClient
from services.models import RepositoryInfo
from services.task_pool import BoundedTaskPool, PoolOutcome

logger = get_logger(__name__)


class CommitCollector:
    """Fills `commit_shas` of each repository in place.

    A repository whose fetch fails or times out keeps an empty list.
    """

    def __init__(self, rest: GitHubRestClient, settings: Settings | None = None) -> None:
        self.rest = rest
        self.settings = settings or get_settings()

    async def collect(
        self, repositories: Sequence[RepositoryInfo], owner: str
    ) -> PoolOutcome[RepositoryInfo, list[str]]:
        pool = BoundedTaskPool.sized_for(
            "commit_collector",
            unit_count=len(repositories),
            cap=self.settings.repository_pool_cap,
            task_timeout=self.settings.repository_task_timeout,
            drain_timeout=self.settings.repository_drain_timeout,
        )

        async def fetch(repository: RepositoryInfo) -> list[str]:
            shas = await self.rest.list_commit_shas(
                owner,
                repository.name,
                author=owner,
                per_page=self.settings.commit_page_size,
            )
            repository.commit_shas = shas
            return shas

        outcome = await pool.run(repositories, fetch, describe=lambda r: r.name)
        logger.info(
            "commits_collected",
            repositories=len(repositories),
            commits=sum(len(shas) for shas in outcome.results),
            incomplete=len(repositories) - len(outcome.completed),
        )
        return outcome
