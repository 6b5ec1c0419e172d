"""Framework usage pipeline.

Stages:
1. Resolve the registered user
2. RepositoryCatalog: recent repositories with top languages
3. CommitCollector and FrameworkDetector, concurrently
4. FileAccountant: distinct files per detected framework
5. StatsUpdater: persist the counts

Stage errors other than per-unit failures propagate so the job is retried.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.exceptions import UnknownUserError
from app.logging_config import get_logger
from app.metrics import PIPELINE_DURATION
from services.commit_collector import CommitCollector
from services.file_accountant import FileAccountant
from services.framework_detector import FrameworkDetector
from services.framework_rules import RuleSet, get_ruleset
from services.github_graphql import GitHubGraphQLClient
from services.github_rest import GitHubRestClient
from services.models import Job
from services.repository_catalog import RepositoryCatalog
from services.stats_store import FrameworkUsageStore
from services.stats_updater import StatsUpdater, StatsUpdateResult

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    repositories: int
    frameworks_by_repository: dict[str, list[str]]
    stats: StatsUpdateResult

    @property
    def counts(self) -> dict[str, int]:
        return self.stats.counts


class FrameworkUsagePipeline:
    def __init__(
        self,
        store: FrameworkUsageStore,
        catalog: RepositoryCatalog,
        collector: CommitCollector,
        detector: FrameworkDetector,
        accountant: FileAccountant,
        updater: StatsUpdater,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.collector = collector
        self.detector = detector
        self.accountant = accountant
        self.updater = updater

    @classmethod
    def for_job(
        cls,
        job: Job,
        session: AsyncSession,
        rules: RuleSet | None = None,
        settings: Settings | None = None,
    ) -> FrameworkUsagePipeline:
        """Wire the stages with clients bound to the job's credential."""
        settings = settings or get_settings()
        rules = rules or get_ruleset()
        rest = GitHubRestClient(job.credential, settings=settings)
        graphql = GitHubGraphQLClient(job.credential, settings=settings)
        store = FrameworkUsageStore(session)
        return cls(
            store=store,
            catalog=RepositoryCatalog(graphql, settings=settings),
            collector=CommitCollector(rest, settings=settings),
            detector=FrameworkDetector(rest, rules=rules, settings=settings),
            accountant=FileAccountant(rest, rules=rules, settings=settings),
            updater=StatsUpdater(store),
        )

    async def run(self, job: Job) -> PipelineResult:
        user = await self.store.find_user(job.username)
        if user is None:
            raise UnknownUserError()

        start = time.perf_counter()
        owner = job.username
        repositories = await self.catalog.fetch(owner, job.email)
        if not repositories:
            logger.warning("pipeline_no_repositories", user_id=str(user.id))

        detected, _ = await asyncio.gather(
            self.detector.detect_all(repositories, owner),
            self.collector.collect(repositories, owner),
        )
        index = await self.accountant.account(detected, owner)
        stats = await self.updater.update(user.id, index)

        duration = time.perf_counter() - start
        PIPELINE_DURATION.observe(duration)
        logger.info(
            "pipeline_completed",
            user_id=str(user.id),
            repositories=len(repositories),
            frameworks=len(stats.counts),
            duration_ms=round(duration * 1000),
        )
        return PipelineResult(
            repositories=len(repositories),
            frameworks_by_repository={
                repository.name: sorted(frameworks)
                for repository, frameworks in detected.items()
            },
            stats=stats,
        )


async def run_pipeline(job: Job, session: AsyncSession) -> PipelineResult:
    return await FrameworkUsagePipeline.for_job(job, session).run(job)
