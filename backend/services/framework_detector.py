"""Framework detection from repository config files.

For each repository: shortlist config files implied by its top languages,
fetch their content at the default branch and evaluate the rule table.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Sequence
from typing import Any

from app.config import Settings, get_settings
from app.exceptions import FUMBaseError
from app.logging_config import get_logger
from app.metrics import FRAMEWORKS_DETECTED
from services.framework_rules import RuleSet, get_ruleset
from services.github_rest import GitHubRestClient
from services.models import RepositoryInfo
from services.task_pool import BoundedTaskPool

logger = get_logger(__name__)


class ContentDecodeError(ValueError):
    """A contents API entry could not be turned into text."""


def decode_content(entry: dict[str, Any]) -> str:
    """Decode a contents API entry to text.

    GitHub wraps base64 at 60 columns, so newlines are removed before a
    strict decode.
    """
    encoding = entry.get("encoding")
    content = entry.get("content")
    if encoding != "base64" or not isinstance(content, str):
        raise ContentDecodeError(f"unsupported content encoding: {encoding!r}")
    try:
        raw = base64.b64decode("".join(content.split()), validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ContentDecodeError(str(exc)) from exc


class FrameworkDetector:
    def __init__(
        self,
        rest: GitHubRestClient,
        rules: RuleSet | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.rest = rest
        self.rules = rules or get_ruleset()
        self.settings = settings or get_settings()

    async def detect_all(
        self, repositories: Sequence[RepositoryInfo], owner: str
    ) -> dict[RepositoryInfo, frozenset[str]]:
        """Detected frameworks per repository.

        Every repository gets an entry; a failed or timed-out one maps to
        an empty set.
        """
        pool = BoundedTaskPool.sized_for(
            "framework_detector",
            unit_count=len(repositories),
            cap=self.settings.repository_pool_cap,
            task_timeout=self.settings.repository_task_timeout,
            drain_timeout=self.settings.repository_drain_timeout,
        )
        outcome = await pool.run(
            repositories,
            lambda repository: self.detect(repository, owner),
            describe=lambda r: r.name,
        )

        detected: dict[RepositoryInfo, frozenset[str]] = {r: frozenset() for r in repositories}
        for repository, frameworks in outcome.completed:
            detected[repository] = frozenset(frameworks)
        return detected

    async def detect(self, repository: RepositoryInfo, owner: str) -> set[str]:
        candidates = self.rules.config_candidates(repository.language_names)
        if not candidates:
            logger.debug("detector_no_candidate_configs", repo=repository.name)
            return set()

        tree = await self.rest.get_tree(owner, repository.name, repository.default_branch)
        config_paths = [
            entry["path"]
            for entry in tree
            if not self.rules.is_vendored(entry["path"])
            and self.rules.match_config(entry["path"], candidates) is not None
        ]

        frameworks: set[str] = set()
        for path in config_paths:
            frameworks |= await self._evaluate(repository, owner, path)

        for framework in frameworks:
            FRAMEWORKS_DETECTED.labels(framework=framework).inc()
        logger.info(
            "frameworks_detected",
            repo=repository.name,
            config_files=len(config_paths),
            frameworks=sorted(frameworks),
        )
        return frameworks

    async def _evaluate(self, repository: RepositoryInfo, owner: str, path: str) -> set[str]:
        rules = self.rules.rules_for(path)
        if not rules:
            logger.warning("detector_config_without_rules", repo=repository.name, path=path)
            return set()

        try:
            entry = await self.rest.get_content(
                owner, repository.name, path, ref=repository.default_branch
            )
            content = decode_content(entry)
        except (FUMBaseError, ContentDecodeError) as exc:
            logger.warning(
                "detector_config_skipped",
                repo=repository.name,
                path=path,
                error=str(exc),
            )
            return set()

        return {rule.framework for rule in rules if rule.matches(content)}
