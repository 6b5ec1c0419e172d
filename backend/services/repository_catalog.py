"""Repository catalog: the user's most recently pushed repositories."""

from __future__ import annotations

from typing import Any

from app.config import Settings, get_settings
from app.exceptions import GitHubAPIError, GitHubNotFoundError
from app.logging_config import get_logger
from services.github_graphql import GitHubGraphQLClient
from services.models import LanguageShare, RepositoryInfo

logger = get_logger(__name__)


class RepositoryCatalog:
    """Builds RepositoryInfo records from one GraphQL query.

    Upstream failures and malformed responses propagate so the job is
    retried. An unknown GitHub login yields an empty catalog.
    """

    def __init__(self, graphql: GitHubGraphQLClient, settings: Settings | None = None) -> None:
        self.graphql = graphql
        self.settings = settings or get_settings()

    async def fetch(self, username: str, email: str | None = None) -> list[RepositoryInfo]:
        try:
            nodes = await self.graphql.fetch_recent_repositories(
                username,
                first=self.settings.repository_limit,
                languages=self.settings.language_limit,
            )
        except GitHubNotFoundError:
            logger.warning("catalog_user_not_found_on_github", username=username)
            return []

        repositories: list[RepositoryInfo] = []
        seen: set[str] = set()
        for node in nodes:
            repository = self._to_repository(node)
            if repository is None:
                continue
            if repository.name in seen:
                logger.warning("catalog_duplicate_repository", repo=repository.name)
                continue
            seen.add(repository.name)
            repositories.append(repository)

        logger.info(
            "catalog_fetched",
            username=username,
            has_email=email is not None,
            repositories=len(repositories),
            skipped=len(nodes) - len(repositories),
        )
        return repositories

    def _to_repository(self, node: dict[str, Any]) -> RepositoryInfo | None:
        name = node.get("name")
        if not isinstance(name, str) or not name:
            raise GitHubAPIError("Malformed GraphQL response: repository without name")

        branch = (node.get("defaultBranchRef") or {}).get("name")
        if not branch:
            logger.warning("catalog_repository_without_default_branch", repo=name)
            return None

        return RepositoryInfo(
            name=name,
            default_branch=branch,
            top_languages=self._top_languages(node),
        )

    def _top_languages(self, node: dict[str, Any]) -> list[LanguageShare]:
        edges = (node.get("languages") or {}).get("edges") or []
        languages = [
            LanguageShare(name=edge["node"]["name"], size=int(edge.get("size") or 0))
            for edge in edges
            if edge and (edge.get("node") or {}).get("name")
        ]
        # Stable: equal sizes keep the order GitHub returned
        languages.sort(key=lambda language: language.size, reverse=True)
        return languages[: self.settings.language_limit]
