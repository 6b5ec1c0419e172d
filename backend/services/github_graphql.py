"""GitHub GraphQL API Client.

Used for the repository catalog: the user's most recently pushed
repositories with their default branch and their largest languages, in a
single round trip.

Includes exponential backoff retry logic for rate limits.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any

import httpx

from app.config import Settings, get_settings
from app.exceptions import GitHubAPIError, GitHubNotFoundError, GitHubRateLimitError
from app.logging_config import get_logger
from app.metrics import GITHUB_API_CALLS, GITHUB_API_DURATION

logger = get_logger(__name__)

# --- GraphQL Queries ---

RECENT_REPOSITORIES_QUERY = """
query RecentRepositories($login: String!, $first: Int!, $languages: Int!) {
  user(login: $login) {
    repositories(
      first: $first
      ownerAffiliations: OWNER
      orderBy: { field: PUSHED_AT, direction: DESC }
    ) {
      nodes {
        name
        defaultBranchRef { name }
        languages(first: $languages, orderBy: { field: SIZE, direction: DESC }) {
          edges {
            size
            node { name }
          }
        }
      }
    }
  }
  rateLimit {
    cost
    remaining
    resetAt
  }
}
"""


class GitHubGraphQLClient:
    """Client for GitHub GraphQL API (v4).

    Authenticates with the job's credential. GraphQL API has no
    unauthenticated access.
    """

    def __init__(self, token: str, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._token = token
        self._headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }

    @property
    def has_token(self) -> bool:
        """Check if a valid token is configured."""
        return bool(self._token)

    async def fetch_recent_repositories(
        self,
        login: str,
        first: int,
        languages: int,
    ) -> list[dict[str, Any]]:
        """Fetch the user's repositories, most recently pushed first.

        Returns the raw repository nodes. Raises GitHubNotFoundError when
        the user does not exist and GitHubAPIError when the response does
        not have the expected shape.
        """
        data = await self._execute(
            RECENT_REPOSITORIES_QUERY,
            {"login": login, "first": first, "languages": languages},
        )

        user = data.get("user")
        if user is None:
            raise GitHubNotFoundError("user")

        nodes = (user.get("repositories") or {}).get("nodes")
        if not isinstance(nodes, list):
            raise GitHubAPIError("Malformed GraphQL response: repositories.nodes missing")
        return [node for node in nodes if node]

    async def _execute(
        self,
        query: str,
        variables: dict[str, Any],
    ) -> dict[str, Any]:
        """Execute a GraphQL query with retry logic.

        Retries on rate limits (403/429) and server errors (502/503/504)
        with exponential backoff.
        """
        max_retries = self.settings.github_max_retries
        last_exception: Exception | None = None

        for attempt in range(max_retries + 1):
            async with httpx.AsyncClient(timeout=self.settings.github_request_timeout) as client:
                with GITHUB_API_DURATION.labels(endpoint="graphql").time():
                    try:
                        response = await client.post(
                            self.settings.github_graphql_url,
                            headers=self._headers,
                            json={"query": query, "variables": variables},
                        )
                    except httpx.RequestError as exc:
                        GITHUB_API_CALLS.labels(endpoint="graphql", status="error").inc()
                        last_exception = exc
                        if attempt < max_retries:
                            wait = self._backoff_delay(attempt)
                            logger.warning(
                                "graphql_connection_retry",
                                attempt=attempt + 1,
                                wait_seconds=wait,
                            )
                            await asyncio.sleep(wait)
                            continue
                        raise GitHubAPIError(
                            "GitHub GraphQL API connection failed after retries"
                        ) from exc

                status = response.status_code
                GITHUB_API_CALLS.labels(endpoint="graphql", status=str(status)).inc()

                if status == 401:
                    raise GitHubAPIError("GitHub token invalid or expired", status_code=401)

                # Retryable: rate limit or server errors
                if status in (403, 429, 502, 503, 504):
                    if attempt < max_retries:
                        wait = self._backoff_delay(attempt, base=2.0)
                        logger.warning(
                            "graphql_retryable_error",
                            attempt=attempt + 1,
                            wait_seconds=wait,
                            status=status,
                        )
                        await asyncio.sleep(wait)
                        continue

                    if status in (403, 429):
                        raise GitHubRateLimitError()
                    raise GitHubAPIError(
                        f"GitHub GraphQL API returned status {status}",
                        status_code=status,
                    )

                if status >= 400:
                    raise GitHubAPIError(
                        f"GitHub GraphQL API returned status {status}",
                        status_code=status,
                    )

                try:
                    body = response.json()
                except ValueError as exc:
                    raise GitHubAPIError("GitHub GraphQL API returned invalid JSON") from exc
                if not isinstance(body, dict):
                    raise GitHubAPIError("Malformed GraphQL response")

                # Check for GraphQL-level errors
                errors = body.get("errors")
                if errors:
                    error_types = [e.get("type", "") for e in errors]
                    if "NOT_FOUND" in error_types:
                        raise GitHubNotFoundError("user")
                    if "RATE_LIMITED" in error_types:
                        if attempt < max_retries:
                            wait = self._backoff_delay(attempt, base=5.0)
                            logger.warning(
                                "graphql_rate_limited_retry",
                                attempt=attempt + 1,
                                wait_seconds=wait,
                            )
                            await asyncio.sleep(wait)
                            continue
                        raise GitHubRateLimitError()

                    error_messages = "; ".join(e.get("message", "") for e in errors)
                    logger.warning("graphql_errors", errors=error_messages)

                    if not body.get("data"):
                        raise GitHubAPIError(f"GraphQL errors: {error_messages}")

                data = body.get("data")
                if not isinstance(data, dict):
                    raise GitHubAPIError("Malformed GraphQL response: data missing")

                # Log rate limit info
                rate_limit = data.get("rateLimit")
                if rate_limit:
                    remaining = rate_limit.get("remaining", 0)
                    if remaining < 100:
                        logger.warning(
                            "graphql_rate_limit_low",
                            remaining=remaining,
                            reset_at=rate_limit.get("resetAt"),
                        )

                return data

        raise GitHubAPIError("GitHub GraphQL request failed") from last_exception

    @staticmethod
    def _backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 30.0) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = base * (2**attempt)
        jitter = random.uniform(0, delay * 0.1)
        return min(delay + jitter, max_delay)
