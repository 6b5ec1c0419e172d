"""GitHub REST API client.

Covers the per-repository calls of the pipeline: the owner's commits,
the recursive tree of the default branch, file contents and commit
details. Every call authenticates with the job's credential; nothing is
cached.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Optional
from urllib.parse import quote

import httpx

from app.config import Settings, get_settings
from app.exceptions import GitHubAPIError, GitHubNotFoundError, GitHubRateLimitError
from app.logging_config import get_logger
from app.metrics import GITHUB_API_CALLS, GITHUB_API_DURATION

logger = get_logger(__name__)


class GitHubRestClient:
    """Thin async wrapper around the REST endpoints the pipeline needs."""

    def __init__(self, token: str, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._base = self.settings.github_api_base.rstrip("/")
        self._headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"Bearer {token}",
        }

    def _repo_url(self, owner: str, repo: str) -> str:
        return f"{self._base}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"

    async def list_commit_shas(
        self,
        owner: str,
        repo: str,
        author: str,
        per_page: int = 100,
    ) -> list[str]:
        """SHAs of the most recent commits in `repo` authored by `author`.

        A single page; the first page is the most recent commits.
        """
        commits = await self._api_request(
            f"{self._repo_url(owner, repo)}/commits",
            endpoint="commits",
            params={"author": author, "per_page": per_page},
        )
        if not isinstance(commits, list):
            raise GitHubAPIError("Unexpected commit listing response")
        return [c["sha"] for c in commits if isinstance(c, dict) and c.get("sha")]

    async def get_tree(self, owner: str, repo: str, ref: str) -> list[dict[str, Any]]:
        """Recursive tree of `ref`. Only blob entries are returned."""
        body = await self._api_request(
            f"{self._repo_url(owner, repo)}/git/trees/{quote(ref, safe='')}",
            endpoint="tree",
            params={"recursive": 1},
        )
        if not isinstance(body, dict) or not isinstance(body.get("tree"), list):
            raise GitHubAPIError("Unexpected tree response")
        if body.get("truncated"):
            logger.warning("github_tree_truncated", repo=repo, entries=len(body["tree"]))
        return [
            entry
            for entry in body["tree"]
            if isinstance(entry, dict) and entry.get("type") == "blob" and entry.get("path")
        ]

    async def get_content(self, owner: str, repo: str, path: str, ref: str) -> dict[str, Any]:
        """Contents API entry for a single file at `ref`."""
        body = await self._api_request(
            f"{self._repo_url(owner, repo)}/contents/{quote(path)}",
            endpoint="contents",
            params={"ref": ref},
        )
        if not isinstance(body, dict):
            raise GitHubAPIError("Unexpected contents response")
        return body

    async def get_commit_files(self, owner: str, repo: str, sha: str) -> list[str]:
        """Paths of the files a commit touched."""
        body = await self._api_request(
            f"{self._repo_url(owner, repo)}/commits/{quote(sha, safe='')}",
            endpoint="commit",
        )
        if not isinstance(body, dict):
            raise GitHubAPIError("Unexpected commit response")
        return [
            f["filename"]
            for f in body.get("files") or []
            if isinstance(f, dict) and f.get("filename")
        ]

    async def _api_request(
        self,
        url: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Make an authenticated request to GitHub API with retry logic.

        Implements exponential backoff for:
        - 429 Too Many Requests
        - 403 Forbidden (rate limit)
        - 502/503/504 Server errors

        Non-retryable errors (404, 401) are raised immediately.
        """
        max_retries = self.settings.github_max_retries
        last_exception: Exception | None = None

        for attempt in range(max_retries + 1):
            async with httpx.AsyncClient(timeout=self.settings.github_request_timeout) as client:
                with GITHUB_API_DURATION.labels(endpoint=endpoint).time():
                    try:
                        response = await client.get(
                            url, headers=self._headers, params=params
                        )
                    except httpx.RequestError as exc:
                        GITHUB_API_CALLS.labels(endpoint=endpoint, status="error").inc()
                        last_exception = exc
                        if attempt < max_retries:
                            wait = self._backoff_delay(attempt)
                            logger.warning(
                                "github_api_connection_retry",
                                attempt=attempt + 1,
                                wait_seconds=wait,
                                endpoint=endpoint,
                            )
                            await asyncio.sleep(wait)
                            continue
                        raise GitHubAPIError(
                            "GitHub API connection failed after retries"
                        ) from exc

                status = response.status_code
                GITHUB_API_CALLS.labels(endpoint=endpoint, status=str(status)).inc()

                # Non-retryable errors
                if status == 404:
                    raise GitHubNotFoundError(endpoint)
                if status == 401:
                    raise GitHubAPIError(
                        "GitHub token invalid or expired", status_code=401
                    )

                # Retryable: rate limit
                if status in (403, 429):
                    retry_after = response.headers.get("Retry-After")
                    rate_remaining = response.headers.get("X-RateLimit-Remaining")

                    if attempt < max_retries:
                        if retry_after and retry_after.isdigit():
                            wait = min(int(retry_after), 60)
                        elif rate_remaining == "0":
                            wait = self._backoff_delay(attempt, base=5.0)
                        else:
                            wait = self._backoff_delay(attempt)

                        logger.warning(
                            "github_rate_limit_retry",
                            attempt=attempt + 1,
                            wait_seconds=wait,
                            status=status,
                            endpoint=endpoint,
                        )
                        await asyncio.sleep(wait)
                        continue

                    raise GitHubRateLimitError(
                        retry_after=int(retry_after)
                        if retry_after and retry_after.isdigit()
                        else None
                    )

                # Retryable: server errors
                if status in (502, 503, 504):
                    if attempt < max_retries:
                        wait = self._backoff_delay(attempt)
                        logger.warning(
                            "github_server_error_retry",
                            attempt=attempt + 1,
                            wait_seconds=wait,
                            status=status,
                            endpoint=endpoint,
                        )
                        await asyncio.sleep(wait)
                        continue

                    raise GitHubAPIError(
                        f"GitHub API server error {status} after retries",
                        status_code=status,
                    )

                # Other client errors
                if status >= 400:
                    raise GitHubAPIError(
                        f"GitHub API returned status {status}",
                        status_code=status,
                    )

                try:
                    return response.json()
                except ValueError as exc:
                    raise GitHubAPIError("GitHub API returned invalid JSON") from exc

        # Should not reach here, but safety net
        raise GitHubAPIError("GitHub API request failed") from last_exception

    @staticmethod
    def _backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 30.0) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = base * (2**attempt)
        jitter = random.uniform(0, delay * 0.1)
        return min(delay + jitter, max_delay)
