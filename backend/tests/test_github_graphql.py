"""Tests for the GitHub GraphQL client."""

import json

import pytest
import respx
from httpx import Response

from app.exceptions import GitHubAPIError, GitHubNotFoundError, GitHubRateLimitError
from services.github_graphql import GitHubGraphQLClient

GRAPHQL_URL = "https://api.github.com/graphql"


@pytest.fixture
def graphql_client(test_settings):
    return GitHubGraphQLClient("ghp_test_token_fake_value", settings=test_settings)


def _repositories_response(nodes):
    return {
        "data": {
            "user": {"repositories": {"nodes": nodes}},
            "rateLimit": {"cost": 1, "remaining": 4999, "resetAt": "2026-01-01T00:00:00Z"},
        }
    }


class TestGitHubGraphQLClient:
    """Test suite for GitHubGraphQLClient."""

    def test_has_token(self, graphql_client):
        assert graphql_client.has_token is True

    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_recent_repositories(self, graphql_client):
        node = {
            "name": "app",
            "defaultBranchRef": {"name": "main"},
            "languages": {"edges": [{"size": 100, "node": {"name": "JavaScript"}}]},
        }
        route = respx.post(GRAPHQL_URL).mock(
            return_value=Response(200, json=_repositories_response([node]))
        )

        nodes = await graphql_client.fetch_recent_repositories("dev", first=25, languages=3)

        assert nodes == [node]
        sent = json.loads(route.calls.last.request.content)
        assert sent["variables"] == {"login": "dev", "first": 25, "languages": 3}
        assert "PUSHED_AT" in sent["query"]
        assert route.calls.last.request.headers["Authorization"] == "Bearer ghp_test_token_fake_value"

    @respx.mock
    @pytest.mark.asyncio
    async def test_null_user_is_not_found(self, graphql_client):
        respx.post(GRAPHQL_URL).mock(return_value=Response(200, json={"data": {"user": None}}))
        with pytest.raises(GitHubNotFoundError):
            await graphql_client.fetch_recent_repositories("ghost", first=25, languages=3)

    @respx.mock
    @pytest.mark.asyncio
    async def test_not_found_error_type(self, graphql_client):
        respx.post(GRAPHQL_URL).mock(
            return_value=Response(200, json={
                "data": {"user": None},
                "errors": [{"type": "NOT_FOUND", "message": "Could not resolve to a User"}],
            })
        )
        with pytest.raises(GitHubNotFoundError):
            await graphql_client.fetch_recent_repositories("ghost", first=25, languages=3)

    @respx.mock
    @pytest.mark.asyncio
    async def test_malformed_response(self, graphql_client):
        respx.post(GRAPHQL_URL).mock(
            return_value=Response(200, json={"data": {"user": {"repositories": None}}})
        )
        with pytest.raises(GitHubAPIError):
            await graphql_client.fetch_recent_repositories("dev", first=25, languages=3)

    @respx.mock
    @pytest.mark.asyncio
    async def test_errors_without_data(self, graphql_client):
        respx.post(GRAPHQL_URL).mock(
            return_value=Response(200, json={"errors": [{"type": "INTERNAL", "message": "oops"}]})
        )
        with pytest.raises(GitHubAPIError):
            await graphql_client.fetch_recent_repositories("dev", first=25, languages=3)

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limited(self, graphql_client):
        respx.post(GRAPHQL_URL).mock(return_value=Response(403))
        with pytest.raises(GitHubRateLimitError):
            await graphql_client.fetch_recent_repositories("dev", first=25, languages=3)

    @respx.mock
    @pytest.mark.asyncio
    async def test_retry_on_bad_gateway(self, test_settings, monkeypatch):
        monkeypatch.setattr(
            GitHubGraphQLClient, "_backoff_delay", staticmethod(lambda *a, **k: 0)
        )
        settings = test_settings.model_copy(update={"github_max_retries": 1})
        client = GitHubGraphQLClient("ghp_test_token_fake_value", settings=settings)
        route = respx.post(GRAPHQL_URL).mock(
            side_effect=[Response(502), Response(200, json=_repositories_response([]))]
        )

        assert await client.fetch_recent_repositories("dev", first=25, languages=3) == []
        assert route.call_count == 2
