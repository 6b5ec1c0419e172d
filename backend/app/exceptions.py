"""Custom exception classes for the Framework Usage Miner.

All exceptions follow the FUM error format:
{
    "error": {
        "code": "FUM_ERROR_CODE",
        "message": "Human-readable message",
        "details": {}  # optional
    }
}

Error messages must never contain credentials.
"""

from __future__ import annotations

from typing import Any


class FUMBaseError(Exception):
    """Base exception for the Framework Usage Miner."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class ExternalServiceError(FUMBaseError):
    """External service (queue broker, mail relay) unavailable."""

    def __init__(self, service: str, message: str = "Service unavailable") -> None:
        super().__init__(
            code=f"{service.upper()}_SERVICE_ERROR",
            message=message,
            status_code=502,
        )


class GitHubAPIError(FUMBaseError):
    """GitHub API specific errors. Transient from the job's point of view."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(
            code="GITHUB_API_ERROR",
            message=message,
            status_code=status_code,
        )


class GitHubNotFoundError(FUMBaseError):
    """GitHub user, repository, ref or path not found."""

    def __init__(self, resource: str = "resource") -> None:
        super().__init__(
            code="GITHUB_NOT_FOUND",
            message=f"GitHub {resource} not found",
            status_code=404,
            details={"resource": resource},
        )


class GitHubRateLimitError(FUMBaseError):
    """GitHub API rate limit exceeded."""

    def __init__(self, retry_after: int | None = None) -> None:
        details = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            code="GITHUB_RATE_LIMIT",
            message="GitHub API rate limit exceeded. Try again later.",
            status_code=429,
            details=details,
        )


class JobInputError(FUMBaseError):
    """A job that can never succeed. Rejected without redelivery."""


class InvalidJobError(JobInputError):
    """Job payload failed validation."""

    def __init__(self, message: str = "Job payload is invalid") -> None:
        super().__init__(
            code="INVALID_JOB",
            message=message,
            status_code=422,
        )


class UnknownUserError(JobInputError):
    """Job refers to a user that is not registered."""

    def __init__(self) -> None:
        super().__init__(
            code="USER_NOT_FOUND",
            message="User not found",
            status_code=404,
        )


class CredentialSealError(JobInputError):
    """Sealed credential could not be opened. No details exposed."""

    def __init__(self) -> None:
        super().__init__(
            code="CREDENTIAL_SEAL_ERROR",
            message="Job credential could not be decrypted.",
            status_code=422,
        )


class StatsNotFoundError(FUMBaseError):
    """No framework usage has been computed for the user yet."""

    def __init__(self) -> None:
        super().__init__(
            code="STATS_NOT_FOUND",
            message="No framework usage found for the user",
            status_code=404,
        )


class QueuePublishError(ExternalServiceError):
    """Job could not be handed to the broker."""

    def __init__(self) -> None:
        super().__init__(service="queue", message="Job queue unavailable")


class ValidationError(FUMBaseError):
    """Input validation error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=422,
            details=details,
        )
