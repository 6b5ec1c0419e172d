"""Job and repository records shared by the dispatcher, consumer and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from app.exceptions import InvalidJobError
from services.credential_crypto import open_credential, seal_credential

REDACTED = "[REDACTED]"


class Job(BaseModel):
    """Request to mine framework usage for one user.

    On the queue the credential travels sealed (see `to_message`); it is
    only opened again inside the consumer.
    """

    model_config = ConfigDict(frozen=True)

    username: str = Field(
        ..., min_length=1, max_length=39, pattern=r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$"
    )
    email: str | None = Field(None, max_length=255)
    credential: str = Field(..., min_length=1, repr=False)

    def to_message(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "email": self.email,
            "sealed_credential": seal_credential(self.credential, self.username),
        }

    @classmethod
    def from_message(cls, payload: Any) -> Job:
        """Rebuild a job from a queue payload.

        Raises InvalidJobError for malformed payloads and
        CredentialSealError when the credential cannot be opened.
        """
        if not isinstance(payload, dict):
            raise InvalidJobError("Job payload must be an object")
        username = payload.get("username")
        sealed = payload.get("sealed_credential")
        if not isinstance(username, str) or not isinstance(sealed, str):
            raise InvalidJobError("Job payload is missing username or credential")

        credential = open_credential(sealed, username)
        try:
            return cls(username=username, email=payload.get("email"), credential=credential)
        except PydanticValidationError as exc:
            raise InvalidJobError(f"Job payload is invalid: {exc.error_count()} error(s)") from exc

    def redacted(self) -> dict[str, Any]:
        return {"username": self.username, "email": self.email, "credential": REDACTED}


class LanguageShare(NamedTuple):
    """Bytes of one language in a repository."""

    name: str
    size: int


@dataclass(eq=False)
class RepositoryInfo:
    """One of the user's recently pushed repositories.

    Keyed by name: two infos with the same name are the same repository.
    `commit_shas` is filled in by the CommitCollector and read-only after.
    """

    name: str
    default_branch: str
    commit_shas: list[str] = field(default_factory=list)
    top_languages: list[LanguageShare] = field(default_factory=list)

    @property
    def language_names(self) -> list[str]:
        return [language.name for language in self.top_languages]

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RepositoryInfo):
            return NotImplemented
        return self.name == other.name

    def __repr__(self) -> str:
        return (
            f"RepositoryInfo(name={self.name!r}, branch={self.default_branch!r}, "
            f"commits={len(self.commit_shas)}, languages={self.language_names})"
        )
