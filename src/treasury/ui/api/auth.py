"""Resolve the calling user and their chapter from a bearer token."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from treasury.adapters.db.facade import DB
from treasury.core.errors import UnauthorizedError

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Caller:
    """Authenticated user and the chapter they belong to."""

    user_id: str
    chapter_id: str

    def require_chapter(self, chapter_id: str) -> None:
        """Raise UnauthorizedError unless the caller belongs to chapter_id."""
        if self.chapter_id != chapter_id:
            raise UnauthorizedError("Caller does not belong to this chapter")


class Authenticator(Protocol):
    def authenticate(self, authorization: str | None) -> Caller: ...


class StaticTokenAuthenticator:
    """
    Map bearer tokens to users from a fixed table.

    The token table comes from configuration; chapter membership comes
    from the user_profiles table so it follows the datastore.
    """

    def __init__(self, tokens: Mapping[str, str], db: DB) -> None:
        self._tokens = dict(tokens)
        self._db = db

    def authenticate(self, authorization: str | None) -> Caller:
        """
        Resolve an Authorization header to a Caller.

        Raises:
            UnauthorizedError: If the header is missing or malformed, the
                token is unknown, or the user has no chapter
        """
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise UnauthorizedError("Missing bearer token")
        token = authorization[len(BEARER_PREFIX) :].strip()
        user_id = self._tokens.get(token)
        if user_id is None:
            raise UnauthorizedError("Invalid bearer token")

        profile = self._db.get_user_profile(user_id)
        if profile is None:
            raise UnauthorizedError(f"User {user_id} is not a chapter member")
        return Caller(user_id=profile.user_id, chapter_id=profile.chapter_id)
