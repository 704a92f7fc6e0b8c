"""Bearer-token authentication for the chat API.

Tokens map to user ids through configuration (COACH_API_TOKENS). With
COACH_DEV_USER_ID set, requests that carry no Authorization header are
treated as that user, for local development against a single account.
"""

from __future__ import annotations

import logging

from starlette.authentication import (
    AuthCredentials,
    AuthenticationBackend,
    AuthenticationError,
    SimpleUser,
)
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class CoachUser(SimpleUser):
    """Authenticated caller; identity is the user id threads are owned by."""

    @property
    def identity(self) -> str:
        return self.username


class BearerTokenBackend(AuthenticationBackend):
    """Resolve `Authorization: Bearer <token>` to a user id."""

    def __init__(self, tokens: dict[str, str], dev_user_id: str = "") -> None:
        self._tokens = tokens
        self._dev_user_id = dev_user_id
        if not tokens and not dev_user_id:
            logger.warning("No API tokens configured and no dev user -- every chat request will be rejected")

    async def authenticate(self, conn: HTTPConnection) -> tuple[AuthCredentials, CoachUser] | None:
        header = conn.headers.get("authorization")
        if not header:
            if self._dev_user_id:
                return AuthCredentials(["authenticated"]), CoachUser(self._dev_user_id)
            return None

        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("Malformed authorization header")

        user_id = self._tokens.get(token)
        if user_id is None:
            raise AuthenticationError("Unknown token")
        return AuthCredentials(["authenticated"]), CoachUser(user_id)


def unauthorized(conn: HTTPConnection | None = None, exc: Exception | None = None) -> JSONResponse:
    """401 body shared by the middleware error hook and route guards."""
    if exc is not None:
        logger.debug("Rejected request: %s", exc)
    return JSONResponse({"message": "Unauthorized"}, status_code=401)
