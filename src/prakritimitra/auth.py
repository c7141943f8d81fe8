"""Bearer token verification.

Accounts are owned by a separate service; this server only verifies the
HS256 JWTs it issues. Claims used:

- ``sub`` (or legacy ``id``): user id
- ``name``: display name
- ``role``: ``volunteer``, ``organizer`` or ``admin``
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated, Literal

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from prakritimitra.config import Settings, SettingsDep
from prakritimitra.exceptions import NotAuthenticated, NotOrganizer

log = logging.getLogger(__name__)

Role = Literal["volunteer", "organizer", "admin"]

ORGANIZER_ROLES: frozenset[str] = frozenset({"organizer", "admin"})


class Principal(BaseModel):
    """The authenticated caller."""

    id: str
    name: str = "User"
    role: Role = "volunteer"

    @property
    def is_organizer(self) -> bool:
        return self.role in ORGANIZER_ROLES


def decode_token(token: str, settings: Settings) -> Principal:
    """Verify a bearer token and return its principal.

    Raises
    ------
    ProblemException
        ``NotAuthenticated`` when the token is missing, expired, malformed
        or carries no user id.
    """
    if not token:
        raise NotAuthenticated.exception("Authentication token required")
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError as e:
        log.debug("Rejected token: %s", e)
        raise NotAuthenticated.exception("Invalid or expired token") from e

    user_id = claims.get("sub") or claims.get("id")
    if not user_id:
        raise NotAuthenticated.exception("Token has no subject")
    role = claims.get("role", "volunteer")
    if role not in ("volunteer", "organizer", "admin"):
        role = "volunteer"
    return Principal(id=str(user_id), name=claims.get("name") or "User", role=role)


def create_access_token(
    settings: Settings,
    user_id: str,
    name: str,
    role: Role = "volunteer",
    expires_in: timedelta = timedelta(days=7),
) -> str:
    """Issue a token accepted by ``decode_token``.

    Used by the CLI and the test-suite; production tokens come from the
    account service.
    """
    now = datetime.now(UTC)
    claims = {
        "sub": user_id,
        "name": name,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(
        claims, settings.jwt_secret.get_secret_value(), algorithm=settings.jwt_algorithm
    )


_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    settings: SettingsDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
) -> Principal:
    """Resolve the caller from the ``Authorization: Bearer`` header."""
    if credentials is None:
        raise NotAuthenticated.exception("Authentication token required")
    return decode_token(credentials.credentials, settings)


CurrentUserDep = Annotated[Principal, Depends(get_current_user)]


async def get_organizer(user: CurrentUserDep) -> Principal:
    if not user.is_organizer:
        raise NotOrganizer.exception("Organizer role required")
    return user


OrganizerDep = Annotated[Principal, Depends(get_organizer)]


def token_from_handshake(auth: dict | None, environ: dict | None = None) -> str:
    """Extract the bearer token from a Socket.IO handshake.

    Checks the ``auth`` payload first, then the ``Authorization`` header
    of the handshake request.
    """
    if auth and isinstance(auth.get("token"), str):
        return auth["token"]
    header = (environ or {}).get("HTTP_AUTHORIZATION", "")
    if header.lower().startswith("bearer "):
        return header[7:]
    return ""
