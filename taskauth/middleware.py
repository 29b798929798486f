from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Depends, Header, Request, Response

from taskauth.logging import get_logger
from taskauth.service.errors import (
    AccountBlockedError,
    AuthenticationError,
    PermissionDeniedError,
    SessionExpiredError,
    TokenExpiredError,
    UserNotFoundError,
)
from taskauth.service.permissions import PermissionResolver
from taskauth.service.sessions import LoginResult, SessionManager
from taskauth.service.tokens import TokenService
from taskauth.storage.memory import MemoryStore

logger = get_logger(__name__)

REFRESH_COOKIE = "refreshToken"
REFRESH_COOKIE_MAX_AGE = 7 * 24 * 60 * 60

_BEARER_PREFIX = re.compile(r"^bearer\s+", re.IGNORECASE)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    user_name: str
    roles: frozenset[str]
    permissions: frozenset[str]


@dataclass(frozen=True)
class AuthOutcome:
    context: AuthContext
    # Set when an expired access token was transparently replaced
    rotated: Optional[LoginResult] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Pull the token out of an Authorization header.

    Tolerates surrounding whitespace, runs of spaces, a repeated ``Bearer``
    prefix and a missing one.
    """
    if not header:
        return None
    cleaned = " ".join(header.split())
    while True:
        stripped = _BEARER_PREFIX.sub("", cleaned, count=1)
        if stripped == cleaned:
            break
        cleaned = stripped
    if cleaned.lower() == "bearer":
        return None
    return cleaned or None


def has_permissions(context: Optional[AuthContext], required: Iterable[str]) -> bool:
    if context is None:
        return False
    return set(required) <= context.permissions


class Authenticator:
    """Turns an Authorization header and refresh cookie into an AuthContext."""

    def __init__(
        self,
        store: MemoryStore,
        tokens: TokenService,
        sessions: SessionManager,
        permissions: PermissionResolver,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.permissions = permissions

    async def authenticate_request(
        self, authorization: Optional[str], refresh_cookie: Optional[str] = None
    ) -> AuthOutcome:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("authentication required")
        rotated: Optional[LoginResult] = None
        try:
            claims = self.tokens.verify_access_token(token)
            user_id = claims.user_id
        except TokenExpiredError:
            if not refresh_cookie:
                raise SessionExpiredError() from None
            try:
                rotated = await self.sessions.refresh(refresh_cookie)
            except Exception as exc:
                logger.info("transparent_refresh_failed", error_type=type(exc).__name__)
                raise SessionExpiredError() from exc
            user_id = rotated.user.id
            logger.info("transparent_refresh_succeeded", user_id=user_id)
        return AuthOutcome(context=self._build_context(user_id), rotated=rotated)

    def _build_context(self, user_id: str) -> AuthContext:
        # Always reload: a block or deletion must apply to the next request
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        if user.is_blocked:
            raise AccountBlockedError()
        effective = self.permissions.resolve(user.id)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            user_name=user.display_name,
            roles=effective.role_names,
            permissions=effective.permission_names,
        )


def set_refresh_cookie(
    response: Response, refresh_token: str, *, secure: bool = True
) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=REFRESH_COOKIE_MAX_AGE,
        httponly=True,
        secure=secure,
        samesite="strict",
    )


def clear_refresh_cookie(response: Response, *, secure: bool = True) -> None:
    response.delete_cookie(REFRESH_COOKIE, httponly=True, secure=secure, samesite="strict")


def apply_rotation(response: Response, rotated: LoginResult, *, secure: bool = True) -> None:
    set_refresh_cookie(response, rotated.refresh_token, secure=secure)
    response.headers["Authorization"] = f"Bearer {rotated.access_token}"


async def get_principal(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = request.app.state.runtime
    outcome = await runtime.authenticator.authenticate_request(
        authorization, request.cookies.get(REFRESH_COOKIE)
    )
    if outcome.rotated is not None:
        apply_rotation(response, outcome.rotated, secure=runtime.settings.cookie_secure)
    request.state.auth = outcome.context
    return outcome.context


def authorize(required_permissions: Iterable[str]):
    """Dependency factory rejecting callers that lack any of ``required_permissions``."""
    required = frozenset(required_permissions)

    async def _authorize(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not has_permissions(principal, required):
            logger.warning(
                "permission_denied",
                user_id=principal.user_id,
                required=sorted(required),
            )
            raise PermissionDeniedError(detail={"required": sorted(required)})
        return principal

    return _authorize
