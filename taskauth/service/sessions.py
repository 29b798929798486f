from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from taskauth.logging import get_logger
from taskauth.service.errors import (
    AccountBlockedError,
    InvalidCredentialsError,
    NotFoundError,
    NotVerifiedError,
    PermissionDeniedError,
    TwoFactorRequiredError,
)
from taskauth.service.passwords import verify_password
from taskauth.service.tokens import TokenPair, TokenService
from taskauth.service.totp import verify_totp
from taskauth.storage.memory import MemoryStore
from taskauth.storage.models import User

logger = get_logger(__name__)

DEFAULT_DEVICE = "Unknown Device"


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    user: User

    @classmethod
    def from_pair(cls, pair: TokenPair, user: User) -> "LoginResult":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            user=user,
        )


@dataclass(frozen=True)
class SessionInfo:
    id: str
    device_info: str
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime


def normalize_device(device_info: Optional[str]) -> str:
    cleaned = " ".join((device_info or "").split())
    return cleaned[:512] or DEFAULT_DEVICE


class SessionManager:
    """Login, refresh, logout and session bookkeeping per (user, device).

    A session is one refresh token. Logging in again from the same device
    string revokes that device's earlier tokens and leaves other devices alone.
    """

    def __init__(self, store: MemoryStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def login(
        self,
        email: str,
        password: Optional[str],
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        two_factor_token: Optional[str] = None,
        *,
        oauth_verified: bool = False,
    ) -> LoginResult:
        """Authenticate and issue a token pair.

        ``password=None`` is the federated path and is only honoured with
        ``oauth_verified=True``, set by the OAuth flow after the provider has
        vouched for the identity. Federated logins skip the TOTP step.
        """
        device = normalize_device(device_info)
        user = self.store.find_user_by_email(email)
        if password is None:
            if not oauth_verified or user is None:
                raise InvalidCredentialsError()
        else:
            if user is None:
                self.logger.info("login_unknown_account")
                raise InvalidCredentialsError()
            # argon2 is CPU-bound; keep it off the event loop
            matches = await asyncio.to_thread(verify_password, user.password_hash, password)
            if not matches:
                self.logger.info("login_bad_password", user_id=user.id)
                raise InvalidCredentialsError()

        if user.is_blocked:
            self.logger.warning("login_blocked_account", user_id=user.id)
            raise AccountBlockedError()
        if not user.is_verified:
            raise NotVerifiedError()
        if password is not None and user.two_factor_enabled:
            if not two_factor_token:
                raise TwoFactorRequiredError()
            if not verify_totp(user.two_factor_secret or "", two_factor_token):
                self.logger.info("login_bad_two_factor_code", user_id=user.id)
                raise InvalidCredentialsError("invalid two-factor code")

        self._revoke_device_sessions(user.id, device)
        pair = await self.tokens.issue_token_pair(
            user, device_info=device, ip_address=ip_address
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            device_info=device,
            federated=password is None,
        )
        return LoginResult.from_pair(pair, user)

    def _revoke_device_sessions(self, user_id: str, device_info: str) -> None:
        # Best effort: a failed cleanup must not block the new login
        try:
            previous = self.store.find_refresh_tokens_by_user_and_device(user_id, device_info)
            for record in previous:
                self.store.revoke_refresh_token(record.id)
            if previous:
                self.logger.info(
                    "device_sessions_superseded",
                    user_id=user_id,
                    device_info=device_info,
                    count=len(previous),
                )
        except Exception as exc:
            self.logger.warning(
                "device_session_cleanup_failed", user_id=user_id, error=str(exc)
            )

    async def refresh(self, refresh_token: str) -> LoginResult:
        result = await self.tokens.rotate_refresh_token(refresh_token)
        if result.user.is_blocked:
            self.store.revoke_refresh_token(result.pair.refresh_token_id)
            self.logger.warning("refresh_blocked_account", user_id=result.user.id)
            raise AccountBlockedError()
        return LoginResult.from_pair(result.pair, result.user)

    async def logout(self, user_id: Optional[str], refresh_token: Optional[str]) -> None:
        """Revoke ``refresh_token``. Never raises; logout always succeeds for the caller."""
        if not refresh_token:
            return
        try:
            record = self.store.find_refresh_token_by_token(refresh_token)
            if record is None:
                self.logger.info("logout_token_missing", user_id=user_id)
                return
            if user_id is not None and record.user_id != user_id:
                self.logger.warning(
                    "logout_token_owner_mismatch", user_id=user_id, refresh_id=record.id
                )
                return
            self.store.revoke_refresh_token(record.id)
            self.logger.info("logout_succeeded", user_id=record.user_id, refresh_id=record.id)
        except Exception as exc:
            self.logger.warning("logout_revoke_failed", user_id=user_id, error=str(exc))

    async def revoke_all_sessions(self, user_id: str) -> int:
        count = self.store.revoke_all_refresh_tokens_for_user(user_id)
        self.logger.info("all_sessions_revoked", user_id=user_id, count=count)
        return count

    async def list_active_sessions(self, user_id: str) -> List[SessionInfo]:
        now = self._now()
        active = [
            record
            for record in self.store.find_refresh_tokens_by_user(user_id)
            if record.is_active(now)
        ]
        active.sort(key=lambda record: record.created_at, reverse=True)
        return [
            SessionInfo(
                id=record.id,
                device_info=record.device_info,
                ip_address=record.ip_address,
                created_at=record.created_at,
                expires_at=record.expires_at,
            )
            for record in active
        ]

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        record = self.store.find_refresh_token_by_id(session_id)
        if record is None or record.is_revoked:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if record.user_id != user_id:
            self.logger.warning(
                "cross_user_session_revoke_denied", user_id=user_id, session_id=session_id
            )
            raise PermissionDeniedError("cannot revoke another user's session")
        self.store.revoke_refresh_token(record.id)
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id)

    def sweep_refresh_tokens(self) -> int:
        """Delete expired or revoked refresh tokens; returns the number removed."""
        removed = self.store.delete_expired_or_revoked_refresh_tokens(self._now())
        self.logger.info("refresh_sweep_completed", removed=removed)
        return removed
