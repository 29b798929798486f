from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from taskauth.config import Settings
from taskauth.logging import get_logger
from taskauth.service.errors import (
    ConflictError,
    DuplicateEmailError,
    NotFoundError,
    ValidationError,
)
from taskauth.service.oauth import username_base
from taskauth.service.passwords import hash_password
from taskauth.service.permissions import PermissionResolver
from taskauth.service.sessions import SessionManager
from taskauth.service.tokens import generate_otp, hash_token
from taskauth.service.totp import generate_secret, provisioning_uri, verify_totp
from taskauth.storage import errors as storage_errors
from taskauth.storage.memory import MemoryStore
from taskauth.storage.models import OneTimeCode, User

logger = get_logger(__name__)

ACTIVATION = "activation"
PASSWORD_RESET = "password_reset"


class AccountService:
    """Registration, activation, password reset, 2FA enrolment and blocking."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        permissions: PermissionResolver,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.settings = settings
        self.permissions = permissions
        self.sessions = sessions
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _issue_code(self, user_id: str, purpose: str, ttl: timedelta) -> str:
        code = generate_otp()
        now = self._now()
        self.store.save_one_time_code(
            OneTimeCode(
                code_hash=hash_token(code),
                purpose=purpose,
                user_id=user_id,
                expires_at=now + ttl,
                created_at=now,
            )
        )
        return code

    def _consume_code(self, user_id: str, purpose: str, code: str) -> bool:
        record = self.store.consume_one_time_code(user_id, purpose, hash_token(code.strip()))
        return record is not None and record.expires_at > self._now()

    def _allocate_username(self, email: str) -> str:
        base = username_base(email)
        candidate = base
        while self.store.find_user_by_username(candidate) is not None:
            candidate = f"{base}{secrets.randbelow(9000) + 1000}"
        return candidate

    async def register(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> Tuple[User, str]:
        """Create an unverified account and return it with its activation code."""
        if self.store.find_user_by_email(email) is not None:
            raise DuplicateEmailError()
        if username and self.store.find_user_by_username(username) is not None:
            raise ConflictError("username already exists", detail={"field": "username"})
        password_hash = await asyncio.to_thread(hash_password, password)
        try:
            user = self.store.create_user(
                email,
                username or self._allocate_username(email),
                password_hash=password_hash,
                full_name=full_name,
            )
        except storage_errors.DuplicateEmailError:
            raise DuplicateEmailError() from None
        except storage_errors.ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from None
        self.permissions.grant_role(user.id, self.settings.default_role)
        code = self._issue_code(
            user.id, ACTIVATION, timedelta(minutes=self.settings.activation_code_ttl_minutes)
        )
        self.logger.info("user_registered", user_id=user.id)
        return user, code

    async def activate(self, email: str, code: str) -> User:
        user = self.store.find_user_by_email(email)
        if user is None:
            raise ValidationError("invalid or expired activation code")
        if user.is_verified:
            raise ValidationError("account already activated")
        if not self._consume_code(user.id, ACTIVATION, code):
            self.logger.info("activation_code_rejected", user_id=user.id)
            raise ValidationError("invalid or expired activation code")
        updated = self.store.update_user(user.id, is_verified=True)
        self.logger.info("user_activated", user_id=user.id)
        return updated or user

    async def resend_activation(self, email: str) -> Tuple[User, str]:
        user = self.store.find_user_by_email(email)
        if user is None:
            raise NotFoundError("user not found")
        if user.is_verified:
            raise ValidationError("account already activated")
        code = self._issue_code(
            user.id, ACTIVATION, timedelta(minutes=self.settings.activation_code_ttl_minutes)
        )
        self.logger.info("activation_code_reissued", user_id=user.id)
        return user, code

    async def forgot_password(self, email: str) -> Optional[Tuple[User, str]]:
        """Issue a reset code; None for unknown addresses so callers answer uniformly."""
        user = self.store.find_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_account")
            return None
        code = self._issue_code(
            user.id, PASSWORD_RESET, timedelta(minutes=self.settings.password_reset_ttl_minutes)
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return user, code

    async def reset_password(self, email: str, code: str, new_password: str) -> User:
        user = self.store.find_user_by_email(email)
        if user is None or not self._consume_code(user.id, PASSWORD_RESET, code):
            self.logger.warning("password_reset_invalid_code")
            raise ValidationError("invalid or expired reset code")
        password_hash = await asyncio.to_thread(hash_password, new_password)
        updated = self.store.update_user(user.id, password_hash=password_hash)
        try:
            await self.sessions.revoke_all_sessions(user.id)
        except Exception as exc:
            self.logger.warning("revoke_sessions_failed", user_id=user.id, error=str(exc))
        self.logger.info("password_reset_completed", user_id=user.id)
        return updated or user

    def _require_user(self, user_id: str) -> User:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def setup_two_factor(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("two-factor authentication already enabled")
        secret = generate_secret()
        self.store.update_user(user.id, two_factor_secret=secret, two_factor_enabled=False)
        uri = provisioning_uri(secret, user.email, self.settings.two_factor_issuer)
        self.logger.info("two_factor_setup_started", user_id=user.id)
        return {"otpauth_uri": uri, "secret": secret}

    async def confirm_two_factor(self, user_id: str, code: str) -> User:
        user = self._require_user(user_id)
        if not user.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        if not verify_totp(user.two_factor_secret, code):
            self.logger.info("two_factor_confirm_rejected", user_id=user.id)
            raise ValidationError("invalid two-factor code")
        updated = self.store.update_user(user.id, two_factor_enabled=True)
        self.logger.info("two_factor_enabled", user_id=user.id)
        return updated or user

    async def set_blocked(self, user_id: str, blocked: bool) -> User:
        user = self._require_user(user_id)
        updated = self.store.update_user(user.id, is_blocked=blocked)
        if blocked:
            await self.sessions.revoke_all_sessions(user.id)
        self.logger.info("user_block_changed", user_id=user.id, blocked=blocked)
        return updated or user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)
