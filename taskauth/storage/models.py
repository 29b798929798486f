from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    full_name: Optional[str] = None
    # Unusable placeholder (see passwords.make_unusable_password) for OAuth-only accounts
    password_hash: Optional[str] = None
    is_verified: bool = False
    is_blocked: bool = False
    oauth_providers: Dict[str, str] = field(default_factory=dict)
    avatar_url: Optional[str] = None
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def display_name(self) -> str:
        return self.full_name or self.username


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None


@dataclass
class Permission:
    id: str
    name: str
    description: Optional[str] = None


@dataclass
class RoleAssignment:
    user_id: str
    role_id: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RolePermission:
    role_id: str
    permission_id: str


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    device_info: str = "Unknown Device"
    ip_address: Optional[str] = None
    is_revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class PendingOAuthLink:
    """Authorization state handed to a provider and checked on callback."""

    state: str
    provider: str
    expires_at: datetime
    redirect_uri: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OneTimeCode:
    code_hash: str
    purpose: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    failed_attempts: int = 0
