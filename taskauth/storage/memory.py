from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from taskauth.logging import get_logger
from taskauth.storage.errors import ConstraintViolation, DuplicateEmailError
from taskauth.storage.models import (
    OneTimeCode,
    PendingOAuthLink,
    Permission,
    RefreshToken,
    Role,
    RoleAssignment,
    RolePermission,
    User,
)

# Misses tolerated before an activation or reset code is discarded
MAX_CODE_ATTEMPTS = 5

_USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "username",
        "full_name",
        "password_hash",
        "is_verified",
        "is_blocked",
        "oauth_providers",
        "avatar_url",
        "two_factor_secret",
        "two_factor_enabled",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process credential store.

    Every read hands out a copy, so callers cannot mutate stored rows without
    going through an update method. Uniqueness (email, username, refresh token
    value) and single-row revocation are enforced under one lock. When
    ``fs_root`` is given, state is written to ``<fs_root>/state`` after each
    mutation and reloaded on construction.
    """

    def __init__(
        self, fs_root: str | None = None, *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_assignments: List[RoleAssignment] = []
        self.role_permissions: List[RolePermission] = []
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.pending_oauth_links: Dict[str, PendingOAuthLink] = {}
        self.one_time_codes: Dict[tuple[str, str], OneTimeCode] = {}
        # RLock so nested helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(encryption_key)
        if self.fs_root is not None:
            self._load_state()

    # -- infrastructure -------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material
            or os.getenv("STORE_ENCRYPTION_KEY")
            or os.getenv("JWT_SECRET")
        )
        if not material and self.fs_root is not None:
            key_path = self.fs_root / ".store_key"
            if key_path.exists():
                material = key_path.read_text().strip()
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist store encryption key") from exc
        if not material:
            # Nothing outlives the process, so a per-process key is enough
            material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            return None

    def _export_user(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return replace(
            user,
            oauth_providers=dict(user.oauth_providers),
            two_factor_secret=self._decrypt_secret(user.two_factor_secret),
        )

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- users ----------------------------------------------------------

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._export_user(self.users.get(user_id))

    def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            match = next((u for u in self.users.values() if u.email == normalized), None)
            return self._export_user(match)

    def find_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            match = next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )
            return self._export_user(match)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._export_user(u) for u in ordered[:limit]]

    def create_user(
        self,
        email: str,
        username: str,
        *,
        password_hash: Optional[str] = None,
        full_name: Optional[str] = None,
        is_verified: bool = False,
        oauth_providers: Optional[Dict[str, str]] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise DuplicateEmailError(normalized)
            self._ensure_username_free(username)
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                full_name=full_name,
                password_hash=password_hash,
                is_verified=is_verified,
                oauth_providers=dict(oauth_providers or {}),
                avatar_url=avatar_url,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._export_user(user)

    def _ensure_username_free(self, username: str, *, exclude_id: Optional[str] = None) -> None:
        lowered = username.lower()
        for existing in self.users.values():
            if existing.id != exclude_id and existing.username.lower() == lowered:
                raise ConstraintViolation("username already exists", {"field": "username"})

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation(
                "unknown user fields", {"fields": sorted(unknown)}
            )
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in changes:
                changes["email"] = self._normalize_email(changes["email"])
                for existing in self.users.values():
                    if existing.id != user_id and existing.email == changes["email"]:
                        raise DuplicateEmailError(changes["email"])
            if "username" in changes:
                self._ensure_username_free(changes["username"], exclude_id=user_id)
            if "two_factor_secret" in changes:
                changes["two_factor_secret"] = self._encrypt_secret(
                    changes["two_factor_secret"]
                )
            if "oauth_providers" in changes:
                changes["oauth_providers"] = dict(changes["oauth_providers"] or {})
            updated = replace(user, updated_at=_utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return self._export_user(updated)

    # -- roles and permissions ------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=str(uuid.uuid4()), name=name, description=description)
            self.roles[role.id] = role
            self._persist_state()
            return replace(role)

    def find_role_by_id(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def find_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(id=str(uuid.uuid4()), name=name, description=description)
            self.permissions[permission.id] = permission
            self._persist_state()
            return replace(permission)

    def find_permission_by_id(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            return replace(permission) if permission else None

    def find_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            permission = next((p for p in self.permissions.values() if p.name == name), None)
            return replace(permission) if permission else None

    def find_role_assignments_by_user(self, user_id: str) -> List[RoleAssignment]:
        with self._data_lock:
            return [replace(a) for a in self.role_assignments if a.user_id == user_id]

    def create_role_assignment(self, user_id: str, role_id: str) -> RoleAssignment:
        with self._data_lock:
            for existing in self.role_assignments:
                if existing.user_id == user_id and existing.role_id == role_id:
                    return replace(existing)
            assignment = RoleAssignment(user_id=user_id, role_id=role_id)
            self.role_assignments.append(assignment)
            self._persist_state()
            return replace(assignment)

    def delete_role_assignment(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            before = len(self.role_assignments)
            self.role_assignments = [
                a
                for a in self.role_assignments
                if not (a.user_id == user_id and a.role_id == role_id)
            ]
            removed = len(self.role_assignments) != before
            if removed:
                self._persist_state()
            return removed

    def create_role_permission(self, role_id: str, permission_id: str) -> RolePermission:
        with self._data_lock:
            for existing in self.role_permissions:
                if existing.role_id == role_id and existing.permission_id == permission_id:
                    return replace(existing)
            edge = RolePermission(role_id=role_id, permission_id=permission_id)
            self.role_permissions.append(edge)
            self._persist_state()
            return replace(edge)

    def delete_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            before = len(self.role_permissions)
            self.role_permissions = [
                e
                for e in self.role_permissions
                if not (e.role_id == role_id and e.permission_id == permission_id)
            ]
            removed = len(self.role_permissions) != before
            if removed:
                self._persist_state()
            return removed

    def find_role_permissions_by_roles(self, role_ids: Iterable[str]) -> List[RolePermission]:
        wanted = set(role_ids)
        if not wanted:
            return []
        with self._data_lock:
            return [replace(e) for e in self.role_permissions if e.role_id in wanted]

    # -- refresh tokens -------------------------------------------------

    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        device_info: str = "Unknown Device",
        ip_address: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if any(t.token == token for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                id=str(uuid.uuid4()),
                token=token,
                user_id=user_id,
                expires_at=expires_at,
                device_info=device_info,
                ip_address=ip_address,
                created_at=created_at or _utcnow(),
            )
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return replace(record)

    def find_refresh_token_by_token(self, token: str) -> Optional[RefreshToken]:
        """Return the non-revoked record holding ``token``, expired or not."""
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if not record.is_revoked and record.token == token:
                    return replace(record)
            return None

    def find_refresh_token_by_id(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def find_refresh_tokens_by_user_and_device(
        self, user_id: str, device_info: str
    ) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.device_info == device_info and not t.is_revoked
            ]

    def find_refresh_tokens_by_user(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and not t.is_revoked
            ]

    def revoke_refresh_token(self, token_id: str) -> bool:
        """Flip ``is_revoked`` if still unset; False when missing or already revoked."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.is_revoked:
                return False
            record.is_revoked = True
            self._persist_state()
            return True

    def revoke_all_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def delete_expired_or_revoked_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or _utcnow()
        with self._data_lock:
            stale = [
                token_id
                for token_id, record in self.refresh_tokens.items()
                if record.is_revoked or record.expires_at <= cutoff
            ]
            for token_id in stale:
                self.refresh_tokens.pop(token_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- OAuth state ----------------------------------------------------

    def create_pending_oauth_link(self, link: PendingOAuthLink) -> PendingOAuthLink:
        with self._data_lock:
            if link.state in self.pending_oauth_links:
                raise ConstraintViolation("oauth state already exists", {"field": "state"})
            self.pending_oauth_links[link.state] = replace(link)
            self._persist_state()
            return replace(link)

    def pop_pending_oauth_link(self, state: str) -> Optional[PendingOAuthLink]:
        with self._data_lock:
            link = self.pending_oauth_links.pop(state, None)
            if link is not None:
                self._persist_state()
            return link

    def delete_expired_pending_oauth_links(self, now: Optional[datetime] = None) -> int:
        cutoff = now or _utcnow()
        with self._data_lock:
            expired = [s for s, link in self.pending_oauth_links.items() if link.expires_at <= cutoff]
            for state in expired:
                self.pending_oauth_links.pop(state, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- one-time codes -------------------------------------------------

    def save_one_time_code(self, code: OneTimeCode) -> None:
        """Store ``code``, replacing any outstanding code for the same user and purpose."""
        with self._data_lock:
            self.one_time_codes[(code.user_id, code.purpose)] = replace(code)
            self._persist_state()

    def consume_one_time_code(
        self,
        user_id: str,
        purpose: str,
        code_hash: str,
        *,
        max_attempts: int = MAX_CODE_ATTEMPTS,
    ) -> Optional[OneTimeCode]:
        """Pop the code if ``code_hash`` matches.

        A miss counts against the stored code, which is discarded once it
        reaches ``max_attempts`` misses.
        """
        with self._data_lock:
            stored = self.one_time_codes.get((user_id, purpose))
            if stored is None:
                return None
            if not hmac.compare_digest(stored.code_hash, code_hash):
                stored.failed_attempts += 1
                if stored.failed_attempts >= max_attempts:
                    self.one_time_codes.pop((user_id, purpose), None)
                    self.logger.warning(
                        "one_time_code_discarded",
                        user_id=user_id,
                        purpose=purpose,
                        failed_attempts=stored.failed_attempts,
                    )
                self._persist_state()
                return None
            self.one_time_codes.pop((user_id, purpose), None)
            self._persist_state()
            return stored

    # -- persistence ----------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "roles": [{"id": r.id, "name": r.name, "description": r.description} for r in self.roles.values()],
            "permissions": [
                {"id": p.id, "name": p.name, "description": p.description}
                for p in self.permissions.values()
            ],
            "role_assignments": [
                {
                    "user_id": a.user_id,
                    "role_id": a.role_id,
                    "created_at": self._serialize_datetime(a.created_at),
                }
                for a in self.role_assignments
            ],
            "role_permissions": [
                {"role_id": e.role_id, "permission_id": e.permission_id}
                for e in self.role_permissions
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "pending_oauth_links": [
                {
                    "state": link.state,
                    "provider": link.provider,
                    "redirect_uri": link.redirect_uri,
                    "expires_at": self._serialize_datetime(link.expires_at),
                    "created_at": self._serialize_datetime(link.created_at),
                }
                for link in self.pending_oauth_links.values()
            ],
            "one_time_codes": [
                {
                    "user_id": code.user_id,
                    "purpose": code.purpose,
                    "code_hash": code.code_hash,
                    "expires_at": self._serialize_datetime(code.expires_at),
                    "created_at": self._serialize_datetime(code.created_at),
                    "failed_attempts": code.failed_attempts,
                }
                for code in self.one_time_codes.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.roles = {r["id"]: Role(**r) for r in data.get("roles", [])}
        self.permissions = {p["id"]: Permission(**p) for p in data.get("permissions", [])}
        self.role_assignments = [
            RoleAssignment(
                user_id=a["user_id"],
                role_id=a["role_id"],
                created_at=self._deserialize_datetime(a["created_at"]),
            )
            for a in data.get("role_assignments", [])
        ]
        self.role_permissions = [RolePermission(**e) for e in data.get("role_permissions", [])]
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t) for t in data.get("refresh_tokens", [])
        }
        self.pending_oauth_links = {
            link["state"]: PendingOAuthLink(
                state=link["state"],
                provider=link["provider"],
                redirect_uri=link.get("redirect_uri"),
                expires_at=self._deserialize_datetime(link["expires_at"]),
                created_at=self._deserialize_datetime(link["created_at"]),
            )
            for link in data.get("pending_oauth_links", [])
        }
        self.one_time_codes = {
            (code["user_id"], code["purpose"]): OneTimeCode(
                code_hash=code["code_hash"],
                purpose=code["purpose"],
                user_id=code["user_id"],
                expires_at=self._deserialize_datetime(code["expires_at"]),
                created_at=self._deserialize_datetime(code["created_at"]),
                failed_attempts=int(code.get("failed_attempts", 0)),
            )
            for code in data.get("one_time_codes", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        # two_factor_secret is already ciphertext in memory
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "full_name": user.full_name,
            "password_hash": user.password_hash,
            "is_verified": user.is_verified,
            "is_blocked": user.is_blocked,
            "oauth_providers": user.oauth_providers,
            "avatar_url": user.avatar_url,
            "two_factor_secret": user.two_factor_secret,
            "two_factor_enabled": user.two_factor_enabled,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            full_name=data.get("full_name"),
            password_hash=data.get("password_hash"),
            is_verified=data.get("is_verified", False),
            is_blocked=data.get("is_blocked", False),
            oauth_providers=data.get("oauth_providers") or {},
            avatar_url=data.get("avatar_url"),
            two_factor_secret=data.get("two_factor_secret"),
            two_factor_enabled=data.get("two_factor_enabled", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "token": record.token,
            "user_id": record.user_id,
            "device_info": record.device_info,
            "ip_address": record.ip_address,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_revoked": record.is_revoked,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token=data["token"],
            user_id=data["user_id"],
            device_info=data.get("device_info") or "Unknown Device",
            ip_address=data.get("ip_address"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
