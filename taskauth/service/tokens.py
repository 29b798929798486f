from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional
from urllib.parse import parse_qs

from taskauth.config import Settings
from taskauth.logging import get_logger
from taskauth.service.errors import (
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
)
from taskauth.storage.memory import MemoryStore
from taskauth.storage.models import User

if TYPE_CHECKING:
    from taskauth.service.permissions import PermissionResolver

logger = get_logger(__name__)

# 40 random bytes, 80 hex characters
REFRESH_TOKEN_BYTES = 40


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    roles: tuple[str, ...]
    user_name: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    refresh_token_id: str


@dataclass(frozen=True)
class RotationResult:
    pair: TokenPair
    user: User


@dataclass(frozen=True)
class ProviderAccessToken:
    """A provider's token response reduced to the fields we use."""

    access_token: str
    token_type: str = "bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


def hash_token(value: str) -> str:
    """SHA-256 hex digest used to store one-time codes."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_token(num_bytes: int = 32) -> str:
    return secrets.token_hex(num_bytes)


def generate_otp(digits: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(digits))


class TokenService:
    """Signs and verifies access tokens and owns refresh-token rotation.

    Access tokens are HS256 JWTs carrying ``userId``, ``roles`` and
    ``userName``; they are never looked up in the store. Refresh tokens are
    opaque random hex strings persisted with device and IP metadata.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        permissions: "PermissionResolver",
    ) -> None:
        self.store = store
        self.settings = settings
        self.permissions = permissions
        self.logger = logger
        self._clock_skew_leeway = timedelta(seconds=0)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    # -- access tokens --------------------------------------------------

    def issue_access_token(
        self, user: User, roles: Iterable[str]
    ) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "userId": user.id,
            "roles": sorted(roles),
            "userName": user.display_name,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), datetime.fromtimestamp(payload["exp"], timezone.utc)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token)
        if payload.get("token_type") != "access":
            raise TokenInvalidError("wrong token type")
        user_id = payload.get("userId")
        roles = payload.get("roles")
        if not isinstance(user_id, str) or not user_id:
            raise TokenInvalidError("token missing userId")
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise TokenInvalidError("token roles malformed")
        exp = datetime.fromtimestamp(float(payload["exp"]), timezone.utc)
        if exp <= self._now() - self._clock_skew_leeway:
            raise TokenExpiredError()
        iat_raw = payload.get("iat")
        issued_at = (
            datetime.fromtimestamp(float(iat_raw), timezone.utc)
            if isinstance(iat_raw, (int, float))
            else exp - self.access_ttl
        )
        return AccessClaims(
            user_id=user_id,
            roles=tuple(roles),
            user_name=str(payload.get("userName") or ""),
            issued_at=issued_at,
            expires_at=exp,
            jti=str(payload.get("jti") or ""),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not token or not token.isascii():
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token") from None
        if not isinstance(header, dict):
            raise TokenInvalidError("malformed token")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("unexpected issuer")
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise TokenInvalidError("unexpected audience")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalidError("token missing exp")
        return payload

    # -- refresh tokens -------------------------------------------------

    async def issue_token_pair(
        self,
        user: User,
        *,
        device_info: str = "Unknown Device",
        ip_address: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> TokenPair:
        """Mint an access token and persist a new refresh token.

        Nothing is returned unless the refresh token row was written, so a
        storage failure fails the whole issuance.
        """
        if roles is None:
            roles = self.permissions.resolve(user.id).role_names
        access_token, access_expires_at = self.issue_access_token(user, roles)
        raw_refresh = secrets.token_hex(REFRESH_TOKEN_BYTES)
        now = self._now()
        record = self.store.create_refresh_token(
            user.id,
            raw_refresh,
            now + self.refresh_ttl,
            device_info=device_info,
            ip_address=ip_address,
            created_at=now,
        )
        self.logger.info(
            "token_pair_issued",
            user_id=user.id,
            refresh_id=record.id,
            device_info=device_info,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=raw_refresh,
            access_expires_at=access_expires_at,
            refresh_expires_at=record.expires_at,
            refresh_token_id=record.id,
        )

    async def rotate_refresh_token(self, old_token: str) -> RotationResult:
        """Exchange ``old_token`` for a new pair, revoking it first.

        The revoke is a compare-and-set on the stored row: of two concurrent
        rotations of one token only the first flips it, the other raises
        RefreshTokenNotFoundError. A crash after the revoke leaves the user
        logged out on that device, never with the old token usable again.
        """
        record = self.store.find_refresh_token_by_token(old_token)
        if record is None:
            raise RefreshTokenNotFoundError()
        if record.is_expired(self._now()):
            self.store.revoke_refresh_token(record.id)
            self.logger.info("refresh_token_expired", refresh_id=record.id, user_id=record.user_id)
            raise RefreshTokenExpiredError()
        user = self.store.find_user_by_id(record.user_id)
        if user is None:
            raise UserNotFoundError()
        if not self.store.revoke_refresh_token(record.id):
            self.logger.warning("refresh_token_replayed", refresh_id=record.id, user_id=user.id)
            raise RefreshTokenNotFoundError()
        pair = await self.issue_token_pair(
            user, device_info=record.device_info, ip_address=record.ip_address
        )
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            old_refresh_id=record.id,
            new_refresh_id=pair.refresh_token_id,
        )
        return RotationResult(pair=pair, user=user)


def normalize_provider_token(raw: Any, *, _depth: int = 0) -> ProviderAccessToken:
    """Reduce a provider token response to one ``ProviderAccessToken``.

    Accepts a bare token string, a JSON or form-encoded body, a dict with
    ``access_token``, or a dict nesting one under ``token``, ``tokens`` or
    ``data``. Anything else raises TokenInvalidError.
    """
    if _depth > 3:
        raise TokenInvalidError("provider token nested too deeply")
    if isinstance(raw, ProviderAccessToken):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    if isinstance(raw, str):
        value = raw.strip()
        if not value:
            raise TokenInvalidError("empty provider token")
        if value.startswith("{"):
            try:
                return normalize_provider_token(json.loads(value), _depth=_depth + 1)
            except json.JSONDecodeError:
                raise TokenInvalidError("unparseable provider token") from None
        if "access_token=" in value:
            parsed = {k: v[0] for k, v in parse_qs(value).items() if v}
            return normalize_provider_token(parsed, _depth=_depth + 1)
        if any(ch.isspace() for ch in value):
            raise TokenInvalidError("provider token contains whitespace")
        return ProviderAccessToken(access_token=value)
    if isinstance(raw, dict):
        if raw.get("error"):
            raise TokenInvalidError(
                "provider rejected the authorization code",
                detail={"provider_error": str(raw.get("error"))},
            )
        token = raw.get("access_token") or raw.get("accessToken")
        if isinstance(token, str) and token.strip():
            expires_in = raw.get("expires_in")
            try:
                expires_in = int(expires_in) if expires_in is not None else None
            except (TypeError, ValueError):
                expires_in = None
            refresh = raw.get("refresh_token")
            return ProviderAccessToken(
                access_token=token.strip(),
                token_type=str(raw.get("token_type") or "bearer").lower(),
                refresh_token=refresh if isinstance(refresh, str) else None,
                expires_in=expires_in,
                scope=raw.get("scope") if isinstance(raw.get("scope"), str) else None,
            )
        for key in ("token", "tokens", "data"):
            nested = raw.get(key)
            if nested is not None:
                return normalize_provider_token(nested, _depth=_depth + 1)
    raise TokenInvalidError("unrecognized provider token shape")
