from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode, urlparse

import httpx

from taskauth.config import Settings
from taskauth.logging import get_logger, sanitize_error_message
from taskauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from taskauth.service.passwords import make_unusable_password
from taskauth.service.permissions import PermissionResolver
from taskauth.service.sessions import LoginResult, SessionManager
from taskauth.service.tokens import ProviderAccessToken, normalize_provider_token
from taskauth.storage.errors import ConstraintViolation, DuplicateEmailError
from taskauth.storage.memory import MemoryStore
from taskauth.storage.models import PendingOAuthLink, User

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

_USERNAME_CLEANUP = re.compile(r"[^a-z0-9_.-]+")
_MAX_USERNAME_ATTEMPTS = 20

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthProfile:
    email: str
    provider_uid: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None


def username_base(source: str) -> str:
    local = source.split("@", 1)[0].lower()
    cleaned = _USERNAME_CLEANUP.sub("", local).strip("._-")
    return cleaned[:48] or "user"


class OAuthReconciler:
    """Maps provider identities onto local accounts and runs the code flow."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        permissions: PermissionResolver,
        sessions: SessionManager,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.permissions = permissions
        self.sessions = sessions
        self._transport = transport
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def reconcile(self, provider: str, profile: OAuthProfile) -> User:
        """Find or create the local user behind ``profile`` and link ``provider``.

        Concurrent first logins for one email converge: the loser of the
        create race gets DuplicateEmailError from the store and re-reads.
        """
        email = (profile.email or "").strip().lower()
        if not email:
            raise ValidationError("provider profile has no email", detail={"provider": provider})
        user = self.store.find_user_by_email(email)
        if user is None:
            user = self._create_federated_user(provider, profile, email)
        return self._link_provider(user, provider, profile)

    def _create_federated_user(self, provider: str, profile: OAuthProfile, email: str) -> User:
        base = username_base(profile.username or email)
        for attempt in range(_MAX_USERNAME_ATTEMPTS):
            username = base if attempt == 0 else f"{base}{secrets.randbelow(9000) + 1000}"
            if self.store.find_user_by_username(username) is not None:
                continue
            try:
                user = self.store.create_user(
                    email,
                    username,
                    password_hash=make_unusable_password(),
                    full_name=profile.name,
                    is_verified=True,
                    oauth_providers={provider: profile.provider_uid or ""},
                    avatar_url=profile.avatar_url,
                )
            except DuplicateEmailError:
                existing = self.store.find_user_by_email(email)
                if existing is None:
                    raise
                self.logger.info("oauth_create_race_converged", provider=provider, user_id=existing.id)
                return existing
            except ConstraintViolation:
                # Username taken between the lookup and the insert
                continue
            self.permissions.grant_role(user.id, self.settings.default_role)
            self.logger.info("oauth_user_created", provider=provider, user_id=user.id)
            return user
        raise ConflictError("could not allocate a unique username", detail={"base": base})

    def _link_provider(self, user: User, provider: str, profile: OAuthProfile) -> User:
        uid = profile.provider_uid or ""
        current = user.oauth_providers.get(provider)
        changes: dict = {}
        if current is None or (uid and current != uid):
            providers = dict(user.oauth_providers)
            providers[provider] = uid
            changes["oauth_providers"] = providers
        if not user.is_verified:
            # The provider vouched for the address; a password set by whoever
            # registered it unverified must not survive the takeover.
            changes["is_verified"] = True
            changes["password_hash"] = make_unusable_password()
        if not user.avatar_url and profile.avatar_url:
            changes["avatar_url"] = profile.avatar_url
        if not changes:
            return user
        updated = self.store.update_user(user.id, **changes)
        self.logger.info("oauth_provider_linked", provider=provider, user_id=user.id)
        return updated or user

    # -- authorization code flow ----------------------------------------

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        """Get OAuth client credentials for a provider."""
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        elif provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def configured_providers(self) -> list[str]:
        return [name for name in OAUTH_PROVIDERS if self._get_oauth_credentials(name)[0]]

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    async def start(self, provider: str, redirect_uri: Optional[str] = None) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)

        now = self._now()
        self.store.delete_expired_pending_oauth_links(now)
        state = uuid.uuid4().hex
        self.store.create_pending_oauth_link(
            PendingOAuthLink(
                state=state,
                provider=provider,
                redirect_uri=callback_uri,
                expires_at=now + timedelta(minutes=self.settings.oauth_state_ttl_minutes),
                created_at=now,
            )
        )

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        authorization_url = f"{provider_config['auth_url']}?{urlencode(params)}"
        return {"authorization_url": authorization_url, "state": state, "provider": provider}

    async def complete(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Consume ``state``, exchange ``code`` and log the reconciled user in."""
        link = self.store.pop_pending_oauth_link(state)
        if link is None or link.provider != provider or link.expires_at <= self._now():
            self.logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("oauth verification failed")
        profile = await self._exchange_code(provider, code, link.redirect_uri)
        user = await self.reconcile(provider, profile)
        return await self.sessions.login(
            user.email,
            None,
            device_info,
            ip_address,
            oauth_verified=True,
        )

    async def _exchange_code(
        self, provider: str, code: str, redirect_uri: Optional[str]
    ) -> OAuthProfile:
        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError("oauth verification failed")
        provider_config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri or self.settings.oauth_redirect_uri or "",
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                try:
                    raw_token = token_response.json()
                except ValueError:
                    raw_token = token_response.text
                provider_token = normalize_provider_token(raw_token)

                headers = self._userinfo_headers(provider, provider_token)
                userinfo_response = await client.get(provider_config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise AuthenticationError("oauth verification failed")
                profile = self._parse_oauth_userinfo(provider, userinfo)

                if provider == "github":
                    profile = await self._github_primary_email(client, headers, profile)
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("oauth verification failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error(
                "oauth_exchange_error",
                provider=provider,
                error=sanitize_error_message(str(exc)),
            )
            raise AuthenticationError("oauth verification failed") from exc

        if not profile.email:
            self.logger.error("oauth_identity_missing_verified_email", provider=provider)
            raise AuthenticationError(
                "provider did not share a verified email address", detail={"provider": provider}
            )
        self.logger.info("oauth_exchange_success", provider=provider, provider_uid=profile.provider_uid)
        return profile

    @staticmethod
    def _userinfo_headers(provider: str, token: ProviderAccessToken) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {token.access_token}"}
        if provider == "github":
            headers["Accept"] = "application/vnd.github+json"
        return headers

    async def _github_primary_email(
        self, client: httpx.AsyncClient, headers: dict[str, str], profile: OAuthProfile
    ) -> OAuthProfile:
        response = await client.get(OAUTH_PROVIDERS["github"]["emails_url"], headers=headers)
        if response.status_code != 200:
            return profile
        emails = response.json()
        if not isinstance(emails, list):
            self.logger.warning("oauth_github_emails_invalid_format")
            return profile
        primary = next(
            (
                e.get("email")
                for e in emails
                if isinstance(e, dict)
                and isinstance(e.get("email"), str)
                and e.get("primary") is True
                and e.get("verified") is True
            ),
            None,
        )
        if not primary:
            return profile
        return OAuthProfile(
            email=primary,
            provider_uid=profile.provider_uid,
            name=profile.name,
            username=profile.username,
            avatar_url=profile.avatar_url,
        )

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> OAuthProfile:
        """Parse user info from OAuth provider into an OAuthProfile.

        Only an address the provider marks as verified is kept; otherwise
        ``email`` is left empty. GitHub's profile email carries no such flag,
        so it always comes from the primary verified entry of /user/emails.
        """
        if provider == "google":
            verified = _is_true(userinfo.get("verified_email")) or _is_true(
                userinfo.get("email_verified")
            )
            if not verified and userinfo.get("email"):
                self.logger.warning("oauth_unverified_email_ignored", provider=provider)
            return OAuthProfile(
                email=(userinfo.get("email") or "") if verified else "",
                provider_uid=str(userinfo.get("id") or userinfo.get("sub") or ""),
                name=userinfo.get("name"),
                avatar_url=userinfo.get("picture"),
            )
        return OAuthProfile(
            email="",
            provider_uid=str(userinfo.get("id") or ""),
            name=userinfo.get("name") or userinfo.get("login"),
            username=userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
        )


def _is_true(value: object) -> bool:
    return value is True or (isinstance(value, str) and value.lower() == "true")
