from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from taskauth.api.schemas import (
    ActivateRequest,
    AssignRoleRequest,
    AuthResponse,
    BlockUserRequest,
    CodeIssuedResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OAuthStartRequest,
    OAuthStartResponse,
    PasswordResetConfirm,
    RegisterRequest,
    RegisterResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TwoFactorConfirmRequest,
    TwoFactorSetupResponse,
    UserListResponse,
    UserResponse,
)
from taskauth.logging import get_logger
from taskauth.middleware import (
    REFRESH_COOKIE,
    AuthContext,
    authorize,
    clear_refresh_cookie,
    get_principal,
    set_refresh_cookie,
)
from taskauth.service.errors import NotFoundError
from taskauth.service.runtime import Runtime
from taskauth.service.sessions import LoginResult
from taskauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MANAGE_USERS = "Manage Users"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_response(runtime: Runtime, user: User) -> UserResponse:
    effective = runtime.permissions.resolve(user.id)
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        full_name=user.full_name,
        is_verified=user.is_verified,
        is_blocked=user.is_blocked,
        two_factor_enabled=user.two_factor_enabled,
        oauth_providers=sorted(user.oauth_providers),
        avatar_url=user.avatar_url,
        roles=sorted(effective.role_names),
        permissions=sorted(effective.permission_names),
        created_at=user.created_at,
    )


def _auth_envelope(runtime: Runtime, response: Response, result: LoginResult) -> Envelope:
    set_refresh_cookie(response, result.refresh_token, secure=runtime.settings.cookie_secure)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            access_expires_at=result.access_expires_at,
            refresh_expires_at=result.refresh_expires_at,
            user=_user_response(runtime, result.user),
        ),
    )


def _exposed_code(runtime: Runtime, code: Optional[str]) -> Optional[str]:
    # Codes are never delivered out of band; only test runs read them back
    return code if runtime.settings.test_mode else None


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an unverified account with the default role.

    An activation code is issued with it; the account cannot log in until
    ``/auth/activate`` accepts that code.
    """
    user, code = await runtime.accounts.register(
        body.email,
        body.password,
        username=body.username,
        full_name=body.full_name,
    )
    logger.info("activation_code_issued", user_id=user.id)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=_user_response(runtime, user),
            activation_code=_exposed_code(runtime, code),
        ),
    )


@router.post("/auth/activate", response_model=Envelope, tags=["auth"])
async def activate(body: ActivateRequest, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.accounts.activate(body.email, body.code)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/auth/activation/resend", response_model=Envelope, tags=["auth"])
async def resend_activation(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    user, code = await runtime.accounts.resend_activation(body.email)
    logger.info("activation_code_issued", user_id=user.id)
    return Envelope(
        status="ok",
        data=CodeIssuedResponse(code=_exposed_code(runtime, code)),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Logging in again from the same device replaces that device's previous
    session. Returns both tokens and sets the ``refreshToken`` cookie.

    Raises:
        401: Invalid credentials, unverified account or a missing/wrong TOTP code
        403: Account blocked
    """
    result = await runtime.sessions.login(
        body.email,
        body.password,
        body.device_info or user_agent,
        _client_ip(request),
        body.two_factor_token,
    )
    return _auth_envelope(runtime, response, result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise _http_error("unauthorized", "refresh token required", status_code=401)
    result = await runtime.sessions.refresh(token)
    return _auth_envelope(runtime, response, result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    await runtime.sessions.logout(None, token)
    clear_refresh_cookie(response, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.sessions.revoke_all_sessions(principal.user_id)
    clear_refresh_cookie(response, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = runtime.store.find_user_by_id(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.sessions.list_active_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    device_info=s.device_info,
                    ip_address=s.ip_address,
                    created_at=s.created_at,
                    expires_at=s.expires_at,
                )
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.sessions.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"id": session_id, "revoked": True})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def request_reset(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    issued = await runtime.accounts.forgot_password(body.email)
    code = None
    if issued is not None:
        user, code = issued
        logger.info("password_reset_code_issued", user_id=user.id)
    # Same answer for unknown addresses to prevent email enumeration
    return Envelope(status="ok", data=CodeIssuedResponse(code=_exposed_code(runtime, code)))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)):
    await runtime.accounts.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def setup_two_factor(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    setup = await runtime.accounts.setup_two_factor(principal.user_id)
    return Envelope(status="ok", data=TwoFactorSetupResponse(**setup))


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_two_factor(
    body: TwoFactorConfirmRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.accounts.confirm_two_factor(principal.user_id, body.code)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="OAuth provider (google, github)"),
    body: Optional[OAuthStartRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    """Start the authorization code flow.

    Returns the provider URL the client should redirect the browser to.
    """
    start = await runtime.oauth.start(provider, redirect_uri=body.redirect_uri if body else None)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    code: str = Query(..., max_length=512, description="Authorization code from OAuth provider"),
    state: str = Query(..., max_length=128, description="State returned by the provider"),
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Complete the flow: exchange the code, reconcile the identity, log in."""
    result = await runtime.oauth.complete(
        provider,
        code,
        state,
        device_info=user_agent,
        ip_address=_client_ip(request),
    )
    return _auth_envelope(runtime, response, result)


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(authorize([MANAGE_USERS])),
    runtime: Runtime = Depends(get_runtime),
):
    users = runtime.accounts.list_users(limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[_user_response(runtime, u) for u in users]),
    )


@router.post("/users/assign-role", response_model=Envelope, tags=["users"])
async def assign_role(
    body: AssignRoleRequest,
    principal: AuthContext = Depends(authorize([MANAGE_USERS])),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.permissions.grant_role(body.user_id, body.role)
    logger.info(
        "role_assigned_by_admin",
        actor_id=principal.user_id,
        user_id=body.user_id,
        role=body.role,
    )
    user = runtime.store.find_user_by_id(body.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/users/{user_id}/block", response_model=Envelope, tags=["users"])
async def block_user(
    user_id: str = Path(..., max_length=64),
    body: Optional[BlockUserRequest] = None,
    principal: AuthContext = Depends(authorize([MANAGE_USERS])),
    runtime: Runtime = Depends(get_runtime),
):
    blocked = body.blocked if body else True
    if blocked and user_id == principal.user_id:
        raise _http_error("validation_error", "cannot block yourself", status_code=400)
    user = await runtime.accounts.set_blocked(user_id, blocked)
    logger.info("user_block_set_by_admin", actor_id=principal.user_id, user_id=user_id, blocked=blocked)
    return Envelope(status="ok", data=_user_response(runtime, user))
