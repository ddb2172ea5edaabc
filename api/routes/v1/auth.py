"""
api/routes/v1/auth.py -- Credential and session REST endpoints.

Routes:
  POST  /api/v1/auth/login                 -- email + password; returns token pair
  POST  /api/v1/auth/refresh               -- refresh token -> new access token
  POST  /api/v1/auth/forgot-password       -- start reset; same answer for every email
  POST  /api/v1/auth/reset-password        -- reset token + new password
  PUT   /api/v1/auth/change-password       -- current + new password (requires auth)
  POST  /api/v1/auth/logout                -- revoke the presented refresh token (requires auth)
  POST  /api/v1/auth/invite-user           -- create invitation (admin only)
  POST  /api/v1/auth/accept-invite         -- invite token + name + password; returns token pair
  GET   /api/v1/auth/verify                -- current principal (requires auth)
  PATCH /api/v1/auth/users/{id}/active     -- activate / deactivate (admin only)

Every handler is a thin adapter: parse the body, call one SessionManager
method, map the domain result to a response model. Domain errors
(CredentialError subclasses) propagate to the handler in api/main.py, which
turns them into the standard error envelope.

Handlers are plain `def`, not `async def`: bcrypt and SQLite block, so
FastAPI runs them in its thread pool.

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [H2] forgot/reset-password share Settings.password_reset_rate_limit.
  [C1] Enumeration resistance lives in SessionManager -- never branch on
       "email exists" here.
  [M4] Self-deactivation and last-admin-deactivation are refused by
       SessionManager.set_principal_active().
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AcceptInviteRequest,
    AccessTokenResponse,
    ActivePatch,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    InviteRequest,
    InviteResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PrincipalResponse,
    RefreshRequest,
    ResetPasswordRequest,
    TokenPairResponse,
)
from auth.dependencies import get_current_principal, require_admin
from auth.models import Principal, TokenPair
from auth.sessions import SessionManager
from core.config import get_settings

# Auth policy:
# - POST  /auth/login, /auth/refresh, /auth/forgot-password,
#         /auth/reset-password, /auth/accept-invite:    public (the token in the body is the credential)
# - PUT   /auth/change-password, POST /auth/logout,
#         GET /auth/verify:                             requires auth (get_current_principal)
# - POST  /auth/invite-user,
#         PATCH /auth/users/{id}/active:                requires admin (require_admin)
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _password_reset_limit() -> str:
    return get_settings().password_reset_rate_limit


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def _client(request: Request) -> tuple[str | None, str | None]:
    """(ip_address, user_agent) for the audit trail."""
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("User-Agent")


def _pair_response(pair: TokenPair, response: Response) -> TokenPairResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        user=PrincipalResponse.from_principal(pair.principal),
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenPairResponse)
@limiter.limit(_login_limit)  # [H2] brute-force mitigation -- must be BELOW @router
def login(request: Request, response: Response, body: LoginRequest) -> TokenPairResponse:
    """Authenticate with email and password.

    Unknown email and wrong password give the same 401 "invalid_credentials".
    A deactivated account is only reported once the password matched.
    """
    ip_address, user_agent = _client(request)
    pair = _sessions(request).login(body.email, body.password, ip_address=ip_address, user_agent=user_agent)
    return _pair_response(pair, response)


@router.post("/auth/refresh", response_model=AccessTokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> AccessTokenResponse:
    """Exchange a refresh token for a new access token."""
    ip_address, user_agent = _client(request)
    grant = _sessions(request).refresh(body.refresh_token, ip_address=ip_address, user_agent=user_agent)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AccessTokenResponse(
        access_token=grant.access_token,
        expires_in=grant.expires_in,
        refresh_token=grant.refresh_token,
        user=PrincipalResponse.from_principal(grant.principal),
    )


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(_password_reset_limit)  # [H2]
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Start a password reset. Always 200 with the same message [C1]."""
    ip_address, user_agent = _client(request)
    ack = _sessions(request).forgot_password(body.email, ip_address=ip_address, user_agent=user_agent)
    return MessageResponse(message=ack.message)


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(_password_reset_limit)  # [H2]
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a reset token. Every session of the account is revoked."""
    ip_address, user_agent = _client(request)
    _sessions(request).reset_password(body.token, body.new_password, ip_address=ip_address, user_agent=user_agent)
    return MessageResponse(message="Password reset successful")


@router.post("/auth/accept-invite", response_model=TokenPairResponse, status_code=201)
def accept_invite(request: Request, response: Response, body: AcceptInviteRequest) -> TokenPairResponse:
    """Create the invited account and sign it in."""
    ip_address, user_agent = _client(request)
    pair = _sessions(request).accept_invite(
        body.token, body.name, body.password, ip_address=ip_address, user_agent=user_agent
    )
    return _pair_response(pair, response)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.put("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Change the caller's password. Every session, including this one, is revoked."""
    ip_address, user_agent = _client(request)
    _sessions(request).change_password(
        current.id,
        body.current_password,
        body.new_password,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return MessageResponse(message="Password changed successfully")


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    current: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Revoke the presented refresh token. Idempotent; the body is optional."""
    ip_address, user_agent = _client(request)
    _sessions(request).logout(
        current.id,
        body.refresh_token if body else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return MessageResponse(message="Logged out successfully")


@router.get("/auth/verify", response_model=PrincipalResponse)
def verify(current: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    """Return the principal behind the Bearer token."""
    return PrincipalResponse.from_principal(current)


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/invite-user", response_model=InviteResponse, status_code=201)
def invite_user(
    request: Request,
    body: InviteRequest,
    current: Principal = Depends(require_admin),
) -> InviteResponse:
    """Invite a new user. The token is delivered by notice, never in the response."""
    ip_address, user_agent = _client(request)
    invite = _sessions(request).invite_user(
        current.id,
        body.email,
        role=body.role.value,
        department=body.department,
        position=body.position,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return InviteResponse(
        id=invite.id,
        email=invite.email,
        role=invite.role,
        department=invite.department,
        position=invite.position,
        expires_at=invite.expires_at,
    )


@router.patch("/auth/users/{principal_id}/active", response_model=PrincipalResponse)
def set_active(
    request: Request,
    principal_id: int,
    body: ActivePatch,
    current: Principal = Depends(require_admin),
) -> PrincipalResponse:
    """Activate or deactivate an account. Deactivation revokes all its sessions [M4]."""
    ip_address, user_agent = _client(request)
    updated = _sessions(request).set_principal_active(
        current.id,
        principal_id,
        body.is_active,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return PrincipalResponse.from_principal(updated)
