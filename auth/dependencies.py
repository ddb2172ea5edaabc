"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". The token is resolved
by SessionManager.authenticate(), which checks signature and expiry and that
the principal still exists and is active. Deactivating an account therefore
locks out its outstanding access tokens immediately, not only at the next
refresh.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_principal() and raises HTTP 403 if not admin.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import CredentialError
from auth.models import Principal
from auth.sessions import SessionManager


def bearer_token(request: Request) -> str | None:
    """Extract the raw token from the Authorization header, if present."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_principal(request: Request) -> Principal | None:
    """Authenticate the request via its Bearer token.

    Returns the Principal on success, None on any failure. Never raises
    for bad tokens -- callers that need a hard 401 use get_current_principal().
    StorageUnavailable is the exception: it propagates so the client sees 503,
    not a misleading 401.
    """
    token = bearer_token(request)
    if not token:
        return None
    sessions: SessionManager = request.app.state.sessions
    try:
        return sessions.authenticate(token)
    except CredentialError as exc:
        if exc.status_code >= 500:
            raise
        return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_admin(request: Request) -> Principal:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(principal: Principal = Depends(require_admin)): ...
    """
    principal = get_current_principal(request)
    if principal.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal
