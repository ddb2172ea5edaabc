"""
API request and response models for the TaskNest auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Password policy lives here, at the boundary: the credential core accepts any
non-empty secret, the HTTP contract requires 8..128 characters and at most
72 UTF-8 bytes for a new password.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Principal
from auth.tokens import BCRYPT_MAX_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
# Character cap for every password field. New passwords are further limited
# to BCRYPT_MAX_BYTES of UTF-8, the most bcrypt reads.
PASSWORD_MAX_LENGTH = 128


def _within_bcrypt_limit(value: str) -> str:
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    employee = "employee"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    # No min_length: a short password must fail as bad credentials, not 422.
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("new_password")
    @classmethod
    def new_password_within_bcrypt_limit(cls, value: str) -> str:
        return _within_bcrypt_limit(value)


class ChangePasswordRequest(BaseModel):
    """Request body for PUT /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("new_password")
    @classmethod
    def new_password_within_bcrypt_limit(cls, value: str) -> str:
        return _within_bcrypt_limit(value)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout. The token is optional."""

    refresh_token: Optional[str] = Field(default=None, max_length=128)


class InviteRequest(BaseModel):
    """Request body for POST /api/v1/auth/invite-user (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: RoleEnum = RoleEnum.employee
    department: Optional[str] = Field(default=None, max_length=255)
    position: Optional[str] = Field(default=None, max_length=255)


class AcceptInviteRequest(BaseModel):
    """Request body for POST /api/v1/auth/accept-invite."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: str) -> str:
        return _within_bcrypt_limit(value)


class ActivePatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}/active (admin only)."""

    is_active: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Public view of a principal. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    department: Optional[str] = None
    position: Optional[str] = None
    is_active: bool
    last_login: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        """Factory Method -- the mapping lives here, colocated with the output model."""
        return cls(
            id=principal.id,
            email=principal.email,
            name=principal.name,
            role=principal.role,
            department=principal.department,
            position=principal.position,
            is_active=principal.is_active,
            last_login=principal.last_login,
        )


class TokenPairResponse(BaseModel):
    """Response for login and accept-invite."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: PrincipalResponse


class AccessTokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh.

    refresh_token is only set when rotation is enabled.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    user: PrincipalResponse


class InviteResponse(BaseModel):
    """Response for POST /api/v1/auth/invite-user. The token is sent by notice only."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    department: Optional[str] = None
    position: Optional[str] = None
    expires_at: str


class MessageResponse(BaseModel):
    """Plain acknowledgement."""

    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "healthy" only when every component reports "ok".
    """

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]
