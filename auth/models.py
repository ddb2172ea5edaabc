"""
auth/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, zero logic). Stores and ledgers do
the work; these own the domain shape.

Timestamps are ISO-8601 UTC strings with fixed microsecond precision, the
same form the ledgers write, so they compare correctly as strings.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES: tuple[str, ...] = ("admin", "employee")


@dataclass
class Principal:
    """An authenticated identity (the "user" of the credential subsystem).

    email is stored normalised (stripped, lower-cased) so lookups are
    case-insensitive exact matches. last_login is stamped on every
    successful password login or invite acceptance.
    """

    email: str
    name: str
    role: str  # "admin" | "employee"
    id: int | None = None
    hashed_password: str | None = None
    department: str | None = None
    position: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """Persisted long-lived credential used only to mint access tokens.

    Usable iff is_active and now < expires_at. Rows are deactivated, never
    deleted before expiry; expired rows may be purged lazily.
    """

    token: str
    principal_id: int
    expires_at: str
    is_active: bool = True
    id: int | None = None
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    """Single-use reset credential. At most one unused, unexpired per principal."""

    token: str
    principal_id: int
    expires_at: str
    is_used: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class InviteToken:
    """Onboarding invitation carrying the role/department/position claims
    the new principal will be created with.

    At most one unused, unexpired invite per email. Duplicates are rejected,
    not replaced.
    """

    token: str
    email: str
    role: str
    invited_by: int
    expires_at: str
    department: str | None = None
    position: str | None = None
    is_used: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """Result of login and invite acceptance."""

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    principal: Principal


@dataclass(frozen=True)
class AccessGrant:
    """Result of a refresh. refresh_token is set only when rotation is enabled."""

    access_token: str
    expires_in: int
    principal: Principal
    refresh_token: str | None = None


@dataclass(frozen=True)
class Acknowledgement:
    """A response whose content must not depend on what the server found."""

    message: str
