"""
auth/errors.py -- Typed error taxonomy for the credential & session flows.

Every failure a caller can act on is a CredentialError subclass carrying a
stable error_code and the HTTP status the API layer should use. Validation
failures are raised synchronously from the flow that detected them; the API
layer maps them to the {"error": {"code", "message"}} envelope in one place.

Enumeration resistance: InvalidCredentials is the ONLY error login raises for
an unknown email or a wrong password, and forgot-password never raises
NotFound. NotFound exists for internal callers (store updates on a missing
id) and must not be surfaced from enumeration-sensitive flows.

StorageUnavailable wraps any persistence failure. This subsystem does not
retry; retry policy belongs to the storage layer.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for credential-lifecycle errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "credential_error"
    default_message: str = "Credential operation failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(CredentialError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid email or password."


class AccountDeactivated(CredentialError):
    status_code = 403
    error_code = "account_deactivated"
    default_message = "Account is deactivated."


class InvalidToken(CredentialError):
    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid token."


class Expired(CredentialError):
    status_code = 401
    error_code = "token_expired"
    default_message = "Token has expired."


class Revoked(CredentialError):
    status_code = 401
    error_code = "token_revoked"
    default_message = "Token has been revoked."


class AlreadyUsed(CredentialError):
    status_code = 400
    error_code = "token_already_used"
    default_message = "Token has already been used."


class DuplicateActiveInvite(CredentialError):
    status_code = 409
    error_code = "duplicate_invite"
    default_message = "An invitation is already pending for this email."


class PrincipalAlreadyExists(CredentialError):
    status_code = 409
    error_code = "principal_exists"
    default_message = "A user with this email already exists."


class NotFound(CredentialError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found."


class PermissionDenied(CredentialError):
    status_code = 403
    error_code = "forbidden"
    default_message = "Admin access required."


class PolicyViolation(CredentialError):
    """An admin action that would break an account-safety rule (e.g. last admin)."""

    status_code = 400
    error_code = "policy_violation"
    default_message = "Operation not allowed."


class StorageUnavailable(CredentialError):
    status_code = 503
    error_code = "storage_unavailable"
    default_message = "Credential storage is unavailable."
