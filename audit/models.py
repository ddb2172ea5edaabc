"""
audit/models.py -- Audit action vocabulary and entry dataclass.

AuditAction is a closed enumeration. Adding a member is a schema change:
bump AUDIT_SCHEMA_VERSION so readers of the trail know which vocabulary an
entry was written under (the version is stored on every row).

Pattern: Data class (pure data container, zero logic).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

AUDIT_SCHEMA_VERSION = 1


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    USER_CREATE = "USER_CREATE"
    USER_INVITE = "USER_INVITE"
    USER_UPDATE = "USER_UPDATE"
    USER_DEACTIVATE = "USER_DEACTIVATE"
    USER_ACTIVATE = "USER_ACTIVATE"
    PROJECT_CREATE = "PROJECT_CREATE"
    PROJECT_UPDATE = "PROJECT_UPDATE"
    PROJECT_DELETE = "PROJECT_DELETE"
    TASK_CREATE = "TASK_CREATE"
    TASK_UPDATE = "TASK_UPDATE"
    TASK_DELETE = "TASK_DELETE"
    TASK_ACCEPT = "TASK_ACCEPT"
    COMMENT_ADD = "COMMENT_ADD"
    FILE_UPLOAD = "FILE_UPLOAD"
    ROLE_CHANGE = "ROLE_CHANGE"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one privileged action, successful or not.

    principal_id is the actor; None when the actor is not known (e.g. a
    failed login for an unknown email is not recorded at all, but system
    jobs may record with no actor). Entries are only ever inserted.
    """

    action: AuditAction
    resource_type: str  # "User", "UserInvite", "Project", ...
    resource_id: str
    timestamp: str  # ISO 8601 UTC
    principal_id: int | None = None
    details: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    schema_version: int = AUDIT_SCHEMA_VERSION
    id: int | None = None
