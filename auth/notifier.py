"""
auth/notifier.py -- Outbound notice contract (password reset, invitations).

Email transport is a collaborator, not part of the credential core. The core
only relies on the Notifier protocol below. Calls are dispatched on a
background worker by the Session Manager, so a slow or failing transport can
never delay or fail a reset/invite request.

LogNotifier is the default transport: it logs the notice (recipient
redacted, link without the token) instead of sending it. Production
deployments plug in a real mail client implementing the same two methods.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("tasknest.notify")


class Notifier(Protocol):
    def send_password_reset_notice(self, email: str, token: str) -> None: ...

    def send_invite_notice(self, email: str, token: str, inviter_name: str) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LogNotifier:
    """Development transport: writes notices to the log instead of mailing them.

    The token itself is never logged -- only the path it would be appended
    to -- so log access does not grant account takeover.
    """

    def __init__(self, client_url: str = "http://localhost:3000") -> None:
        self.client_url = client_url.rstrip("/")

    def send_password_reset_notice(self, email: str, token: str) -> None:
        logger.info(
            "Password reset notice to %s: %s/reset-password?token=<redacted> (expires in 1 hour)",
            redact_email(email),
            self.client_url,
        )

    def send_invite_notice(self, email: str, token: str, inviter_name: str) -> None:
        logger.info(
            "Invitation notice to %s from %s: %s/accept-invite?token=<redacted> (expires in 7 days)",
            redact_email(email),
            inviter_name,
            self.client_url,
        )
