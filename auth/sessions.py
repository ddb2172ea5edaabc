"""
auth/sessions.py -- Session Manager: login, refresh, logout and password flows.

Composes the Credential Store, Token Ledger and Invite Ledger. It never
touches a token row directly; every mutation goes through a ledger method so
the single-use and cascade rules stay in one place.

Audit:
  Every flow runs inside _audited(), which records the entry in a finally
  block -- on success AND on failure -- with details["outcome"] and, on
  failure, the error code. The recorder is fire-and-forget, so this can
  never change the result the caller sees. Failures are recorded once the
  flow has identified a principal; an attempt against an unknown email or
  an unknown token has no one to attribute it to and is not recorded.

Enumeration resistance [C1]:
  login() raises InvalidCredentials for both an unknown email and a wrong
  password, and always runs bcrypt (dummy hash for unknown emails) so the
  two are indistinguishable by timing. AccountDeactivated is only raised
  after the secret matched. forgot_password() returns the module constant
  FORGOT_PASSWORD_ACK on every path once the lookup ran; issuance failures
  are logged, never surfaced.

Notices (reset links, invitations) go out on a background worker. Delivery
failure is logged and never fails the request.

Layer rule: may import from core/ and audit/; never from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta

from audit.models import AuditAction
from audit.recorder import AuditRecorder
from auth.errors import (
    AccountDeactivated,
    CredentialError,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    PermissionDenied,
    PolicyViolation,
    StorageUnavailable,
)
from auth.invites import InviteLedger
from auth.ledger import TokenLedger
from auth.models import AccessGrant, Acknowledgement, InviteToken, Principal, TokenPair
from auth.notifier import LogNotifier, Notifier
from auth.schema import make_engine, transaction
from auth.store import CredentialStore
from auth.tokens import burn_password_check
from core.background import BestEffortWorker
from core.config import Settings

logger = logging.getLogger("tasknest.auth")

FORGOT_PASSWORD_ACK = Acknowledgement("If an account exists, a reset email has been sent")


@dataclass
class _Trail:
    """Mutable audit context filled in by a flow as it learns who is involved."""

    principal_id: int | None = None
    resource_id: int | str | None = None
    details: dict = field(default_factory=dict)

    def attribute(self, principal_id: int) -> None:
        if self.principal_id is None:
            self.principal_id = principal_id
        if self.resource_id is None:
            self.resource_id = principal_id


class SessionManager:
    """Orchestrates every credential flow.

    Usage:
        sessions = SessionManager(credentials, ledger, invites, audit)
        pair = sessions.login("a@x.com", "s3cret!", ip_address="10.0.0.1")
        grant = sessions.refresh(pair.refresh_token)
        sessions.logout(pair.principal.id, pair.refresh_token)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        ledger: TokenLedger,
        invites: InviteLedger,
        audit: AuditRecorder,
        notifier: Notifier | None = None,
        rotate_refresh_tokens: bool = False,
    ) -> None:
        if credentials.engine is not ledger.engine:
            # reset/change-password need store and ledger in one transaction
            raise ValueError("CredentialStore and TokenLedger must share an engine.")
        self._credentials = credentials
        self._ledger = ledger
        self._invites = invites
        self._audit = audit
        self._notifier: Notifier = notifier or LogNotifier()
        self._rotate = rotate_refresh_tokens
        self._notices = BestEffortWorker("notify", logging.getLogger("tasknest.notify"))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        audit: AuditRecorder,
        notifier: Notifier | None = None,
    ) -> "SessionManager":
        """Assemble the full component graph from configuration."""
        engine = make_engine(settings.database_url)
        credentials = CredentialStore(engine, bcrypt_rounds=settings.bcrypt_rounds)
        ledger = TokenLedger(
            engine,
            secret_key=settings.secret_key,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
            reset_ttl=timedelta(seconds=settings.password_reset_expire_seconds),
        )
        invites = InviteLedger(engine, credentials, invite_ttl=timedelta(days=settings.invite_expire_days))
        return cls(
            credentials,
            ledger,
            invites,
            audit,
            notifier=notifier or LogNotifier(settings.client_url),
            rotate_refresh_tokens=settings.refresh_token_rotation,
        )

    # Read-only access for the API layer and maintenance jobs.
    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def ledger(self) -> TokenLedger:
        return self._ledger

    @property
    def invites(self) -> InviteLedger:
        return self._invites

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _audited(
        self,
        action: AuditAction,
        resource_type: str,
        ip_address: str | None,
        user_agent: str | None,
        **details,
    ) -> Iterator[_Trail]:
        trail = _Trail(details=dict(details))
        try:
            yield trail
        except Exception as exc:
            trail.details["outcome"] = "failure"
            trail.details["error"] = getattr(exc, "error_code", "internal_error")
            raise
        else:
            trail.details["outcome"] = "success"
        finally:
            if trail.principal_id is not None or trail.resource_id is not None:
                self._audit.record(
                    trail.principal_id,
                    action,
                    resource_type,
                    trail.resource_id if trail.resource_id is not None else "unknown",
                    details=trail.details,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )

    def _issue_pair(self, principal: Principal) -> TokenPair:
        return TokenPair(
            access_token=self._ledger.mint_access_token(principal.id),
            refresh_token=self._ledger.mint_refresh_token(principal.id),
            expires_in=self._ledger.access_ttl_seconds,
            principal=principal,
        )

    def _refresh_owner(self, token: str) -> int | None:
        """Best-effort attribution of a failed refresh, for the audit trail only."""
        try:
            row = self._ledger.get_refresh_token(token)
        except StorageUnavailable:
            return None
        return row.principal_id if row is not None else None

    def _require_admin(self, principal_id: int) -> Principal:
        actor = self._credentials.get_by_id(principal_id)
        if actor is None or not actor.is_active or actor.role != "admin":
            raise PermissionDenied()
        return actor

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, ip_address: str | None = None, user_agent: str | None = None) -> TokenPair:
        """Authenticate with email + password and mint an access/refresh pair."""
        with self._audited(AuditAction.LOGIN, "User", ip_address, user_agent) as trail:
            principal = self._credentials.find_by_email(email)
            if principal is None:
                # Equalize timing -- do NOT return early before running bcrypt [C1]
                burn_password_check(password)
                raise InvalidCredentials()
            trail.attribute(principal.id)
            if not self._credentials.verify_secret(principal, password):
                raise InvalidCredentials()
            if not principal.is_active:
                raise AccountDeactivated()
            pair = self._issue_pair(principal)
            principal.last_login = self._credentials.update_last_login(principal.id)
            return pair

    def refresh(self, refresh_token: str, ip_address: str | None = None, user_agent: str | None = None) -> AccessGrant:
        """Mint a new access token from a valid refresh token.

        The refresh token is not rotated unless rotation is enabled, in which
        case the presented value is revoked and a new one returned.
        """
        with self._audited(AuditAction.TOKEN_REFRESH, "User", ip_address, user_agent) as trail:
            try:
                if self._rotate:
                    principal, new_refresh = self._ledger.rotate_refresh_token(refresh_token)
                else:
                    principal, new_refresh = self._ledger.validate_refresh_token(refresh_token), None
            except CredentialError as exc:
                if not isinstance(exc, (InvalidToken, StorageUnavailable)):
                    owner = self._refresh_owner(refresh_token)
                    if owner is not None:
                        trail.attribute(owner)
                raise
            trail.attribute(principal.id)
            trail.details["rotated"] = new_refresh is not None
            return AccessGrant(
                access_token=self._ledger.mint_access_token(principal.id),
                expires_in=self._ledger.access_ttl_seconds,
                principal=principal,
                refresh_token=new_refresh,
            )

    def forgot_password(
        self, email: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> Acknowledgement:
        """Start a password reset. The result never depends on whether the account exists."""
        principal = self._credentials.find_by_email(email)
        if principal is not None and principal.is_active:
            self._start_password_reset(principal, ip_address, user_agent)
        return FORGOT_PASSWORD_ACK

    def _start_password_reset(self, principal: Principal, ip_address: str | None, user_agent: str | None) -> None:
        try:
            with self._audited(AuditAction.PASSWORD_RESET_REQUEST, "User", ip_address, user_agent) as trail:
                trail.attribute(principal.id)
                token = self._ledger.issue_password_reset_token(principal.id)
                self._notices.submit(
                    self._notifier.send_password_reset_notice,
                    principal.email,
                    token,
                    description="password reset notice",
                )
        except CredentialError as exc:
            # Caller still gets FORGOT_PASSWORD_ACK.
            logger.error("Password reset issuance failed for principal %s: %s", principal.id, exc.error_code)

    def reset_password(
        self, token: str, new_password: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> None:
        """Consume a reset token, set the new secret and revoke every session.

        Consumption, secret update and cascade commit together. A failure
        leaves the token unused and the old secret in place.
        """
        with self._audited(AuditAction.PASSWORD_RESET, "User", ip_address, user_agent) as trail:
            with transaction(self._ledger.engine) as conn:
                principal_id = self._ledger.consume_password_reset_token(token, conn=conn)
                trail.attribute(principal_id)
                self._credentials.update_secret(principal_id, new_password, conn=conn)
                trail.details["revoked_tokens"] = self._ledger.revoke_all_refresh_tokens(principal_id, conn=conn)

    def change_password(
        self,
        principal_id: int,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Change an authenticated principal's secret and revoke every session."""
        with self._audited(AuditAction.PASSWORD_CHANGE, "User", ip_address, user_agent) as trail:
            trail.attribute(principal_id)
            principal = self._credentials.get_by_id(principal_id)
            if principal is None:
                burn_password_check(current_password)
                raise InvalidCredentials()
            if not self._credentials.verify_secret(principal, current_password):
                raise InvalidCredentials()
            if not principal.is_active:
                raise AccountDeactivated()
            with transaction(self._ledger.engine) as conn:
                self._credentials.update_secret(principal_id, new_password, conn=conn)
                trail.details["revoked_tokens"] = self._ledger.revoke_all_refresh_tokens(principal_id, conn=conn)

    def logout(
        self,
        principal_id: int | None,
        refresh_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Revoke the presented refresh token, if any. Idempotent."""
        with self._audited(AuditAction.LOGOUT, "User", ip_address, user_agent) as trail:
            if principal_id is not None:
                trail.attribute(principal_id)
            if refresh_token:
                if principal_id is None:
                    owner = self._refresh_owner(refresh_token)
                    if owner is not None:
                        trail.attribute(owner)
                trail.details["revoked"] = self._ledger.revoke_refresh_token(refresh_token)

    def invite_user(
        self,
        inviter_id: int,
        email: str,
        role: str = "employee",
        department: str | None = None,
        position: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> InviteToken:
        """Create an invitation (admin only) and send the notice."""
        with self._audited(AuditAction.USER_INVITE, "UserInvite", ip_address, user_agent, role=role) as trail:
            trail.principal_id = inviter_id
            inviter = self._require_admin(inviter_id)
            invite = self._invites.create_invite(email, role, department, position, invited_by=inviter.id)
            trail.resource_id = invite.id
            trail.details["email"] = invite.email
            self._notices.submit(
                self._notifier.send_invite_notice,
                invite.email,
                invite.token,
                inviter.name,
                description="invite notice",
            )
            return invite

    def accept_invite(
        self,
        token: str,
        name: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Create the invited principal and sign them in."""
        with self._audited(AuditAction.USER_CREATE, "User", ip_address, user_agent, invite_accepted=True) as trail:
            principal = self._invites.accept_invite(token, name, password)
            trail.attribute(principal.id)
            return self._issue_pair(principal)

    def authenticate(self, access_token: str) -> Principal:
        """Resolve a bearer access token to an active principal."""
        principal = self._credentials.get_by_id(self._ledger.verify_access_token(access_token))
        if principal is None:
            raise InvalidToken()
        if not principal.is_active:
            raise AccountDeactivated()
        return principal

    def set_principal_active(
        self,
        actor_id: int,
        principal_id: int,
        active: bool,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Principal:
        """Activate or deactivate an account (admin only).

        Deactivation cascades to every refresh token of the account. Blocks
        self-deactivation and deactivating the last active admin [M4].
        """
        action = AuditAction.USER_ACTIVATE if active else AuditAction.USER_DEACTIVATE
        with self._audited(action, "User", ip_address, user_agent) as trail:
            trail.principal_id = actor_id
            trail.resource_id = principal_id
            actor = self._require_admin(actor_id)
            target = self._credentials.get_by_id(principal_id)
            if target is None:
                raise NotFound("User not found.")
            if not active:
                if target.id == actor.id:
                    raise PolicyViolation("You cannot deactivate your own account.")
                if target.role == "admin" and target.is_active and self._credentials.count_active_admins() <= 1:
                    raise PolicyViolation("Cannot deactivate the last active admin account.")
            with transaction(self._ledger.engine) as conn:
                self._credentials.set_active(principal_id, active, conn=conn)
                if not active:
                    trail.details["revoked_tokens"] = self._ledger.revoke_all_refresh_tokens(principal_id, conn=conn)
            target.is_active = active
            return target

    def purge_expired(self) -> tuple[int, int]:
        """Housekeeping: delete expired token and invite rows.

        Returns (token rows removed, invite rows removed).
        """
        tokens = self._ledger.purge_expired()
        invites = self._invites.purge_expired()
        if tokens or invites:
            logger.info("Purged %d expired token(s) and %d expired invite(s)", tokens, invites)
        return tokens, invites

    def flush_notices(self, timeout: float | None = 5.0) -> bool:
        """Wait for queued notices (tests, shutdown)."""
        return self._notices.flush(timeout)

    def close(self) -> None:
        """Drain queued notices."""
        self._notices.close()
