"""
auth/invites.py -- Invite Ledger: single-use onboarding invitations.

An invite is a token family of its own. It embeds the role, department and
position the new principal will get, and is consumed exactly once by
accept_invite(), which creates that principal.

Duplicates are REJECTED (DuplicateActiveInvite), unlike password-reset
tokens where a new request silently supersedes the old one. An admin who
wants to re-send must wait for the pending invite to expire.

Creation is one INSERT ... SELECT ... WHERE NOT EXISTS statement, so the
"no account, no pending invite" check and the insert cannot be split by a
concurrent create.

Atomicity of acceptance:
  mark-used and create-principal run in ONE transaction. If principal
  creation fails (the email was registered meanwhile) the transaction rolls
  back and the caller sees PrincipalAlreadyExists; every later attempt with
  the same token sees the same error because the principal now exists. A
  crash between the two statements leaves neither applied. The invite can
  never be spent twice, and a principal is never silently re-created.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import timedelta

from sqlalchemy import exists, literal, select
from sqlalchemy.engine import Engine

from auth.errors import AlreadyUsed, DuplicateActiveInvite, Expired, InvalidToken, PrincipalAlreadyExists
from auth.models import ROLES, InviteToken, Principal
from auth.schema import Clock, principals, to_iso, transaction, user_invites, utcnow
from auth.store import CredentialStore, normalize_email
from auth.tokens import generate_opaque_token


class InviteLedger:
    """Creates and consumes onboarding invitations.

    Usage:
        invites = InviteLedger(engine, credentials)
        invite = invites.create_invite("new@x.com", "employee", None, None, invited_by=admin.id)
        principal = invites.accept_invite(invite.token, "New Person", "s3cret!")
    """

    def __init__(
        self,
        engine: Engine,
        credentials: CredentialStore,
        invite_ttl: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self._credentials = credentials
        self._invite_ttl = invite_ttl
        self._clock = clock

    def create_invite(
        self,
        email: str,
        role: str,
        department: str | None,
        position: str | None,
        invited_by: int,
    ) -> InviteToken:
        """Persist a new invite with a 256-bit opaque token.

        Raises PrincipalAlreadyExists if the email already has an account and
        DuplicateActiveInvite if an unused, unexpired invite is pending.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        email = normalize_email(email)
        now = self._clock()
        now_iso = to_iso(now)
        invite = InviteToken(
            token=generate_opaque_token(),
            email=email,
            role=role,
            department=department,
            position=position,
            invited_by=invited_by,
            expires_at=to_iso(now + self._invite_ttl),
            created_at=now_iso,
        )
        pending = (
            (user_invites.c.email == email)
            & (user_invites.c.is_used == 0)
            & (user_invites.c.expires_at > now_iso)
        )
        row_values = asdict(invite)
        columns = [name for name in row_values if name != "id"]
        insert_if_absent = user_invites.insert().from_select(
            columns,
            select(*(literal(row_values[name], type_=user_invites.c[name].type) for name in columns)).where(
                ~exists().where(principals.c.email == email),
                ~exists().where(pending),
            ),
        )
        with transaction(self.engine) as conn:
            # One statement: the existence checks run under the write lock.
            inserted = conn.execute(insert_if_absent).rowcount
            if inserted != 1:
                if self._credentials.find_by_email(email, conn=conn) is not None:
                    raise PrincipalAlreadyExists()
                raise DuplicateActiveInvite()
            invite.id = conn.execute(
                select(user_invites.c.id).where(user_invites.c.token == invite.token)
            ).scalar_one()
        return invite

    def get_invite(self, token: str) -> InviteToken | None:
        with transaction(self.engine) as conn:
            row = conn.execute(user_invites.select().where(user_invites.c.token == token)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def accept_invite(self, token: str, name: str, plaintext: str) -> Principal:
        """Consume an invite and create its principal, atomically.

        Raises InvalidToken / Expired / AlreadyUsed for a bad token and
        PrincipalAlreadyExists if the email was registered in the meantime.
        """
        now_iso = to_iso(self._clock())
        with transaction(self.engine) as conn:
            claimed = conn.execute(
                user_invites.update()
                .where(
                    (user_invites.c.token == token)
                    & (user_invites.c.is_used == 0)
                    & (user_invites.c.expires_at > now_iso)
                )
                .values(is_used=1)
            ).rowcount
            row = conn.execute(user_invites.select().where(user_invites.c.token == token)).fetchone()
            if claimed != 1:
                if row is None:
                    raise InvalidToken()
                if now_iso >= row.expires_at:
                    raise Expired()
                raise AlreadyUsed()
            if self._credentials.find_by_email(row.email, conn=conn) is not None:
                raise PrincipalAlreadyExists()
            principal = self._credentials.create_principal(
                email=row.email,
                name=name,
                plaintext=plaintext,
                role=row.role,
                department=row.department,
                position=row.position,
                conn=conn,
            )
            principal.last_login = self._credentials.update_last_login(principal.id, conn=conn)
        return principal

    def purge_expired(self) -> int:
        """Delete invites past expiry. Returns rows removed."""
        now_iso = to_iso(self._clock())
        with transaction(self.engine) as conn:
            return conn.execute(user_invites.delete().where(user_invites.c.expires_at <= now_iso)).rowcount


def _row_to_invite(row) -> InviteToken:
    return InviteToken(
        id=row.id,
        token=row.token,
        email=row.email,
        role=row.role,
        department=row.department,
        position=row.position,
        invited_by=row.invited_by,
        expires_at=row.expires_at,
        is_used=bool(row.is_used),
        created_at=row.created_at,
    )
