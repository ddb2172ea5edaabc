"""
auth/ledger.py -- Token Ledger: access, refresh and password-reset tokens.

Access tokens are stateless (signature + expiry). Refresh and reset tokens are
rows whose state only ever moves forward:

    refresh:  Active --(expiry elapses)--> Expired     (read-only check)
              Active --(revoke)----------> Revoked     (terminal)
    reset:    Unused --(consume | superseded)--> Used  (terminal)

Concurrency model:
  Every transition is ONE conditional statement ("UPDATE ... WHERE token = ?
  AND is_active = 1"), never a read followed by a separate write. Two racing
  requests therefore cannot both consume the same reset token, and a revoke
  can never be undone by a concurrent read-modify-write. The revoke-all
  cascade is a single bulk UPDATE keyed by principal id; if it is
  interrupted, every row still enforces its own flag.

Expiry:
  A row past expires_at never grants access, whatever its flags say. The
  check is done on read (or inside the conditional UPDATE), so expired rows
  are only removed lazily by purge_expired().

The signing secret and lifetimes are injected at construction; nothing here
reads configuration.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.errors import AccountDeactivated, AlreadyUsed, Expired, InvalidToken, Revoked
from auth.models import PasswordResetToken, Principal, RefreshToken
from auth.schema import Clock, password_reset_tokens, principals, refresh_tokens, to_iso, transaction, utcnow
from auth.store import row_to_principal
from auth.tokens import decode_access_token, encode_access_token, generate_opaque_token

logger = logging.getLogger("tasknest.auth")


class TokenLedger:
    """Mints and validates every token family except invites.

    Usage:
        ledger = TokenLedger(engine, secret_key=settings.secret_key)
        access = ledger.mint_access_token(principal.id)
        refresh = ledger.mint_refresh_token(principal.id)
        principal = ledger.validate_refresh_token(refresh)
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Clock = utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenLedger requires a signing secret.")
        self.engine = engine
        self._secret_key = secret_key
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._reset_ttl = reset_ttl
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return int(self._access_ttl.total_seconds())

    # ------------------------------------------------------------------
    # Access tokens (stateless)
    # ------------------------------------------------------------------

    def mint_access_token(self, principal_id: int) -> str:
        return encode_access_token(principal_id, self._secret_key, self._clock(), self.access_ttl_seconds)

    def verify_access_token(self, token: str) -> int:
        """Return the principal id. Tampered or expired tokens raise InvalidToken."""
        return decode_access_token(token, self._secret_key, self._clock())

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def mint_refresh_token(self, principal_id: int, conn: Connection | None = None) -> str:
        """Persist a new active refresh token and return its plaintext value."""
        now = self._clock()
        value = generate_opaque_token()
        with transaction(self.engine, conn) as c:
            c.execute(
                refresh_tokens.insert().values(
                    token=value,
                    principal_id=principal_id,
                    expires_at=to_iso(now + self._refresh_ttl),
                    is_active=1,
                    created_at=to_iso(now),
                )
            )
        return value

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        with transaction(self.engine) as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def validate_refresh_token(self, token: str, conn: Connection | None = None) -> Principal:
        """Resolve a refresh token to its principal without rotating it.

        Check order: absent -> InvalidToken; past expiry -> Expired (even if
        still flagged active); deactivated row -> Revoked; inactive principal
        -> AccountDeactivated.
        """
        now_iso = to_iso(self._clock())
        with transaction(self.engine, conn) as c:
            row = c.execute(
                select(
                    refresh_tokens.c.expires_at.label("token_expires_at"),
                    refresh_tokens.c.is_active.label("token_active"),
                    principals,
                )
                .select_from(refresh_tokens.join(principals, principals.c.id == refresh_tokens.c.principal_id))
                .where(refresh_tokens.c.token == token)
            ).fetchone()
        if row is None:
            # Unknown value, or a token whose principal row no longer exists.
            raise InvalidToken()
        if now_iso >= row.token_expires_at:
            raise Expired()
        if not row.token_active:
            raise Revoked()
        principal = row_to_principal(row)
        if not principal.is_active:
            raise AccountDeactivated()
        return principal

    def rotate_refresh_token(self, token: str) -> tuple[Principal, str]:
        """Validate, revoke and replace a refresh token in one transaction.

        Hardening option (Settings.refresh_token_rotation). If two requests
        race with the same value only one wins the conditional revoke; the
        loser sees Revoked.
        """
        with transaction(self.engine) as conn:
            principal = self.validate_refresh_token(token, conn=conn)
            if not self.revoke_refresh_token(token, conn=conn):
                raise Revoked()
            new_value = self.mint_refresh_token(principal.id, conn=conn)
        return principal, new_value

    def revoke_refresh_token(self, token: str, conn: Connection | None = None) -> bool:
        """Deactivate one refresh token. Idempotent; True if this call flipped it."""
        with transaction(self.engine, conn) as c:
            result = c.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.token == token) & (refresh_tokens.c.is_active == 1))
                .values(is_active=0)
            )
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, principal_id: int, conn: Connection | None = None) -> int:
        """Cascade revocation: deactivate every refresh token of a principal.

        One bulk conditional UPDATE, not a read-all-then-write-each loop, so a
        concurrent login cannot be lost between the read and the writes.
        Returns the number of rows flipped.
        """
        with transaction(self.engine, conn) as c:
            result = c.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.principal_id == principal_id) & (refresh_tokens.c.is_active == 1))
                .values(is_active=0)
            )
        if result.rowcount:
            logger.info("Revoked %d refresh token(s) for principal %s", result.rowcount, principal_id)
        return result.rowcount

    # ------------------------------------------------------------------
    # Password-reset tokens
    # ------------------------------------------------------------------

    def issue_password_reset_token(self, principal_id: int) -> str:
        """Supersede every unused reset token of the principal, then issue one.

        Both steps share a transaction, so at most one unused token exists
        once it commits.
        """
        now = self._clock()
        value = generate_opaque_token()
        with transaction(self.engine) as conn:
            conn.execute(
                password_reset_tokens.update()
                .where((password_reset_tokens.c.principal_id == principal_id) & (password_reset_tokens.c.is_used == 0))
                .values(is_used=1)
            )
            conn.execute(
                password_reset_tokens.insert().values(
                    token=value,
                    principal_id=principal_id,
                    expires_at=to_iso(now + self._reset_ttl),
                    is_used=0,
                    created_at=to_iso(now),
                )
            )
        return value

    def get_password_reset_token(self, token: str) -> PasswordResetToken | None:
        with transaction(self.engine) as conn:
            row = conn.execute(
                password_reset_tokens.select().where(password_reset_tokens.c.token == token)
            ).fetchone()
        return _row_to_reset(row) if row is not None else None

    def consume_password_reset_token(self, token: str, conn: Connection | None = None) -> int:
        """Mark a reset token used and return its principal id.

        Pass the connection that also updates the secret so the two commit
        or roll back together; a token must never stay reusable after the
        password changed, nor be spent when the password did not.
        """
        now_iso = to_iso(self._clock())
        with transaction(self.engine, conn) as c:
            result = c.execute(
                password_reset_tokens.update()
                .where(
                    (password_reset_tokens.c.token == token)
                    & (password_reset_tokens.c.is_used == 0)
                    & (password_reset_tokens.c.expires_at > now_iso)
                )
                .values(is_used=1)
            )
            row = c.execute(
                select(
                    password_reset_tokens.c.principal_id,
                    password_reset_tokens.c.expires_at,
                ).where(password_reset_tokens.c.token == token)
            ).fetchone()
        if result.rowcount == 1:
            return row.principal_id
        if row is None:
            raise InvalidToken()
        if now_iso >= row.expires_at:
            raise Expired()
        raise AlreadyUsed()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete refresh and reset rows past expiry. Returns rows removed.

        Housekeeping only; expired rows are already inert.
        """
        now_iso = to_iso(self._clock())
        with transaction(self.engine) as conn:
            removed = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at <= now_iso)).rowcount
            removed += conn.execute(
                password_reset_tokens.delete().where(password_reset_tokens.c.expires_at <= now_iso)
            ).rowcount
        return removed


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_refresh(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        principal_id=row.principal_id,
        expires_at=row.expires_at,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_reset(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        token=row.token,
        principal_id=row.principal_id,
        expires_at=row.expires_at,
        is_used=bool(row.is_used),
        created_at=row.created_at,
    )
