"""
auth/store.py -- Credential Store: principals and their hashed secrets.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
row_to_principal is the mapper. Flow code never touches SQL directly.

The store does exactly one thing per call. In particular update_secret()
does NOT revoke refresh tokens -- the Session Manager composes that with the
Token Ledger so the cascade policy lives in one place.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Plaintext secrets are hashed before they reach any SQL statement and are
  never logged.

Methods that take conn= join the caller's transaction (see
auth.schema.transaction); without it each call commits on its own.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import NotFound, PrincipalAlreadyExists
from auth.models import ROLES, Principal
from auth.schema import Clock, principals, to_iso, transaction, utcnow
from auth.tokens import hash_password, verify_password


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively; store and look up one form."""
    return email.strip().lower()


class CredentialStore:
    """Repository for Principal entities.

    Usage:
        store = CredentialStore(make_engine("sqlite://"))
        p = store.create_principal("a@x.com", "Ann", "s3cret!", role="admin")
        store.verify_secret(p, "s3cret!")   # True
    """

    def __init__(self, engine: Engine, bcrypt_rounds: int = 12, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._rounds = bcrypt_rounds
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_principals(self) -> bool:
        """Return True if at least one principal exists (first-run detection)."""
        with transaction(self.engine) as conn:
            result = conn.execute(select(func.count()).select_from(principals)).scalar()
        return (result or 0) > 0

    def find_by_email(self, email: str, conn: Connection | None = None) -> Principal | None:
        """Case-insensitive exact match. Returns None if not found."""
        with transaction(self.engine, conn) as c:
            row = c.execute(principals.select().where(principals.c.email == normalize_email(email))).fetchone()
        return row_to_principal(row) if row is not None else None

    def get_by_id(self, principal_id: int, conn: Connection | None = None) -> Principal | None:
        """Look up a principal by primary key. Returns None if not found."""
        with transaction(self.engine, conn) as c:
            row = c.execute(principals.select().where(principals.c.id == principal_id)).fetchone()
        return row_to_principal(row) if row is not None else None

    def count_active_admins(self) -> int:
        """Number of active admins. Guards against deactivating the last one [M4]."""
        with transaction(self.engine) as conn:
            result = conn.execute(
                select(func.count())
                .select_from(principals)
                .where((principals.c.role == "admin") & (principals.c.is_active == 1))
            ).scalar()
        return result or 0

    def verify_secret(self, principal: Principal, plaintext: str) -> bool:
        """bcrypt comparison against the stored hash. Constant work factor."""
        if not principal.hashed_password:
            return False
        return verify_password(plaintext, principal.hashed_password)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_principal(
        self,
        email: str,
        name: str,
        plaintext: str,
        role: str = "employee",
        department: str | None = None,
        position: str | None = None,
        conn: Connection | None = None,
    ) -> Principal:
        """Insert a new principal and return it with its assigned id.

        Raises PrincipalAlreadyExists if the (normalised) email is taken. The
        UNIQUE constraint is the arbiter, so two concurrent creations cannot
        both succeed.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        created_at = to_iso(self._clock())
        values = {
            "email": normalize_email(email),
            "name": name,
            "hashed_password": hash_password(plaintext, rounds=self._rounds),
            "role": role,
            "department": department,
            "position": position,
            "is_active": 1,
            "created_at": created_at,
        }
        try:
            with transaction(self.engine, conn) as c:
                result = c.execute(principals.insert().values(**values))
                new_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise PrincipalAlreadyExists() from exc
        return Principal(
            id=new_id,
            email=values["email"],
            name=name,
            role=role,
            hashed_password=values["hashed_password"],
            department=department,
            position=position,
            is_active=True,
            created_at=created_at,
        )

    def update_secret(self, principal_id: int, new_plaintext: str, conn: Connection | None = None) -> None:
        """Re-hash and replace the principal's secret. Raises NotFound.

        Does not revoke tokens; callers that change a secret must also call
        TokenLedger.revoke_all_refresh_tokens().
        """
        hashed = hash_password(new_plaintext, rounds=self._rounds)
        with transaction(self.engine, conn) as c:
            result = c.execute(
                principals.update().where(principals.c.id == principal_id).values(hashed_password=hashed)
            )
        if result.rowcount == 0:
            raise NotFound("Principal not found.")

    def set_active(self, principal_id: int, active: bool, conn: Connection | None = None) -> None:
        """Activate or deactivate a principal. Raises NotFound."""
        with transaction(self.engine, conn) as c:
            result = c.execute(
                principals.update().where(principals.c.id == principal_id).values(is_active=1 if active else 0)
            )
        if result.rowcount == 0:
            raise NotFound("Principal not found.")

    def update_last_login(self, principal_id: int, conn: Connection | None = None) -> str:
        """Stamp the current server time as last_login and return the stamp."""
        stamp = to_iso(self._clock())
        with transaction(self.engine, conn) as c:
            c.execute(principals.update().where(principals.c.id == principal_id).values(last_login=stamp))
        return stamp

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        hashed_password=row.hashed_password,
        department=row.department,
        position=row.position,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )
