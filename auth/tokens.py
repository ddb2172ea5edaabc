"""
auth/tokens.py -- Password hashing, opaque token generation and JWT helpers.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry the principal id ("sub"),
       a "type" claim and iat/exp. The signing secret is always passed in by
       the caller (TokenLedger holds it); there is no module-level secret.
       Expiry is checked against the caller's clock, not jose's, so every
       expiry decision in the system uses one trusted server clock.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt is the right choice
       for low-entropy secrets because its cost factor makes brute-force
       expensive. _DUMMY_HASH enables timing equalization in the login flow so
       response time does not reveal whether an email exists [C1].

  Opaque tokens: secrets.token_hex(32) gives 256 bits of entropy --
       brute-force is computationally infeasible, so refresh/reset/invite
       values are stored as-is and looked up by equality.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


BCRYPT_MAX_BYTES = 72


def _secret_bytes(plain: str) -> bytes:
    """UTF-8 bytes of a secret, cut to the 72 bytes bcrypt reads.

    bcrypt>=5 raises ValueError on longer input instead of truncating. Hashing
    and verifying both go through here so the two always agree. The API layer
    rejects new passwords over BCRYPT_MAX_BYTES before they get this far.
    """
    return plain.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_secret_bytes(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_secret_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB; treat as a mismatch.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("tasknest_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt verification whose result is discarded [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """64 hex chars (256 bits). Used for refresh, reset and invite tokens."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_access_token(principal_id: int, secret_key: str, now: datetime, ttl_seconds: int) -> str:
    """Encode a signed access token that expires ttl_seconds after now."""
    payload = {
        "sub": str(principal_id),
        "type": _ACCESS_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, secret_key: str, now: datetime) -> int:
    """Verify signature and expiry; return the principal id.

    Fails closed: a bad signature, a malformed or foreign token, and an
    expired token all raise InvalidToken.
    """
    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        raise InvalidToken() from exc
    if payload.get("type") != _ACCESS_TYPE:
        raise InvalidToken()
    exp = payload.get("exp")
    if not isinstance(exp, int) or now.timestamp() >= exp:
        raise InvalidToken()
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidToken() from exc
