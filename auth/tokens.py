"""
auth/tokens.py -- JWT, password hashing, and OTP digest utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (principal id), kind ("user" | "admin"), iat, exp and a random jti.
       The jti makes every minted token distinct, even two minted for the
       same admin within the same second. Decoding returns None on any
       failure -- SessionIssuer turns that into Unauthorized.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force of low-entropy secrets expensive. _DUMMY_HASH enables
       timing equalization so response time does not reveal whether an email
       is registered [C1].

  OTP codes: HMAC-SHA256(SECRET_KEY, code). A 4-digit code has only 9000
       values, so a plain SHA-256 would be reversible by enumeration; keying
       the digest with SECRET_KEY means a leaked DB alone reveals nothing.
       bcrypt is unnecessary -- codes expire in 30 minutes.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("gatekeeper.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# bcrypt only reads the first 72 bytes and bcrypt>=5 refuses longer input.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    bcrypt 5 raises ValueError for input over MAX_PASSWORD_BYTES. The lifecycle
    rejects such passwords with Invalid before they reach this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed or empty hash is a mismatch, not an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError, AttributeError):
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt check against the dummy hash and discard the result [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(principal_id: int, kind: str, expire_days: int = 0, now: datetime | None = None) -> str:
    """Encode a signed JWT for a principal.

    Args:
        principal_id: Numeric user or admin ID. Stored as a string in sub,
                      as RFC 7519 requires.
        kind:         "user" or "admin". Tokens are not interchangeable
                      between the two principal kinds.
        expire_days:  Session duration. 0 (default) uses
                      Settings.token_expire_days.
        now:          Issue time override, for tests.
    """
    duration = expire_days if expire_days > 0 else _settings.token_expire_days
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(principal_id),
        "kind": kind,
        "iat": issued,
        "exp": issued + timedelta(days=duration),
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Checks signature and exp (python-jose does both), then the claim shape.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "kind" not in payload or not str(payload.get("sub", "")).isdigit():
        return None
    return payload


# ---------------------------------------------------------------------------
# OTP codes
# ---------------------------------------------------------------------------


def generate_otp_code() -> str:
    """Return a uniformly random 4-digit code in 1000..9999."""
    return str(1000 + secrets.randbelow(9000))


def hash_otp_code(code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, code) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        code.encode(),
        hashlib.sha256,
    ).hexdigest()


def otp_matches(candidate: str, code_hash: str) -> bool:
    """Constant-time comparison of a candidate code against a stored digest."""
    return hmac.compare_digest(hash_otp_code(candidate), code_hash)
