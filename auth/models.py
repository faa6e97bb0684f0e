"""
auth/models.py -- Domain dataclasses for credential lifecycle entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PrincipalKind(str, Enum):
    user = "user"
    admin = "admin"


class OtpPurpose(str, Enum):
    registration = "registration"
    password_reset = "password-reset"


@dataclass
class User:
    """An end-user account.

    email is stored lower-cased and trimmed; every lookup normalizes the same
    way, which makes email uniqueness case-insensitive.

    is_verified flips to True exactly once, when the registration OTP is
    verified and consumed. Login is refused until then.
    """

    name: str
    email: str
    phone: str | None = None
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    is_verified: bool = False
    last_login: str | None = None
    created_at: str | None = None

    kind = PrincipalKind.user


@dataclass
class Admin:
    """An administrator account.

    token is the "current session" pointer: the most recently minted admin
    token, or None after logout. Older tokens are not revoked by overwriting
    this field -- they remain valid until their natural expiry.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    last_login: str | None = None
    token: str | None = None
    created_at: str | None = None

    kind = PrincipalKind.admin


@dataclass
class OtpRecord:
    """A one-time passcode bound to (principal kind, principal id, purpose).

    code_hash is HMAC-SHA256(SECRET_KEY, code). The plaintext code is returned
    once by OtpService.issue() for delivery and never persisted.

    Timestamps are ISO 8601 UTC strings, like every other timestamp column.
    """

    principal_kind: PrincipalKind
    principal_id: int
    purpose: OtpPurpose
    code_hash: str
    issued_at: str
    expires_at: str
    consumed_at: str | None = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class AppConfig:
    """Operator-editable settings stored in the single-row app_config table.

    Empty strings mean "not set here" -- consumers fall back to the
    environment-backed Settings for that field.
    """

    company_name: str = ""
    company_email: str = ""
    smtp_host: str = ""
    smtp_port: int = 0
    smtp_user: str = ""
    smtp_password: str = ""
