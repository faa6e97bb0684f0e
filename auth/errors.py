"""
auth/errors.py -- Typed failures raised by the credential lifecycle core.

Every exposed operation either returns its success payload or raises one of
these. The API layer maps them to the ErrorResponse envelope using the code
and status_code carried on each class, so route handlers never translate
errors one by one.

Layer rule: no imports from api/ and no FastAPI imports -- these are plain
exceptions usable from the CLI as well.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for all lifecycle errors."""

    code = "error"
    status_code = 400
    default_message = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(CredentialError):
    """No matching principal, or no live OTP record."""

    code = "not_found"
    status_code = 404
    default_message = "Not found."


class Conflict(CredentialError):
    """Duplicate email, phone or username, or an already-completed step."""

    code = "conflict"
    status_code = 409
    default_message = "Already exists."


class Expired(CredentialError):
    code = "otp_expired"
    status_code = 400
    default_message = "The code has expired. Request a new one."


class Mismatch(CredentialError):
    """Wrong OTP or wrong password."""

    code = "mismatch"
    status_code = 400
    default_message = "The value provided does not match."


class Unauthorized(CredentialError):
    """Bad, missing or expired token; inactive or unverified account."""

    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


class Unavailable(CredentialError):
    """Email transport or datastore failure. Safe to retry later."""

    code = "unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again."


class Throttled(CredentialError):
    """OTP re-issued inside the resend cooldown."""

    code = "rate_limited"
    status_code = 429
    default_message = "Please wait before requesting another code."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message or f"Please wait {retry_after}s before requesting another code.")


class Invalid(CredentialError):
    """Input rejected before any state was touched (e.g. short password)."""

    code = "invalid"
    status_code = 400
    default_message = "Invalid input."
