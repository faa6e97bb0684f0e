"""
auth/otp.py -- OTP Issuer/Verifier.

Codes are 4 ASCII digits bound to (principal kind, principal id, purpose).
One row per triple: issue() upserts, so issuing a new code invalidates the
previous one in the same statement (last-issued-wins, no extra locking).

Verification order matters and is fixed:
  1. no record, or record already consumed  -> NotFound
  2. now > expires_at                        -> Expired (even if digits match)
  3. digits differ                           -> Mismatch
  4. otherwise                               -> the record

Two consumption modes:
  registration    verify_and_consume() -- the code is single-use immediately.
  password-reset  verify() alone does NOT consume. The reset flow verifies
                  once to let the UI confirm the code, then verifies again
                  and consumes when the new password is actually set. Do not
                  "simplify" this into consume-on-verify: the final step
                  would then have nothing left to re-check.

The code space is small (9000 values). Brute force is bounded by the 30
minute expiry, the resend cooldown and the per-IP rate limits on the HTTP
routes, not by this class.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import Expired, Mismatch, NotFound
from auth.models import OtpPurpose, OtpRecord, PrincipalKind
from auth.store import PrincipalStore
from auth.tokens import generate_otp_code, hash_otp_code, otp_matches
from core.config import get_settings

logger = logging.getLogger("gatekeeper.auth.otp")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    # Fixed precision keeps stored timestamps lexicographically sortable.
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class OtpService:
    """Issue, verify and consume one-time passcodes.

    Usage:
        otp = OtpService(store)
        code = otp.issue(PrincipalKind.user, uid, OtpPurpose.registration)
        otp.verify_and_consume(PrincipalKind.user, uid, OtpPurpose.registration, code)
    """

    def __init__(self, store: PrincipalStore, ttl_minutes: int | None = None, clock: Clock = utc_now) -> None:
        self._store = store
        self._ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else get_settings().otp_ttl_minutes)
        self._clock = clock

    @property
    def ttl_minutes(self) -> int:
        return int(self._ttl.total_seconds() // 60)

    def issue(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose) -> str:
        """Generate a fresh code, overwrite any previous record, return the plaintext code."""
        code = generate_otp_code()
        now = self._clock()
        self._store.upsert_otp(
            OtpRecord(
                principal_kind=kind,
                principal_id=principal_id,
                purpose=purpose,
                code_hash=hash_otp_code(code),
                issued_at=to_iso(now),
                expires_at=to_iso(now + self._ttl),
            )
        )
        logger.info("Issued %s OTP for %s id=%s", purpose.value, kind.value, principal_id)
        return code

    def verify(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose, candidate: str) -> OtpRecord:
        """Check candidate against the live record without consuming it.

        Raises NotFound, Expired or Mismatch (see module docstring for order).
        """
        record = self._store.get_otp(kind, principal_id, purpose)
        if record is None or record.is_consumed:
            raise NotFound("No active code. Request a new one.")
        if self._clock() > datetime.fromisoformat(record.expires_at):
            raise Expired()
        if not otp_matches(candidate, record.code_hash):
            logger.info("OTP mismatch for %s id=%s purpose=%s", kind.value, principal_id, purpose.value)
            raise Mismatch("Invalid code.")
        return record

    def consume(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose) -> bool:
        """Mark the record consumed. Later verify() calls raise NotFound."""
        consumed = self._store.consume_otp(kind, principal_id, purpose, to_iso(self._clock()))
        if consumed:
            logger.info("Consumed %s OTP for %s id=%s", purpose.value, kind.value, principal_id)
        return consumed

    def verify_and_consume(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose, candidate: str) -> None:
        """verify() then consume(). A second call with the same code raises NotFound.

        If another request consumed the record between the two steps, the
        conditional update in consume() matches nothing and this call loses
        with NotFound rather than succeeding twice.
        """
        self.verify(kind, principal_id, purpose, candidate)
        if not self.consume(kind, principal_id, purpose):
            raise NotFound("No active code. Request a new one.")

    def purge_expired(self) -> int:
        """Delete consumed and expired records. Returns the number removed."""
        removed = self._store.purge_otps(to_iso(self._clock()))
        logger.info("Purged %d stale OTP records", removed)
        return removed
