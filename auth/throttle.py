"""
auth/throttle.py -- Resend cooldown for OTP issuance.

The last issuance time is the issued_at of the (kind, principal, purpose) OTP
row, so the throttle keeps no state of its own and survives restarts. A
consumed record still counts: the cooldown is about how often mail goes out,
not about whether the previous code was used.

Enforced server-side on every re-issuing flow. A client-side countdown alone
would let a script trigger one email per request.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from auth.errors import Throttled
from auth.models import OtpPurpose, PrincipalKind
from auth.otp import Clock, utc_now
from auth.store import PrincipalStore
from core.config import get_settings


class ResendThrottle:
    def __init__(self, store: PrincipalStore, cooldown_seconds: int | None = None, clock: Clock = utc_now) -> None:
        self._store = store
        seconds = cooldown_seconds if cooldown_seconds is not None else get_settings().otp_resend_cooldown_seconds
        self._cooldown = timedelta(seconds=seconds)
        self._clock = clock

    def retry_after(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose) -> int:
        """Whole seconds until a new code may be issued. 0 means now."""
        record = self._store.get_otp(kind, principal_id, purpose)
        if record is None:
            return 0
        remaining = datetime.fromisoformat(record.issued_at) + self._cooldown - self._clock()
        return max(0, math.ceil(remaining.total_seconds()))

    def can_resend(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose) -> bool:
        return self.retry_after(kind, principal_id, purpose) == 0

    def check(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose) -> None:
        """Raise Throttled if the cooldown since the last issuance has not elapsed."""
        wait = self.retry_after(kind, principal_id, purpose)
        if wait > 0:
            raise Throttled(wait)
