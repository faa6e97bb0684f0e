"""
auth/credentials.py -- Credential Store: the password-hash lifecycle.

set_password(), set_password_with_otp() and hash_new_password() are the only
code paths that compute a password hash. PrincipalStore.update_user()/update_admin() refuse the
hashed_password column, so re-saving a principal can never rehash an
already-hashed value. There is no "was the password modified?" check
anywhere because there is nothing to check: plain updates and password
changes are different calls.

Length policy is NOT enforced here. Callers (the lifecycle orchestrator and
the API request models) validate the plaintext before calling in.
"""

from __future__ import annotations

import logging

from auth.models import Admin, OtpPurpose, PrincipalKind, User
from auth.store import PrincipalStore
from auth.tokens import burn_password_check, hash_password, verify_password

logger = logging.getLogger("gatekeeper.auth.credentials")


class CredentialStore:
    def __init__(self, store: PrincipalStore) -> None:
        self._store = store

    def hash_new_password(self, plaintext: str) -> str:
        """Return the initial hash for a principal that is about to be created."""
        return hash_password(plaintext)

    def set_password(self, kind: PrincipalKind, principal_id: int, plaintext: str) -> bool:
        """Hash plaintext with a fresh salt and replace the stored hash.

        Returns False if the principal does not exist. Invalidates no other
        state: sessions and OTP records are untouched.
        """
        updated = self._store.set_password_hash(kind, principal_id, hash_password(plaintext))
        if updated:
            logger.info("Password hash replaced for %s id=%s", kind.value, principal_id)
        return updated

    def set_password_with_otp(
        self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose, plaintext: str, consumed_at: str
    ) -> bool:
        """Consume the principal's OTP and replace its hash atomically.

        Returns False if the code was already consumed. Callers verify the
        code first; this only guarantees the two writes land together.
        """
        updated = self._store.consume_otp_and_set_password(
            kind, principal_id, purpose, consumed_at, hash_password(plaintext)
        )
        if updated:
            logger.info("Password hash replaced for %s id=%s via %s code", kind.value, principal_id, purpose.value)
        return updated

    def verify_password(self, principal: User | Admin | None, plaintext: str) -> bool:
        """Return True iff plaintext matches the principal's stored hash.

        Never raises on mismatch. A None principal (unknown email) still pays
        for one bcrypt check so callers get uniform timing [C1].
        """
        if principal is None or not principal.hashed_password:
            burn_password_check(plaintext)
            return False
        return verify_password(plaintext, principal.hashed_password)
