"""
auth/sessions.py -- Session Token Issuer.

User tokens are stateless: any correctly signed, unexpired token whose sub
refers to an existing, active user is accepted. Logout is the client
discarding the token.

Admin tokens additionally write the token onto the admin row. That column is
a "current session" pointer, not a revocation list:
  - mint() overwrites it, so the server only ever points at the newest token.
  - invalidate() (logout) clears it.
  - verify() does NOT consult it. An older admin token stays valid until its
    natural 30-day expiry. This is accepted behavior; true cross-session
    revocation would need verify() to compare against the pointer.
"""

from __future__ import annotations

import logging

from auth.errors import Unauthorized
from auth.models import Admin, PrincipalKind, User
from auth.store import PrincipalStore
from auth.tokens import create_access_token, decode_access_token

logger = logging.getLogger("gatekeeper.auth.sessions")


class SessionIssuer:
    def __init__(self, store: PrincipalStore, expire_days: int = 0) -> None:
        self._store = store
        self._expire_days = expire_days

    def mint(self, principal_id: int, kind: PrincipalKind) -> str:
        """Return a signed bearer token. For admins, also replace the persisted pointer."""
        token = create_access_token(principal_id, kind.value, expire_days=self._expire_days)
        if kind == PrincipalKind.admin:
            self._store.set_admin_token(principal_id, token)
        logger.info("Session minted for %s id=%s", kind.value, principal_id)
        return token

    def invalidate(self, principal_id: int, kind: PrincipalKind) -> None:
        """Clear the admin pointer. No-op for users (nothing is stored server-side)."""
        if kind == PrincipalKind.admin:
            self._store.set_admin_token(principal_id, None)
            logger.info("Session pointer cleared for admin id=%s", principal_id)

    def current_admin_token(self, admin_id: int) -> str | None:
        admin = self._store.get_admin_by_id(admin_id)
        return admin.token if admin is not None else None

    def verify(self, token: str, kind: PrincipalKind | None = None) -> User | Admin:
        """Return the principal the token proves, or raise Unauthorized.

        Every failure -- bad signature, expired, wrong kind, unknown or
        deactivated principal -- yields the same error so callers cannot
        distinguish them.
        """
        payload = decode_access_token(token) if token else None
        if payload is None:
            raise Unauthorized("Invalid or expired token.")
        try:
            token_kind = PrincipalKind(payload["kind"])
        except ValueError:
            raise Unauthorized("Invalid or expired token.") from None
        if kind is not None and token_kind != kind:
            raise Unauthorized("Invalid or expired token.")
        principal = self._store.get_principal(token_kind, int(payload["sub"]))
        if principal is None or not principal.is_active:
            raise Unauthorized("Invalid or expired token.")
        return principal
