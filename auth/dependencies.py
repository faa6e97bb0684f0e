"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Tokens arrive in the Authorization: Bearer <token> header. They are opaque
to callers; the lifecycle's SessionIssuer decides validity.

get_current_user() and get_current_admin() raise HTTP 401 on any failure.
A user token never authenticates an admin route and vice versa -- the kind
claim is checked by SessionIssuer.verify().

auth/dependencies.py may import from fastapi because this module is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import Unauthorized
from auth.lifecycle import CredentialLifecycle
from auth.models import Admin, PrincipalKind, User


def bearer_token(request: Request) -> str | None:
    """Return the token from the Authorization header, or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _authenticate(request: Request, kind: PrincipalKind):
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Not authorized, no token."},
        )
    try:
        return lifecycle.authenticate(token, kind)
    except Unauthorized as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": exc.message},
        ) from exc


def get_current_user(request: Request) -> User:
    """Require a valid user token.

    Use as a FastAPI dependency:
        @router.post("/users/change-password")
        def route(user: User = Depends(get_current_user)): ...
    """
    return _authenticate(request, PrincipalKind.user)


def get_current_admin(request: Request) -> Admin:
    """Require a valid token belonging to an active admin."""
    return _authenticate(request, PrincipalKind.admin)
