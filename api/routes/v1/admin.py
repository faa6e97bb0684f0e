"""
api/routes/v1/admin.py -- Administrator session endpoints.

Routes:
  POST /api/v1/admin/login    -- password login; persists the token as the admin's current session
  POST /api/v1/admin/logout   -- clears the persisted token (requires admin token)
  GET  /api/v1/admin/me       -- current admin (requires admin token)
  POST /api/v1/admin          -- create another admin (requires admin token)
  GET  /api/v1/admin/all      -- list admins (requires admin token)
  PUT  /api/v1/admin/{id}     -- edit username/email/is_active (requires admin token)
  DELETE /api/v1/admin/{id}   -- delete another admin; never yourself (requires admin token)

Single-active-session: every login overwrites the admin's persisted token, so
the server's "current session" pointer always names the newest token. An
older token is not revoked by this -- it stays valid until it expires.

Security:
  [H2] POST /login is rate-limited per IP.
  [M5] Cache-Control: no-store on login responses.
  Deactivated admins are refused at login even with the right password, and
  their existing tokens stop authenticating (SessionIssuer checks is_active).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import AdminCreate, AdminResponse, AdminSessionResponse, AdminUpdate, LoginRequest, MessageResponse
from auth.dependencies import get_current_admin
from auth.errors import Mismatch
from auth.lifecycle import CredentialLifecycle
from auth.models import Admin
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /admin/login:  public
# - POST /admin/logout: requires admin token (get_current_admin)
# - GET  /admin/me:     requires admin token (get_current_admin)
# - POST /admin:        requires admin token (get_current_admin)
# - /admin/all, /admin/{admin_id}: require admin token (get_current_admin)
router = APIRouter(prefix="/admin")


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/login", response_model=AdminSessionResponse)
def admin_login(request: Request, body: LoginRequest) -> JSONResponse:
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    try:
        result = lifecycle.admin_login(body.email, body.password)
    except Mismatch:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    resp = JSONResponse(
        status_code=200,
        content=AdminSessionResponse(
            access_token=result.token,
            expires_in=_settings.token_expire_days * 24 * 3600,
            admin=AdminResponse.from_admin(result.principal),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/logout", response_model=MessageResponse)
def admin_logout(request: Request, current_admin: Admin = Depends(get_current_admin)) -> MessageResponse:
    """Clear the persisted session token for the calling admin."""
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    lifecycle.admin_logout(current_admin.id)
    return MessageResponse(message="Logout successful.")


@router.get("/me", response_model=AdminResponse)
def admin_me(current_admin: Admin = Depends(get_current_admin)) -> AdminResponse:
    return AdminResponse.from_admin(current_admin)


@router.post("", response_model=AdminResponse, status_code=status.HTTP_201_CREATED)
def create_admin(
    request: Request,
    body: AdminCreate,
    current_admin: Admin = Depends(get_current_admin),
) -> AdminResponse:
    """Create a new admin account. 409 if the email or username is taken."""
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    admin = lifecycle.create_admin(body.username, body.email, body.password)
    return AdminResponse.from_admin(admin)


@router.get("/all", response_model=list[AdminResponse])
def list_admins(request: Request, current_admin: Admin = Depends(get_current_admin)) -> list[AdminResponse]:
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    return [AdminResponse.from_admin(a) for a in lifecycle.list_admins()]


@router.put("/{admin_id}", response_model=AdminResponse)
def update_admin(
    request: Request,
    admin_id: int,
    body: AdminUpdate,
    current_admin: Admin = Depends(get_current_admin),
) -> AdminResponse:
    """Edit username, email or is_active. Deactivation ends the admin's session."""
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    admin = lifecycle.update_admin(admin_id, username=body.username, email=body.email, is_active=body.is_active)
    return AdminResponse.from_admin(admin)


@router.delete("/{admin_id}", response_model=MessageResponse)
def delete_admin(
    request: Request,
    admin_id: int,
    current_admin: Admin = Depends(get_current_admin),
) -> MessageResponse:
    """Delete another admin. 400 "invalid" when an admin targets their own account."""
    lifecycle: CredentialLifecycle = request.app.state.lifecycle
    lifecycle.delete_admin(current_admin.id, admin_id)
    return MessageResponse(message="Admin deleted successfully.")
