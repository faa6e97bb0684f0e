"""
api/routes/v1/users.py -- End-user credential lifecycle endpoints.

Routes:
  POST /api/v1/users/register                 -- create unverified user, email code
  POST /api/v1/users/verify-registration-otp  -- verify+consume code, returns token
  POST /api/v1/users/resend-registration-otp  -- new registration code (cooldown)
  POST /api/v1/users/login                    -- email/password login, returns token
  POST /api/v1/users/forgot-password          -- email a password-reset code (cooldown)
  POST /api/v1/users/verify-reset-otp         -- check reset code WITHOUT consuming it
  POST /api/v1/users/reset-password           -- re-check + consume code, set password
  POST /api/v1/users/resend-reset-otp         -- new reset code (cooldown)
  POST /api/v1/users/change-password          -- requires user token
  GET  /api/v1/users/me                       -- requires user token
  PUT  /api/v1/users/me                       -- update name/phone (requires user token)
  GET  /api/v1/users                          -- list users (requires admin token)
  GET  /api/v1/users/{user_id}                -- one user (requires admin token)
  PUT  /api/v1/users/{user_id}                -- edit / (de)activate (requires admin token)
  DELETE /api/v1/users/{user_id}              -- delete (requires admin token)

Handlers are plain `def` so FastAPI runs them in the threadpool: bcrypt,
SQLite and SMTP are all blocking.

Lifecycle errors (NotFound, Conflict, Expired, Mismatch, ...) propagate to
the CredentialError handler in api/main.py. The one exception is login,
which turns Mismatch into a 401 "bad_credentials" so wrong email and wrong
password are indistinguishable.

Security:
  [H2] login, and every route that sends or checks a code, is rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    OtpVerifyRequest,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
    UserSessionResponse,
    UserUpdate,
)
from auth.dependencies import get_current_admin, get_current_user
from auth.errors import Mismatch
from auth.lifecycle import AuthResult, CredentialLifecycle
from auth.models import Admin, User
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - the credential flows are public -- these routes ARE the way in
# - POST /users/change-password: requires user token (get_current_user)
# - GET/PUT /users/me:           requires user token (get_current_user)
# - /users and /users/{user_id}:  require admin token (get_current_admin)
router = APIRouter(prefix="/users")


def _lifecycle(request: Request) -> CredentialLifecycle:
    return request.app.state.lifecycle


def _session_response(result: AuthResult) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=UserSessionResponse(
            access_token=result.token,
            expires_in=_settings.token_expire_days * 24 * 3600,
            user=UserResponse.from_user(result.principal),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an unverified account and email a 4-digit verification code.

    If the email cannot be delivered the account is removed again and the
    caller gets 503, so the same email can simply register again.
    """
    user = _lifecycle(request).register(body.name, body.email, body.password, phone=body.phone)
    return UserResponse.from_user(user)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/verify-registration-otp", response_model=UserSessionResponse)
def verify_registration_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    """Verify the registration code. Single-use: a second call with the same code is 404."""
    return _session_response(_lifecycle(request).verify_registration_otp(body.email, body.otp))


@limiter.limit(_settings.otp_rate_limit)
@router.post("/resend-registration-otp", response_model=MessageResponse)
def resend_registration_otp(request: Request, body: EmailRequest) -> MessageResponse:
    _lifecycle(request).resend_registration_otp(body.email)
    return MessageResponse(message="New code sent to your email.")


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=UserSessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unverified and deactivated accounts get 401 "unauthorized" with an
    explanatory message; they are only reported after the password matched.
    """
    try:
        result = _lifecycle(request).login(body.email, body.password)
    except Mismatch:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _session_response(result)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    _lifecycle(request).forgot_password(body.email)
    return MessageResponse(message="Password reset code sent to your email.")


@limiter.limit(_settings.otp_rate_limit)
@router.post("/verify-reset-otp", response_model=MessageResponse)
def verify_reset_otp(request: Request, body: OtpVerifyRequest) -> MessageResponse:
    """Confirm a reset code before asking for the new password.

    Does not consume the code: the same code must be sent again to
    /reset-password, which checks it once more and then consumes it.
    """
    _lifecycle(request).verify_reset_otp(body.email, body.otp)
    return MessageResponse(message="Code verified. You can now set your new password.")


@limiter.limit(_settings.otp_rate_limit)
@router.post("/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _lifecycle(request).reset_password(body.email, body.otp, body.new_password)
    return MessageResponse(message="Password reset successfully.")


@limiter.limit(_settings.otp_rate_limit)
@router.post("/resend-reset-otp", response_model=MessageResponse)
def resend_reset_otp(request: Request, body: EmailRequest) -> MessageResponse:
    _lifecycle(request).resend_reset_otp(body.email)
    return MessageResponse(message="New code sent to your email.")


# ---------------------------------------------------------------------------
# Authenticated
# ---------------------------------------------------------------------------


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Change the password of the token's user. Requires the current password."""
    _lifecycle(request).change_password(current_user.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully.")


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.put("/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Update name and/or phone. 409 if the phone belongs to another user."""
    user = _lifecycle(request).update_profile(current_user.id, name=body.name, phone=body.phone)
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Admin-only user management
# ---------------------------------------------------------------------------


@router.get("", response_model=list[UserResponse])
def list_users(request: Request, current_admin: Admin = Depends(get_current_admin)) -> list[UserResponse]:
    """All users, newest first."""
    return [UserResponse.from_user(u) for u in _lifecycle(request).list_users()]


@router.get("/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, current_admin: Admin = Depends(get_current_admin)) -> UserResponse:
    return UserResponse.from_user(_lifecycle(request).get_user(user_id))


@router.put("/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    current_admin: Admin = Depends(get_current_admin),
) -> UserResponse:
    """Edit a user; is_active toggles activation."""
    user = _lifecycle(request).update_user(
        user_id,
        name=body.name,
        phone=body.phone,
        is_active=body.is_active,
        is_verified=body.is_verified,
    )
    return UserResponse.from_user(user)


@router.delete("/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, current_admin: Admin = Depends(get_current_admin)) -> MessageResponse:
    _lifecycle(request).delete_user(user_id)
    return MessageResponse(message="User deleted successfully.")
