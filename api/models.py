"""
API request and response models for Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password length policy lives in the lifecycle (Settings.min_password_length),
so a short password, or one over bcrypt's 72-byte limit, is rejected there
with the "invalid" error code. The models here only cap request size.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Admin, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# OTP codes are always exactly four ASCII digits.
OTP_PATTERN = r"^[0-9]{4}$"

_MAX_PASSWORD = 128


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/users/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=32)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)


class EmailRequest(BaseModel):
    """Body for the resend and forgot-password endpoints."""

    email: EmailStr


class OtpVerifyRequest(BaseModel):
    email: EmailStr
    otp: str = Field(pattern=OTP_PATTERN)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str = Field(pattern=OTP_PATTERN)
    new_password: str = Field(min_length=1, max_length=_MAX_PASSWORD)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=_MAX_PASSWORD)
    new_password: str = Field(min_length=1, max_length=_MAX_PASSWORD)


class AdminCreate(BaseModel):
    """Request body for POST /api/v1/admin."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/users/me. Omitted fields are left alone."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)


class UserUpdate(ProfileUpdate):
    """Request body for PUT /api/v1/users/{user_id} (admin only)."""

    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None


class AdminUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/{admin_id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    phone: Optional[str]
    is_verified: bool
    is_active: bool
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            is_verified=user.is_verified,
            is_active=user.is_active,
            last_login=user.last_login,
        )


class AdminResponse(BaseModel):
    """Public view of an admin. Never includes the hash or the persisted token."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    is_active: bool
    last_login: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_admin(cls, admin: Admin) -> "AdminResponse":
        return cls(
            id=admin.id,
            username=admin.username,
            email=admin.email,
            is_active=admin.is_active,
            last_login=admin.last_login,
            created_at=admin.created_at or "",
        )


class UserSessionResponse(BaseModel):
    """Returned by user login and registration-code verification."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class AdminSessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    admin: AdminResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
