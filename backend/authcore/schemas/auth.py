"""Authentication schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class _EmailNormalized(BaseModel):
    @field_validator("email", check_fields=False)
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Normalize email to lowercase."""
        return v.lower().strip()


# Request schemas
class RegisterRequest(_EmailNormalized):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)


class LoginRequest(_EmailNormalized):
    email: EmailStr
    password: str = Field(..., max_length=128)
    remember_me: bool = False


class MFAVerifyRequest(BaseModel):
    challenge_token: str = Field(..., min_length=1, max_length=256)
    method: Literal["totp", "email", "backup_code"]
    code: str = Field(..., min_length=1, max_length=32)
    trust_device: bool = False


class MFAResendRequest(BaseModel):
    challenge_token: str = Field(..., min_length=1, max_length=256)


class MFASetupStartRequest(BaseModel):
    setup_token: str = Field(..., min_length=1, max_length=256)


class MFASetupCompleteRequest(BaseModel):
    setup_token: str = Field(..., min_length=1, max_length=256)
    method: Literal["totp", "email"]
    code: str | None = Field(None, max_length=32)


class RefreshRequest(BaseModel):
    """Refresh token request schema."""

    refresh_token: str


class LogoutRequest(BaseModel):
    """Logout request schema."""

    refresh_token: str


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)


class PasswordResetRequest(_EmailNormalized):
    """Password reset request schema."""

    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


# Response schemas
class UserOut(BaseModel):
    """Public user representation."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str
    is_active: bool
    email_verified: bool
    lifecycle_state: str
    mfa_setup_required: bool
    created_at: datetime
    last_login_at: datetime | None = None


class TokensResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    absolute_expires_at: datetime


class SecurityAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    severity: str
    description: str | None = None


class LoginResponse(BaseModel):
    """Either a session (tokens + user) or a pending MFA challenge."""

    status: Literal["authenticated", "mfa_required"]
    user: UserOut | None = None
    tokens: TokensResponse | None = None
    security_alerts: list[SecurityAlertOut] = Field(default_factory=list)
    backup_codes: list[str] | None = None
    challenge_token: str | None = None
    mode: str | None = None
    allowed_methods: list[str] | None = None
    expires_at: datetime | None = None
    email_sent: bool = False


class MFAPartialResponse(BaseModel):
    status: Literal["mfa_partial"] = "mfa_partial"
    challenge_token: str
    verified_methods: list[str]
    remaining_methods: list[str]


class MFASetupProgressResponse(BaseModel):
    status: Literal["mfa_setup_pending"] = "mfa_setup_pending"
    pending_methods: list[str]


class RegisterResponse(BaseModel):
    user: UserOut
    message: str = "Registration successful. Check your email to verify your address."


class MessageResponse(BaseModel):
    message: str
