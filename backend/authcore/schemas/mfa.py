"""Self-service MFA, sessions and security schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class TOTPSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TOTPConfirmRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]
    message: str = "Store these codes somewhere safe. Each code can be used once."


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=128)


class AlternateEmailRequest(BaseModel):
    email: EmailStr


class AlternateEmailVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)


class PreferredMethodRequest(BaseModel):
    method: Literal["totp", "email"]


class EnforcementStatusOut(BaseModel):
    enforcement_enabled: bool
    setup_required: bool
    grace_period_active: bool
    grace_period_end: datetime | None = None
    days_remaining: int
    pending_methods: list[str]
    reason: str


class MFAStatusResponse(BaseModel):
    mode: str
    totp_enabled: bool
    email_2fa_enabled: bool
    preferred_method: str | None = None
    current_method: str | None = None
    backup_codes_remaining: int
    alternate_email: str | None = None
    alternate_email_verified: bool
    pending_method_change: str | None = None
    pending_method_deadline: datetime | None = None
    grandfathered: bool
    user_control: str
    enforcement: EnforcementStatusOut


class TrustedDeviceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_name: str | None = None
    browser: str | None = None
    os: str | None = None
    ip_address: str | None = None
    trusted_until: datetime
    last_used_at: datetime | None = None
    created_at: datetime


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    browser: str | None = None
    os: str | None = None
    device_type: str | None = None
    ip_address: str | None = None
    location: str | None = None
    remember_me: bool
    created_at: datetime
    last_activity_at: datetime | None = None
    expires_at: datetime
    absolute_expires_at: datetime
    is_current: bool = False


class LoginAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    success: bool
    failure_reason: str | None = None
    ip_address: str | None = None
    browser: str | None = None
    os: str | None = None
    device_type: str | None = None
    location: str | None = None
    attempted_at: datetime


class SecurityEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    description: str | None = None
    severity: str
    metadata: dict | None = Field(None, validation_alias="event_metadata")
    ip_address: str | None = None
    acknowledged: bool
    acknowledged_at: datetime | None = None
    created_at: datetime


class SecurityEventsResponse(BaseModel):
    items: list[SecurityEventOut]
    unacknowledged_count: int


class CountResponse(BaseModel):
    count: int
