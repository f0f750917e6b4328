"""Schemas for admin user, MFA, email service and audit management."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["user", "admin", "super_admin"]
Mode = Literal["disabled", "totp_only", "email_only", "totp_email_required", "totp_email_fallback"]
CodeFormatName = Literal["numeric_6", "numeric_8", "alphanumeric_6"]
Lockout = Literal["temporary_lockout", "require_password", "admin_intervention"]
Method = Literal["totp", "email"]


# Users
class AdminUserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str
    is_active: bool
    email_verified: bool
    lifecycle_state: str
    mfa_setup_required: bool
    mfa_grace_period_end: datetime | None = None
    archived_at: datetime | None = None
    anonymized_at: datetime | None = None
    created_at: datetime
    last_login_at: datetime | None = None


class UsersListResponse(BaseModel):
    """Paginated users list response."""

    items: list[AdminUserOut]
    page: int
    page_size: int
    total: int


class UserCreate(BaseModel):
    """Schema for creating a user."""

    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    role: Role = "user"
    password: str | None = Field(None, min_length=8, max_length=128)


class UserUpdate(BaseModel):
    """Schema for updating a user."""

    model_config = ConfigDict(extra="forbid")

    username: str | None = Field(None, min_length=3, max_length=50)
    email: EmailStr | None = None
    email_verified: bool | None = None


class RoleChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Role


class StatusChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_active: bool


class AdminUserCreatedResponse(BaseModel):
    user: AdminUserOut
    invite_email_sent: bool = False


class PasswordResetTriggeredResponse(BaseModel):
    """Password reset response."""

    message: str
    email_sent: bool = False


# MFA configuration
class MFAConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    mode: str
    code_format: str
    code_expiration_minutes: int
    max_failed_attempts: int
    lockout_behavior: str
    lockout_duration_minutes: int
    resend_rate_limit: int
    resend_cooldown_seconds: int
    fallback_totp_attempts_threshold: int
    backup_codes_enabled_totp: bool
    backup_codes_enabled_email: bool
    email_verification_required: bool
    allow_multiple_emails: bool
    user_control: str
    method_change_behavior: str
    grace_period_days: int
    role_based_mfa_enabled: bool
    device_trust_enabled: bool
    device_trust_duration_days: int
    max_trusted_devices: int
    logging_level: str
    notification_level: str
    enforcement_enabled: bool
    enforcement_grace_period_days: int
    enforcement_started_at: datetime | None = None
    updated_at: datetime | None = None


class MFAConfigUpdate(BaseModel):
    """Partial update; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    mode: Mode | None = None
    code_format: CodeFormatName | None = None
    code_expiration_minutes: int | None = Field(None, ge=1, le=60)
    max_failed_attempts: int | None = Field(None, ge=1, le=20)
    lockout_behavior: Lockout | None = None
    lockout_duration_minutes: int | None = Field(None, ge=1, le=1440)
    resend_rate_limit: int | None = Field(None, ge=0, le=20)
    resend_cooldown_seconds: int | None = Field(None, ge=0, le=3600)
    fallback_totp_attempts_threshold: int | None = Field(None, ge=1, le=20)
    backup_codes_enabled_totp: bool | None = None
    backup_codes_enabled_email: bool | None = None
    email_verification_required: bool | None = None
    allow_multiple_emails: bool | None = None
    user_control: Literal["user_managed", "admin_controlled"] | None = None
    method_change_behavior: Literal["immediate", "grace_period", "grandfathered"] | None = None
    grace_period_days: int | None = Field(None, ge=1, le=365)
    role_based_mfa_enabled: bool | None = None
    device_trust_enabled: bool | None = None
    device_trust_duration_days: int | None = Field(None, ge=1, le=365)
    max_trusted_devices: int | None = Field(None, ge=1, le=50)
    logging_level: Literal["comprehensive", "security_only", "none"] | None = None
    notification_level: Literal["all", "security_events", "none"] | None = None


class RoleConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    role: str
    mfa_required: bool
    allowed_methods: list[str]
    code_expiration_minutes: int | None = None
    max_failed_attempts: int | None = None
    lockout_behavior: str | None = None
    lockout_duration_minutes: int | None = None
    exempt_from_enforcement: bool


class RoleConfigUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mfa_required: bool | None = None
    allowed_methods: list[Method] | None = Field(None, min_length=1)
    code_expiration_minutes: int | None = Field(None, ge=1, le=60)
    max_failed_attempts: int | None = Field(None, ge=1, le=20)
    lockout_behavior: Lockout | None = None
    lockout_duration_minutes: int | None = Field(None, ge=1, le=1440)
    exempt_from_enforcement: bool | None = None


class ForceTransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: Method


class ApplyMethodChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    behavior: Literal["immediate", "grace_period", "grandfathered"]
    grace_period_days: int | None = Field(None, ge=1, le=365)


class EnforcementEnableRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    grace_period_days: int = Field(14, ge=0, le=365)
    apply_to_existing: bool = True


class EnforcementApplyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    grace_period_days: int | None = Field(None, ge=0, le=365)


# Email services
class EmailServiceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    provider_type: Literal["smtp", "console"]
    from_email: EmailStr
    credentials: dict[str, Any] | None = None


class EmailServiceOut(BaseModel):
    """Credentials are never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    provider_type: str
    from_email: str
    is_active: bool
    created_at: datetime


# Audit
class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    admin_id: int | None = None
    admin_email: str | None = None
    user_id: int | None = None
    action: str
    target_type: str | None = None
    target_id: int | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: list[AuditLogOut]
    page: int
    page_size: int
    total: int


class AuditPurgeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    older_than_days: int = Field(..., ge=1)
