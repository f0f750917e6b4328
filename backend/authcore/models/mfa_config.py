"""Policy-store models: system MFA config, role MFA config, user MFA preferences."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow

MFA_CONFIG_ID = 1


class MFAMode(str, Enum):
    DISABLED = "disabled"
    TOTP_ONLY = "totp_only"
    EMAIL_ONLY = "email_only"
    TOTP_EMAIL_REQUIRED = "totp_email_required"
    TOTP_EMAIL_FALLBACK = "totp_email_fallback"


class CodeFormat(str, Enum):
    NUMERIC_6 = "numeric_6"
    NUMERIC_8 = "numeric_8"
    ALPHANUMERIC_6 = "alphanumeric_6"


class LockoutBehavior(str, Enum):
    TEMPORARY_LOCKOUT = "temporary_lockout"
    REQUIRE_PASSWORD = "require_password"
    ADMIN_INTERVENTION = "admin_intervention"


class UserControl(str, Enum):
    USER_MANAGED = "user_managed"
    ADMIN_CONTROLLED = "admin_controlled"


class MethodChangeBehavior(str, Enum):
    IMMEDIATE = "immediate"
    GRACE_PERIOD = "grace_period"
    GRANDFATHERED = "grandfathered"


class LoggingLevel(str, Enum):
    COMPREHENSIVE = "comprehensive"
    SECURITY_ONLY = "security_only"
    NONE = "none"


class NotificationLevel(str, Enum):
    ALL = "all"
    SECURITY_EVENTS = "security_events"
    NONE = "none"


class MFAConfig(Base):
    """System-wide MFA configuration (singleton row, id=1)."""

    __tablename__ = "mfa_config"

    id = Column(Integer, primary_key=True, default=MFA_CONFIG_ID)
    mode = Column(String(32), nullable=False, default=MFAMode.DISABLED.value)
    code_format = Column(String(32), nullable=False, default=CodeFormat.NUMERIC_6.value)
    code_expiration_minutes = Column(Integer, nullable=False, default=5)
    max_failed_attempts = Column(Integer, nullable=False, default=5)
    lockout_behavior = Column(String(32), nullable=False, default=LockoutBehavior.TEMPORARY_LOCKOUT.value)
    lockout_duration_minutes = Column(Integer, nullable=False, default=15)
    resend_rate_limit = Column(Integer, nullable=False, default=3)
    resend_cooldown_seconds = Column(Integer, nullable=False, default=60)
    fallback_totp_attempts_threshold = Column(Integer, nullable=False, default=3)
    backup_codes_enabled_totp = Column(Boolean, nullable=False, default=True)
    backup_codes_enabled_email = Column(Boolean, nullable=False, default=False)
    email_verification_required = Column(Boolean, nullable=False, default=True)
    allow_multiple_emails = Column(Boolean, nullable=False, default=True)
    user_control = Column(String(32), nullable=False, default=UserControl.USER_MANAGED.value)
    method_change_behavior = Column(
        String(32), nullable=False, default=MethodChangeBehavior.IMMEDIATE.value
    )
    grace_period_days = Column(Integer, nullable=False, default=7)
    role_based_mfa_enabled = Column(Boolean, nullable=False, default=False)
    device_trust_enabled = Column(Boolean, nullable=False, default=False)
    device_trust_duration_days = Column(Integer, nullable=False, default=30)
    max_trusted_devices = Column(Integer, nullable=False, default=5)
    logging_level = Column(String(32), nullable=False, default=LoggingLevel.COMPREHENSIVE.value)
    notification_level = Column(
        String(32), nullable=False, default=NotificationLevel.SECURITY_EVENTS.value
    )
    enforcement_enabled = Column(Boolean, nullable=False, default=False)
    enforcement_grace_period_days = Column(Integer, nullable=False, default=14)
    enforcement_started_at = Column(UTCDateTime, nullable=True)
    updated_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class MFARoleConfig(Base):
    """Per-role MFA requirements and overrides."""

    __tablename__ = "mfa_role_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    role = Column(String(20), nullable=False, unique=True)
    mfa_required = Column(Boolean, nullable=False, default=False)
    allowed_methods = Column(JSON, nullable=False, default=lambda: ["totp", "email"])
    code_expiration_minutes = Column(Integer, nullable=True)
    max_failed_attempts = Column(Integer, nullable=True)
    lockout_behavior = Column(String(32), nullable=True)
    lockout_duration_minutes = Column(Integer, nullable=True)
    exempt_from_enforcement = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class UserMFAPreferences(Base):
    """Per-user MFA preferences."""

    __tablename__ = "user_mfa_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    preferred_method = Column(String(16), nullable=True)
    email_2fa_enabled = Column(Boolean, nullable=False, default=False)
    email_2fa_enabled_at = Column(UTCDateTime, nullable=True)
    alternate_email = Column(String(255), nullable=True)
    alternate_email_verified = Column(Boolean, nullable=False, default=False)
    alternate_email_verification_token = Column(String(64), nullable=True)
    alternate_email_verification_expires = Column(UTCDateTime, nullable=True)
    pending_method_change = Column(String(16), nullable=True)
    pending_method_deadline = Column(UTCDateTime, nullable=True)
    grandfathered = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="mfa_preferences")
