"""Login attempts and security events."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String, Text, func

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class SecurityEventType(str, Enum):
    NEW_LOCATION = "login_from_new_location"
    NEW_DEVICE = "login_from_new_device"
    BRUTE_FORCE = "brute_force_attempt"
    MFA_LOCKOUT = "mfa_lockout"
    PASSWORD_CHANGED = "password_changed"


class LoginAttempt(Base):
    """Append-only record of every login attempt."""

    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    email_attempted = Column(String(255), nullable=False)
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(64), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    device_type = Column(String(20), nullable=True)
    location = Column(String(255), nullable=True)
    attempted_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_login_attempts_email_attempted_at", "email_attempted", "attempted_at"),
    )


class SecurityEvent(Base):
    """Security alert for a user. Append-only except acknowledgement."""

    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(String(16), nullable=False, default=Severity.INFO.value)
    event_metadata = Column("metadata", JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_security_events_user_type_created", "user_id", "event_type", "created_at"),
    )
