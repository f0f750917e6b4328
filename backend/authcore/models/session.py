"""Session-store models: authenticated sessions and trusted devices."""

from datetime import datetime

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow


class AuthSession(Base):
    """Authenticated session backing one refresh token."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    refresh_token_hash = Column(String(64), nullable=False, unique=True)
    device_fingerprint = Column(String(64), nullable=True)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    device_type = Column(String(20), nullable=True)
    ip_address = Column(String(64), nullable=True)
    location = Column(String(255), nullable=True)
    remember_me = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    revoked_at = Column(UTCDateTime, nullable=True)
    revoked_reason = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    last_activity_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)  # Sliding
    absolute_expires_at = Column(UTCDateTime, nullable=True)  # Immovable

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("ix_sessions_expires_at", "expires_at"),
        Index("ix_sessions_absolute_expires_at", "absolute_expires_at"),
    )

    def is_valid(self, now: datetime) -> bool:
        """Active and inside both the sliding and the absolute deadline."""
        if not self.is_active:
            return False
        if now >= self.expires_at:
            return False
        if self.absolute_expires_at is not None and now >= self.absolute_expires_at:
            return False
        return True


class TrustedDevice(Base):
    """Device that may skip the MFA challenge until trusted_until."""

    __tablename__ = "trusted_devices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_fingerprint_hash = Column(String(64), nullable=False)
    device_name = Column(String(255), nullable=True)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    ip_address = Column(String(64), nullable=True)
    trusted_until = Column(UTCDateTime, nullable=False)
    last_used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="trusted_devices")

    __table_args__ = (
        UniqueConstraint("user_id", "device_fingerprint_hash", name="uq_trusted_device_user_fingerprint"),
    )

    def is_trusted(self, now: datetime) -> bool:
        return self.trusted_until > now
