"""User model."""

from enum import Enum

from sqlalchemy import Boolean, Column, Index, Integer, String, func
from sqlalchemy.orm import relationship

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow


class UserRole(str, Enum):
    """User role enum."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class User(Base):
    """User model."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), nullable=False)
    email = Column(String(255), nullable=False)  # Stored lower-cased
    password_hash = Column(String(255), nullable=True)  # Nullable for OAuth-only users
    role = Column(String(20), nullable=False, default=UserRole.USER.value)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    email_verified_at = Column(UTCDateTime, nullable=True)

    # Single-use account tokens (SHA-256 of the hex token)
    email_verification_token = Column(String(64), nullable=True, index=True)
    email_verification_expires = Column(UTCDateTime, nullable=True)
    password_reset_token = Column(String(64), nullable=True, index=True)
    password_reset_expires = Column(UTCDateTime, nullable=True)

    # MFA enforcement
    mfa_setup_required = Column(Boolean, default=False, nullable=False)
    mfa_grace_period_start = Column(UTCDateTime, nullable=True)
    mfa_grace_period_end = Column(UTCDateTime, nullable=True)
    mfa_setup_completed_at = Column(UTCDateTime, nullable=True)

    # Lifecycle
    archived_at = Column(UTCDateTime, nullable=True)
    anonymized_at = Column(UTCDateTime, nullable=True)
    last_login_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        UTCDateTime,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ux_users_email_lower", func.lower(email), unique=True),
        Index("ux_users_username_lower", func.lower(username), unique=True),
        Index("ix_users_role", "role"),
    )

    # Relationships (deletes cascade from the user only)
    oauth_accounts = relationship("OAuthAccount", back_populates="user", cascade="all, delete-orphan")
    mfa_secret = relationship("MFASecret", back_populates="user", uselist=False, cascade="all, delete-orphan")
    mfa_backup_codes = relationship("MFABackupCode", back_populates="user", cascade="all, delete-orphan")
    mfa_preferences = relationship(
        "UserMFAPreferences", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    email_codes = relationship("Email2FACode", cascade="all, delete-orphan", passive_deletes=True)
    mfa_challenges = relationship("MFAChallenge", cascade="all, delete-orphan", passive_deletes=True)
    sessions = relationship("AuthSession", back_populates="user", cascade="all, delete-orphan")
    trusted_devices = relationship("TrustedDevice", back_populates="user", cascade="all, delete-orphan")

    @property
    def lifecycle_state(self) -> str:
        """Effective lifecycle state: anonymized > archived > active/disabled."""
        if self.anonymized_at is not None:
            return "anonymized"
        if self.archived_at is not None:
            return "archived"
        return "active" if self.is_active else "disabled"

    @property
    def can_authenticate(self) -> bool:
        return self.lifecycle_state == "active"

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)
