"""MFA challenge-store models (TOTP secrets, backup codes, email codes, challenges)."""

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow


class MFAMethod:
    TOTP = "totp"
    EMAIL = "email"
    BACKUP_CODE = "backup_code"


class MFASecret(Base):
    """TOTP secret, encrypted at rest. One per user."""

    __tablename__ = "mfa_secrets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    secret_encrypted = Column(String(512), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    enabled_at = Column(UTCDateTime, nullable=True)
    last_used_step = Column(Integer, nullable=True)  # Replay guard
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="mfa_secret")


class MFABackupCode(Base):
    """Single-use backup code (hash only)."""

    __tablename__ = "mfa_backup_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(64), nullable=False)
    used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="mfa_backup_codes")

    __table_args__ = (UniqueConstraint("user_id", "code_hash", name="uq_backup_code_user_hash"),)


class Email2FACode(Base):
    """Email OTP code. At most one unused row per user."""

    __tablename__ = "email_2fa_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    code_hash = Column(String(64), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(UTCDateTime, nullable=True)
    resend_count = Column(Integer, default=0, nullable=False)
    last_resend_at = Column(UTCDateTime, nullable=True)
    used = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_email_2fa_codes_user_used", "user_id", "used"),
        Index("ix_email_2fa_codes_created_at", "created_at"),
    )


class MFAChallenge(Base):
    """Partial login waiting for a second factor."""

    __tablename__ = "mfa_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    mode = Column(String(32), nullable=False)
    required_methods = Column(JSON, nullable=False, default=list)
    verified_methods = Column(JSON, nullable=False, default=list)
    totp_failures = Column(Integer, default=0, nullable=False)
    email_fallback_allowed = Column(Boolean, default=False, nullable=False)
    remember_me = Column(Boolean, default=False, nullable=False)
    device_fingerprint = Column(String(64), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    issued_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    consumed_at = Column(UTCDateTime, nullable=True)
