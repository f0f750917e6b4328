"""Database models."""

# Import all models here so Alembic and metadata.create_all see them
from authcore.models.audit import AuditLog
from authcore.models.mfa import Email2FACode, MFABackupCode, MFAChallenge, MFAMethod, MFASecret
from authcore.models.mfa_config import MFAConfig, MFARoleConfig, UserMFAPreferences
from authcore.models.oauth import OAuthAccount, OAuthProvider
from authcore.models.platform import EmailService, EmailTemplate, SystemSetting
from authcore.models.security import LoginAttempt, SecurityEvent
from authcore.models.session import AuthSession, TrustedDevice
from authcore.models.user import User, UserRole

__all__ = [
    "AuditLog",
    "AuthSession",
    "Email2FACode",
    "EmailService",
    "EmailTemplate",
    "LoginAttempt",
    "MFABackupCode",
    "MFAChallenge",
    "MFAConfig",
    "MFAMethod",
    "MFARoleConfig",
    "MFASecret",
    "OAuthAccount",
    "OAuthProvider",
    "SecurityEvent",
    "SystemSetting",
    "TrustedDevice",
    "User",
    "UserMFAPreferences",
    "UserRole",
]
