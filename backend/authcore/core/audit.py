"""Audit logging helpers."""

from datetime import datetime
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session

from authcore.core.logging import get_logger
from authcore.core.security_logging import RequestMeta
from authcore.models.audit import AuditLog
from authcore.models.mfa_config import MFA_CONFIG_ID, LoggingLevel, MFAConfig
from authcore.models.user import User

logger = get_logger(__name__)


class AuditAction:
    """Audit action names."""

    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_ROLE_CHANGE = "USER_ROLE_CHANGE"
    USER_STATUS_CHANGE = "USER_STATUS_CHANGE"
    USER_ARCHIVE = "USER_ARCHIVE"
    USER_ANONYMIZE = "USER_ANONYMIZE"
    USER_PASSWORD_RESET = "USER_PASSWORD_RESET"
    USER_REGISTER = "USER_REGISTER"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_LOGOUT = "USER_LOGOUT"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    MFA_CODE_SENT = "MFA_CODE_SENT"
    MFA_CODE_VERIFIED = "MFA_CODE_VERIFIED"
    MFA_CODE_FAILED = "MFA_CODE_FAILED"
    MFA_LOCKOUT = "MFA_LOCKOUT"
    MFA_FALLBACK_ENABLED = "MFA_FALLBACK_ENABLED"
    MFA_METHOD_ENABLED = "MFA_METHOD_ENABLED"
    MFA_METHOD_DISABLED = "MFA_METHOD_DISABLED"
    MFA_METHOD_CHANGED = "MFA_METHOD_CHANGED"
    MFA_BACKUP_CODES_REGENERATED = "MFA_BACKUP_CODES_REGENERATED"
    MFA_CONFIG_UPDATE = "MFA_CONFIG_UPDATE"
    MFA_CONFIG_RESET = "MFA_CONFIG_RESET"
    MFA_ROLE_CONFIG_UPDATE = "MFA_ROLE_CONFIG_UPDATE"
    MFA_FORCE_TRANSITION = "MFA_FORCE_TRANSITION"
    MFA_UNLOCK_USER = "MFA_UNLOCK_USER"
    MFA_APPLY_METHOD_CHANGE = "MFA_APPLY_METHOD_CHANGE"
    MFA_ENFORCEMENT_ENABLED = "MFA_ENFORCEMENT_ENABLED"
    MFA_ENFORCEMENT_DISABLED = "MFA_ENFORCEMENT_DISABLED"
    MFA_GRACE_APPLIED = "MFA_GRACE_APPLIED"
    DEVICE_TRUSTED = "DEVICE_TRUSTED"
    DEVICE_REVOKED = "DEVICE_REVOKED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSIONS_REVOKED_ALL = "SESSIONS_REVOKED_ALL"
    EMAIL_SERVICE_CREATED = "EMAIL_SERVICE_CREATED"
    EMAIL_SERVICE_ACTIVATED = "EMAIL_SERVICE_ACTIVATED"
    EMAIL_SERVICE_DELETED = "EMAIL_SERVICE_DELETED"
    AUDIT_PURGE = "AUDIT_PURGE"


class AuditCategory:
    """How an audit record is filtered by the configured logging level."""

    INFO = "info"  # routine successes; comprehensive only
    FAILURE = "failure"
    STATE_CHANGE = "state_change"
    ADMIN = "admin"  # privileged admin actions; always recorded


def _should_record(db: Session, category: str, config: MFAConfig | None) -> bool:
    if category == AuditCategory.ADMIN:
        return True
    if config is None:
        config = db.get(MFAConfig, MFA_CONFIG_ID)
    level = config.logging_level if config is not None else LoggingLevel.COMPREHENSIVE.value
    if level == LoggingLevel.NONE.value:
        return False
    if level == LoggingLevel.SECURITY_ONLY.value:
        return category in (AuditCategory.FAILURE, AuditCategory.STATE_CHANGE)
    return True


def write_audit(
    db: Session,
    action: str,
    *,
    actor: User | None = None,
    user_id: int | None = None,
    target_type: str | None = None,
    target_id: int | None = None,
    details: dict[str, Any] | None = None,
    meta: RequestMeta | None = None,
    category: str = AuditCategory.ADMIN,
    config: MFAConfig | None = None,
) -> AuditLog | None:
    """
    Add an audit log entry to the caller's transaction.

    The row is committed together with the action it records; this helper
    never commits.

    Args:
        db: Database session
        action: Action name (see AuditAction)
        actor: Admin performing a privileged action
        user_id: User acting on their own account
        target_type: Type of entity (e.g., "user", "mfa_config", "session")
        target_id: ID of the entity
        details: Additional structured details
        meta: Transport metadata (IP, user agent, request id)
        category: Filtering category against the configured logging level
        config: Already-loaded MFA config, to avoid a lookup

    Returns:
        The pending AuditLog, or None when filtered out by the logging level
    """
    if not _should_record(db, category, config):
        return None

    audit_details = dict(details) if details else {}
    if meta is not None and meta.request_id:
        audit_details.setdefault("request_id", meta.request_id)
    if actor is not None:
        audit_details.setdefault("actor_role", actor.role)

    entry = AuditLog(
        admin_id=actor.id if actor is not None else None,
        admin_email=actor.email if actor is not None else None,
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=audit_details or None,
        ip_address=meta.ip_address if meta else None,
        user_agent=meta.user_agent if meta else None,
    )
    db.add(entry)
    return entry


def purge_audit_logs(db: Session, older_than: datetime) -> int:
    """Retention: delete audit rows created before the cutoff. Caller commits."""
    result = db.execute(delete(AuditLog).where(AuditLog.created_at < older_than))
    deleted = result.rowcount or 0
    logger.info("audit_logs_purged", extra={"event": "audit_logs_purged", "deleted": deleted})
    return deleted
