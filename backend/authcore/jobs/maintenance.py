"""Scheduled maintenance jobs. Each job commits its own unit of work."""

from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from authcore.core.audit import purge_audit_logs
from authcore.core.config import Settings
from authcore.core.logging import get_logger
from authcore.services import auth_flow, email_otp, mfa_enforcement, security_events, sessions, trusted_devices
from authcore.services.mfa_store import get_mfa_config

logger = get_logger(__name__)


def session_cleanup(db: Session, settings: Settings, now: datetime) -> dict[str, Any]:
    """Drop expired or long-revoked sessions, stale MFA challenges and lapsed device trust."""
    deleted_sessions = sessions.cleanup_expired_sessions(db, now)
    deleted_challenges = auth_flow.cleanup_expired_challenges(db, now)
    deleted_devices = trusted_devices.cleanup_expired_devices(db, now)
    db.commit()
    return {
        "sessions_deleted": deleted_sessions,
        "challenges_deleted": deleted_challenges,
        "devices_deleted": deleted_devices,
    }


def email_code_cleanup(db: Session, settings: Settings, now: datetime) -> dict[str, Any]:
    cutoff = now - timedelta(hours=settings.EMAIL_CODE_RETENTION_HOURS)
    deleted = email_otp.cleanup_codes(db, cutoff, now)
    db.commit()
    return {"codes_deleted": deleted, "older_than": cutoff.isoformat()}


def audit_retention(db: Session, settings: Settings, now: datetime) -> dict[str, Any]:
    """Apply the retention window to audit rows and login attempts."""
    cutoff = now - timedelta(days=settings.AUDIT_RETENTION_DAYS)
    deleted = purge_audit_logs(db, cutoff)
    attempts_deleted = security_events.cleanup_login_attempts(db, cutoff)
    db.commit()
    return {
        "audit_logs_deleted": deleted,
        "login_attempts_deleted": attempts_deleted,
        "older_than": cutoff.isoformat(),
    }


def enforcement_apply(db: Session, settings: Settings, now: datetime) -> dict[str, Any]:
    """Open grace windows for users created since enforcement was switched on."""
    config = get_mfa_config(db)
    if not config.enforcement_enabled:
        return {"skipped": True, "reason": "enforcement_disabled"}
    result = mfa_enforcement.apply_to_existing_users(db, config.enforcement_grace_period_days, now)
    db.commit()
    return {**result, "grace_period_end": result["grace_period_end"].isoformat()}


JOBS: dict[str, Callable[[Session, Settings, datetime], dict[str, Any]]] = {
    "session_cleanup": session_cleanup,
    "email_code_cleanup": email_code_cleanup,
    "audit_retention": audit_retention,
    "enforcement_apply": enforcement_apply,
}
