"""MFA administration and user self-service MFA settings.

Functions add their changes and audit rows to the caller's transaction;
the caller commits.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from authcore.core.app_exceptions import (
    EMAIL_NOT_VERIFIED,
    EXPIRED_CODE,
    INVALID_CODE,
    INVALID_INPUT,
    NOT_ALLOWED,
    NOT_FOUND,
    raise_domain_error,
)
from authcore.core.audit import AuditAction, write_audit
from authcore.core.config import settings
from authcore.core.logging import get_logger
from authcore.core.security import hash_token
from authcore.core.security_logging import RequestMeta
from authcore.core.tokens import generate_hex_token
from authcore.models.mfa_config import (
    MethodChangeBehavior,
    MFAConfig,
    MFAMode,
    MFARoleConfig,
    UserControl,
    UserMFAPreferences,
)
from authcore.models.user import User, UserRole
from authcore.services import email_otp, mfa_enforcement, totp
from authcore.services.mfa_policy import METHOD_EMAIL, METHOD_TOTP
from authcore.services.mfa_store import (
    get_mfa_config,
    get_or_create_preferences,
    get_preferences,
    get_role_config,
    has_totp_enabled,
)

logger = get_logger(__name__)

# Columns an administrator may change through update_config
CONFIG_FIELDS = (
    "mode",
    "code_format",
    "code_expiration_minutes",
    "max_failed_attempts",
    "lockout_behavior",
    "lockout_duration_minutes",
    "resend_rate_limit",
    "resend_cooldown_seconds",
    "fallback_totp_attempts_threshold",
    "backup_codes_enabled_totp",
    "backup_codes_enabled_email",
    "email_verification_required",
    "allow_multiple_emails",
    "user_control",
    "method_change_behavior",
    "grace_period_days",
    "role_based_mfa_enabled",
    "device_trust_enabled",
    "device_trust_duration_days",
    "max_trusted_devices",
    "logging_level",
    "notification_level",
)

ROLE_CONFIG_FIELDS = (
    "mfa_required",
    "allowed_methods",
    "code_expiration_minutes",
    "max_failed_attempts",
    "lockout_behavior",
    "lockout_duration_minutes",
    "exempt_from_enforcement",
)

MODE_METHODS = {
    MFAMode.TOTP_ONLY.value: [METHOD_TOTP],
    MFAMode.EMAIL_ONLY.value: [METHOD_EMAIL],
    MFAMode.TOTP_EMAIL_REQUIRED.value: [METHOD_TOTP, METHOD_EMAIL],
    MFAMode.TOTP_EMAIL_FALLBACK.value: [METHOD_TOTP, METHOD_EMAIL],
}


def _column_default(column_name: str) -> Any:
    default = MFAConfig.__table__.c[column_name].default
    if default is None:
        return None
    return default.arg


def get_config(db: Session) -> MFAConfig:
    return get_mfa_config(db)


def update_config(
    db: Session,
    actor: User,
    changes: dict[str, Any],
    meta: RequestMeta | None = None,
) -> MFAConfig:
    """Apply an already-validated partial update to the config singleton."""
    unknown = sorted(set(changes) - set(CONFIG_FIELDS))
    if unknown:
        raise_domain_error(INVALID_INPUT, "Unknown configuration keys", {"keys": unknown})

    config = get_mfa_config(db, for_update=True)
    diff = {}
    for name, value in changes.items():
        old = getattr(config, name)
        if old != value:
            setattr(config, name, value)
            diff[name] = {"old": old, "new": value}
    config.updated_by = actor.id

    write_audit(
        db,
        AuditAction.MFA_CONFIG_UPDATE,
        actor=actor,
        target_type="mfa_config",
        target_id=config.id,
        details={"changes": diff},
        meta=meta,
        config=config,
    )
    logger.info("mfa_config_updated", extra={"event": "mfa_config_updated", "fields": sorted(diff)})
    return config


def reset_config(db: Session, actor: User, meta: RequestMeta | None = None) -> MFAConfig:
    """Restore every administrator-editable setting to its default."""
    config = get_mfa_config(db, for_update=True)
    for name in CONFIG_FIELDS:
        setattr(config, name, _column_default(name))
    config.updated_by = actor.id
    write_audit(
        db,
        AuditAction.MFA_CONFIG_RESET,
        actor=actor,
        target_type="mfa_config",
        target_id=config.id,
        meta=meta,
        config=config,
    )
    return config


def update_role_config(
    db: Session,
    actor: User,
    role: str,
    changes: dict[str, Any],
    meta: RequestMeta | None = None,
) -> MFARoleConfig:
    if role not in {r.value for r in UserRole}:
        raise_domain_error(NOT_FOUND, f"Unknown role: {role}")
    unknown = sorted(set(changes) - set(ROLE_CONFIG_FIELDS))
    if unknown:
        raise_domain_error(INVALID_INPUT, "Unknown role configuration keys", {"keys": unknown})

    methods = changes.get("allowed_methods")
    if methods is not None:
        if not methods or any(m not in (METHOD_TOTP, METHOD_EMAIL) for m in methods):
            raise_domain_error(INVALID_INPUT, "allowed_methods must be a non-empty subset of ['totp', 'email']")
        changes = {**changes, "allowed_methods": list(dict.fromkeys(methods))}

    role_config = get_role_config(db, role)
    if role_config is None:
        role_config = MFARoleConfig(role=role)
        db.add(role_config)
    for name, value in changes.items():
        setattr(role_config, name, value)
    db.flush()

    write_audit(
        db,
        AuditAction.MFA_ROLE_CONFIG_UPDATE,
        actor=actor,
        target_type="mfa_role_config",
        target_id=role_config.id,
        details={"role": role, "changes": changes},
        meta=meta,
    )
    return role_config


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise_domain_error(NOT_FOUND, "User not found")
    return user


def current_method(db: Session, user: User, prefs: UserMFAPreferences | None = None) -> str | None:
    """The method the user signs in with today, if any."""
    if prefs is None:
        prefs = get_preferences(db, user.id)
    has_totp = has_totp_enabled(db, user.id)
    has_email = bool(prefs and prefs.email_2fa_enabled)
    if prefs is not None and prefs.preferred_method:
        if (prefs.preferred_method == METHOD_TOTP and has_totp) or (prefs.preferred_method == METHOD_EMAIL and has_email):
            return prefs.preferred_method
    if has_totp:
        return METHOD_TOTP
    if has_email:
        return METHOD_EMAIL
    return None


def force_transition(
    db: Session,
    actor: User,
    user_id: int,
    method: str,
    now: datetime,
    meta: RequestMeta | None = None,
) -> UserMFAPreferences:
    """Move a user onto a method now, clearing any pending change."""
    if method not in (METHOD_TOTP, METHOD_EMAIL):
        raise_domain_error(INVALID_INPUT, f"Unknown MFA method: {method}")
    user = _get_user(db, user_id)
    prefs = get_or_create_preferences(db, user.id)
    previous = current_method(db, user, prefs)

    prefs.preferred_method = method
    prefs.pending_method_change = None
    prefs.pending_method_deadline = None
    prefs.grandfathered = False
    if method == METHOD_EMAIL:
        if not prefs.email_2fa_enabled:
            prefs.email_2fa_enabled = True
            prefs.email_2fa_enabled_at = now
    elif not has_totp_enabled(db, user.id):
        # Must enrol TOTP at next login
        user.mfa_setup_required = True
        user.mfa_grace_period_start = None
        user.mfa_grace_period_end = None
        user.mfa_setup_completed_at = None

    write_audit(
        db,
        AuditAction.MFA_FORCE_TRANSITION,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"from": previous, "to": method},
        meta=meta,
    )
    return prefs


def unlock_user_mfa(db: Session, actor: User, user_id: int, meta: RequestMeta | None = None) -> int:
    user = _get_user(db, user_id)
    unlocked = email_otp.unlock_user(db, user.id)
    write_audit(
        db,
        AuditAction.MFA_UNLOCK_USER,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"codes_unlocked": unlocked},
        meta=meta,
    )
    logger.info("mfa_user_unlocked", extra={"event": "mfa_user_unlocked", "user_id": user.id})
    return unlocked


def apply_method_change(
    db: Session,
    actor: User,
    behavior: str,
    now: datetime,
    grace_period_days: int | None = None,
    meta: RequestMeta | None = None,
) -> dict[str, Any]:
    """Reconcile users whose current method the system mode no longer allows."""
    if behavior not in {b.value for b in MethodChangeBehavior}:
        raise_domain_error(INVALID_INPUT, f"Unknown method change behavior: {behavior}")

    config = get_mfa_config(db)
    allowed = MODE_METHODS.get(config.mode)
    days = grace_period_days if grace_period_days is not None else config.grace_period_days
    affected = 0

    if allowed:
        rows = (
            db.query(UserMFAPreferences, User)
            .join(User, User.id == UserMFAPreferences.user_id)
            .filter(User.anonymized_at.is_(None))
            .with_for_update(of=UserMFAPreferences)
            .all()
        )
        target = allowed[0]
        for prefs, user in rows:
            method = current_method(db, user, prefs)
            if behavior == MethodChangeBehavior.IMMEDIATE.value:
                if prefs.pending_method_change is not None or prefs.grandfathered:
                    affected += 1
                prefs.pending_method_change = None
                prefs.pending_method_deadline = None
                prefs.grandfathered = False
                if method is not None and method not in allowed:
                    prefs.preferred_method = target
                continue
            if method is None or method in allowed:
                continue
            affected += 1
            if behavior == MethodChangeBehavior.GRACE_PERIOD.value:
                prefs.pending_method_change = target
                prefs.pending_method_deadline = now + timedelta(days=days)
                prefs.grandfathered = False
            else:
                prefs.grandfathered = True
                prefs.pending_method_change = None
                prefs.pending_method_deadline = None

    write_audit(
        db,
        AuditAction.MFA_APPLY_METHOD_CHANGE,
        actor=actor,
        target_type="mfa_config",
        target_id=config.id,
        details={"behavior": behavior, "grace_period_days": days, "affected_users": affected},
        meta=meta,
    )
    return {"behavior": behavior, "affected_users": affected, "grace_period_days": days}


def _require_user_managed(config: MFAConfig) -> None:
    if config.user_control == UserControl.ADMIN_CONTROLLED.value:
        raise_domain_error(NOT_ALLOWED, "MFA settings are managed by an administrator")


def enable_email_2fa(db: Session, user: User, config: MFAConfig, now: datetime) -> UserMFAPreferences:
    if config.email_verification_required and not user.email_verified:
        raise_domain_error(EMAIL_NOT_VERIFIED, "Verify your email address before enabling email verification")
    prefs = get_or_create_preferences(db, user.id)
    if not prefs.email_2fa_enabled:
        prefs.email_2fa_enabled = True
        prefs.email_2fa_enabled_at = now
    return prefs


def disable_email_2fa(db: Session, user: User, config: MFAConfig) -> UserMFAPreferences:
    _require_user_managed(config)
    prefs = get_or_create_preferences(db, user.id)
    prefs.email_2fa_enabled = False
    prefs.email_2fa_enabled_at = None
    if prefs.preferred_method == METHOD_EMAIL:
        prefs.preferred_method = None
    email_otp.invalidate_codes(db, user.id)
    return prefs


def set_alternate_email(db: Session, user: User, config: MFAConfig, email: str, now: datetime) -> str:
    """Store an unverified alternate address; returns the plaintext verification token."""
    if not config.allow_multiple_emails:
        raise_domain_error(NOT_ALLOWED, "Alternate email addresses are disabled")
    email = (email or "").strip().lower()
    if email == user.email.lower():
        raise_domain_error(INVALID_INPUT, "Alternate email must differ from the account email")

    token = generate_hex_token()
    prefs = get_or_create_preferences(db, user.id)
    prefs.alternate_email = email
    prefs.alternate_email_verified = False
    prefs.alternate_email_verification_token = hash_token(token)
    prefs.alternate_email_verification_expires = now + timedelta(hours=settings.EMAIL_VERIFICATION_EXPIRE_HOURS)
    return token


def verify_alternate_email(db: Session, user: User, token: str, now: datetime) -> UserMFAPreferences:
    prefs = get_preferences(db, user.id)
    if prefs is None or not prefs.alternate_email_verification_token:
        raise_domain_error(NOT_FOUND, "No alternate email pending verification")
    if prefs.alternate_email_verification_token != hash_token(token or ""):
        raise_domain_error(INVALID_CODE, "Invalid verification token")
    if prefs.alternate_email_verification_expires is None or prefs.alternate_email_verification_expires < now:
        raise_domain_error(EXPIRED_CODE, "Verification token has expired")

    prefs.alternate_email_verified = True
    prefs.alternate_email_verification_token = None
    prefs.alternate_email_verification_expires = None
    return prefs


def remove_alternate_email(db: Session, user: User) -> None:
    prefs = get_preferences(db, user.id)
    if prefs is None or not prefs.alternate_email:
        raise_domain_error(NOT_FOUND, "No alternate email configured")
    prefs.alternate_email = None
    prefs.alternate_email_verified = False
    prefs.alternate_email_verification_token = None
    prefs.alternate_email_verification_expires = None


def set_preferred_method(db: Session, user: User, config: MFAConfig, method: str) -> UserMFAPreferences:
    _require_user_managed(config)
    if method not in (METHOD_TOTP, METHOD_EMAIL):
        raise_domain_error(INVALID_INPUT, f"Unknown MFA method: {method}")
    prefs = get_or_create_preferences(db, user.id)
    if method == METHOD_TOTP and not has_totp_enabled(db, user.id):
        raise_domain_error(NOT_ALLOWED, "Set up an authenticator app first")
    if method == METHOD_EMAIL and not prefs.email_2fa_enabled:
        raise_domain_error(NOT_ALLOWED, "Enable email verification first")

    prefs.preferred_method = method
    if prefs.pending_method_change == method:
        prefs.pending_method_change = None
        prefs.pending_method_deadline = None
    return prefs


def get_user_mfa_status(db: Session, user: User, now: datetime) -> dict[str, Any]:
    """Self-service view of the user's MFA configuration."""
    config = get_mfa_config(db)
    prefs = get_preferences(db, user.id)
    enforcement = mfa_enforcement.get_status(db, user, now)
    return {
        "mode": config.mode,
        "totp_enabled": has_totp_enabled(db, user.id),
        "email_2fa_enabled": bool(prefs and prefs.email_2fa_enabled),
        "preferred_method": prefs.preferred_method if prefs else None,
        "current_method": current_method(db, user, prefs),
        "backup_codes_remaining": totp.remaining_backup_codes(db, user.id),
        "alternate_email": prefs.alternate_email if prefs else None,
        "alternate_email_verified": bool(prefs and prefs.alternate_email_verified),
        "pending_method_change": prefs.pending_method_change if prefs else None,
        "pending_method_deadline": prefs.pending_method_deadline if prefs else None,
        "grandfathered": bool(prefs and prefs.grandfathered),
        "user_control": config.user_control,
        "enforcement": {
            "enforcement_enabled": enforcement.enforcement_enabled,
            "setup_required": enforcement.setup_required,
            "grace_period_active": enforcement.grace_period_active,
            "grace_period_end": enforcement.grace_period_end,
            "days_remaining": enforcement.days_remaining,
            "pending_methods": enforcement.pending_methods,
            "reason": enforcement.reason,
        },
    }
