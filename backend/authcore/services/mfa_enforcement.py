"""MFA enforcement: grace periods for existing users and setup requirements.

A user is compliant once the methods the system mode needs are configured.
Users without them get a grace window when enforcement is applied; after it
closes they must complete setup before a session is issued.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from authcore.cache.redis import MFA_ENFORCEMENT_STATS, JsonCache
from authcore.core.audit import AuditAction, AuditCategory, write_audit
from authcore.core.logging import get_logger
from authcore.models.mfa import MFASecret
from authcore.models.mfa_config import MFAMode, MFARoleConfig, UserMFAPreferences
from authcore.models.user import User
from authcore.services.mfa_policy import METHOD_EMAIL, METHOD_TOTP
from authcore.services.mfa_store import get_mfa_config, get_preferences, get_role_config, has_totp_enabled

logger = get_logger(__name__)


@dataclass(frozen=True)
class MFAConfiguration:
    is_fully_configured: bool
    has_totp: bool
    has_email: bool
    required_methods: list[str] = field(default_factory=list)
    configured_methods: list[str] = field(default_factory=list)
    pending_methods: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EnforcementStatus:
    enforcement_enabled: bool
    setup_required: bool
    reason: str
    is_exempt: bool = False
    is_fully_configured: bool = False
    grace_period_active: bool = False
    grace_period_expired: bool = False
    grace_period_end: datetime | None = None
    days_remaining: int = 0
    pending_methods: list[str] = field(default_factory=list)


def days_remaining(grace_end: datetime, now: datetime) -> int:
    return max(0, math.ceil((grace_end - now).total_seconds() / 86400))


def configuration_for(mode: str, has_totp: bool, has_email: bool) -> MFAConfiguration:
    """Whether the user's enrolled methods satisfy the system mode."""
    if mode == MFAMode.TOTP_ONLY.value or mode == MFAMode.TOTP_EMAIL_FALLBACK.value:
        required = [METHOD_TOTP]
    elif mode == MFAMode.EMAIL_ONLY.value:
        required = [METHOD_EMAIL]
    elif mode == MFAMode.TOTP_EMAIL_REQUIRED.value:
        required = [METHOD_TOTP, METHOD_EMAIL]
    else:
        return MFAConfiguration(is_fully_configured=True, has_totp=has_totp, has_email=has_email)

    enabled = {METHOD_TOTP: has_totp, METHOD_EMAIL: has_email}
    configured = [method for method in (METHOD_TOTP, METHOD_EMAIL) if enabled[method]]
    pending = [method for method in required if not enabled[method]]
    return MFAConfiguration(
        is_fully_configured=not pending,
        has_totp=has_totp,
        has_email=has_email,
        required_methods=required,
        configured_methods=configured,
        pending_methods=pending,
    )


def has_required_mfa(mode: str, has_totp: bool, has_email: bool) -> bool:
    """Compliance per mode; with MFA disabled any enrolled method counts."""
    if mode == MFAMode.DISABLED.value:
        return has_totp or has_email
    return configuration_for(mode, has_totp, has_email).is_fully_configured


def _enrolled_user_ids(db: Session) -> tuple[set[int], set[int]]:
    totp_users = set(db.scalars(select(MFASecret.user_id).where(MFASecret.enabled.is_(True))).all())
    email_users = set(
        db.scalars(
            select(UserMFAPreferences.user_id).where(UserMFAPreferences.email_2fa_enabled.is_(True))
        ).all()
    )
    return totp_users, email_users


def is_role_exempt(db: Session, role: str) -> bool:
    role_config = get_role_config(db, role)
    return bool(role_config and role_config.exempt_from_enforcement)


def check_user_configuration(db: Session, user: User, mode: str) -> MFAConfiguration:
    prefs = get_preferences(db, user.id)
    return configuration_for(
        mode,
        has_totp=has_totp_enabled(db, user.id),
        has_email=bool(prefs and prefs.email_2fa_enabled),
    )


def get_status(db: Session, user: User, now: datetime) -> EnforcementStatus:
    """Enforcement status for one user."""
    config = get_mfa_config(db)

    if config.mode == MFAMode.DISABLED.value:
        return EnforcementStatus(enforcement_enabled=False, setup_required=False, reason="MFA is disabled")
    if not config.enforcement_enabled:
        return EnforcementStatus(
            enforcement_enabled=False, setup_required=False, reason="MFA enforcement is not enabled"
        )

    if is_role_exempt(db, user.role):
        return EnforcementStatus(
            enforcement_enabled=True,
            setup_required=False,
            is_exempt=True,
            reason=f"Role '{user.role}' is exempt from MFA enforcement",
        )

    configuration = check_user_configuration(db, user, config.mode)
    if configuration.is_fully_configured:
        return EnforcementStatus(
            enforcement_enabled=True,
            setup_required=False,
            is_fully_configured=True,
            reason="User has MFA configured",
        )

    grace_end = user.mfa_grace_period_end
    if grace_end is not None and now < grace_end:
        remaining = days_remaining(grace_end, now)
        return EnforcementStatus(
            enforcement_enabled=True,
            setup_required=False,
            grace_period_active=True,
            grace_period_end=grace_end,
            days_remaining=remaining,
            reason=f"Grace period active - {remaining} days remaining",
            pending_methods=configuration.pending_methods,
        )

    expired = grace_end is not None
    return EnforcementStatus(
        enforcement_enabled=True,
        setup_required=True,
        grace_period_expired=expired,
        grace_period_end=grace_end,
        reason="Grace period expired - MFA setup required" if expired else "MFA setup required",
        pending_methods=configuration.pending_methods,
    )


def apply_to_existing_users(db: Session, grace_days: int, now: datetime) -> dict[str, Any]:
    """Open a grace window for active users lacking the MFA the mode needs.

    Idempotent; caller commits. Users already marked for immediate setup
    (new registrations under enforcement, forced transitions) keep no window.
    """
    grace_end = now + timedelta(days=grace_days)
    mode = get_mfa_config(db).mode
    totp_users, email_users = _enrolled_user_ids(db)
    exempt_roles = set(
        db.scalars(select(MFARoleConfig.role).where(MFARoleConfig.exempt_from_enforcement.is_(True))).all()
    )
    candidates = db.scalars(
        select(User)
        .where(
            User.is_active.is_(True),
            User.archived_at.is_(None),
            User.anonymized_at.is_(None),
            User.mfa_grace_period_end.is_(None),
            User.mfa_setup_completed_at.is_(None),
            User.mfa_setup_required.is_(False),
        )
        .with_for_update()
    ).all()

    applied = 0
    for user in candidates:
        if user.role in exempt_roles:
            continue
        if has_required_mfa(mode, user.id in totp_users, user.id in email_users):
            continue
        user.mfa_setup_required = True
        user.mfa_grace_period_start = now
        user.mfa_grace_period_end = grace_end
        applied += 1

    logger.info(
        "mfa_grace_applied",
        extra={"event": "mfa_grace_applied", "candidates": len(candidates), "applied": applied},
    )
    return {
        "total_users": len(candidates),
        "applied_count": applied,
        "grace_period_end": grace_end,
        "grace_period_days": grace_days,
    }


def mark_requires_setup(user: User) -> None:
    """No grace window: setup is required at the next login."""
    user.mfa_setup_required = True
    user.mfa_grace_period_start = None
    user.mfa_grace_period_end = None


def mark_completed(user: User, now: datetime) -> None:
    user.mfa_setup_required = False
    user.mfa_setup_completed_at = now
    user.mfa_grace_period_start = None
    user.mfa_grace_period_end = None


def refresh_completion(db: Session, user: User, now: datetime) -> None:
    """Mark setup completed when the user's methods now satisfy the mode."""
    config = get_mfa_config(db)
    if config.mode == MFAMode.DISABLED.value:
        return
    if check_user_configuration(db, user, config.mode).is_fully_configured:
        mark_completed(user, now)


def enable_enforcement(
    db: Session,
    grace_days: int,
    now: datetime,
    actor: User | None = None,
    apply_to_existing: bool = True,
    meta: Any = None,
    redis_client: Any = None,
) -> dict[str, Any]:
    """Turn enforcement on and optionally open grace windows. Caller commits."""
    config = get_mfa_config(db, for_update=True)
    config.enforcement_enabled = True
    config.enforcement_grace_period_days = grace_days
    config.enforcement_started_at = now
    if actor is not None:
        config.updated_by = actor.id

    result: dict[str, Any] = {"enforcement_enabled": True, "grace_period_days": grace_days}
    if apply_to_existing:
        result["applied"] = apply_to_existing_users(db, grace_days, now)

    write_audit(
        db,
        AuditAction.MFA_ENFORCEMENT_ENABLED,
        actor=actor,
        target_type="mfa_config",
        target_id=config.id,
        details={"grace_period_days": grace_days, "apply_to_existing": apply_to_existing},
        meta=meta,
        category=AuditCategory.ADMIN,
        config=config,
    )
    invalidate_statistics(redis_client)
    return result


def disable_enforcement(
    db: Session,
    now: datetime,
    actor: User | None = None,
    meta: Any = None,
    redis_client: Any = None,
) -> None:
    config = get_mfa_config(db, for_update=True)
    config.enforcement_enabled = False
    if actor is not None:
        config.updated_by = actor.id
    write_audit(
        db,
        AuditAction.MFA_ENFORCEMENT_DISABLED,
        actor=actor,
        target_type="mfa_config",
        target_id=config.id,
        details={"disabled_at": now.isoformat()},
        meta=meta,
        category=AuditCategory.ADMIN,
        config=config,
    )
    invalidate_statistics(redis_client)


def invalidate_statistics(redis_client: Any = None) -> None:
    JsonCache(redis_client).delete(MFA_ENFORCEMENT_STATS)


def get_statistics(db: Session, now: datetime, redis_client: Any = None, ttl_seconds: int = 60) -> dict[str, Any]:
    """Compliance counts over active users, cached briefly when Redis is available."""
    cache = JsonCache(redis_client)
    cached = cache.get(MFA_ENFORCEMENT_STATS)
    if cached is not None:
        return cached

    config = get_mfa_config(db)
    users = db.scalars(
        select(User).where(User.is_active.is_(True), User.archived_at.is_(None), User.anonymized_at.is_(None))
    ).all()
    totp_users, email_users = _enrolled_user_ids(db)
    exempt_roles = set(
        db.scalars(select(MFARoleConfig.role).where(MFARoleConfig.exempt_from_enforcement.is_(True))).all()
    )

    in_grace = 0
    grace_expired = 0
    pending_setup = 0
    exempt = 0
    for user in users:
        if user.role in exempt_roles:
            exempt += 1
        if not user.mfa_setup_required:
            continue
        if user.mfa_grace_period_end is None:
            pending_setup += 1
        elif user.mfa_grace_period_end > now:
            in_grace += 1
        else:
            grace_expired += 1

    total = len(users)
    with_mfa = sum(
        1 for user in users if has_required_mfa(config.mode, user.id in totp_users, user.id in email_users)
    )
    stats = {
        "enforcement_enabled": bool(config.enforcement_enabled),
        "grace_period_days": config.enforcement_grace_period_days,
        "enforcement_started_at": config.enforcement_started_at.isoformat() if config.enforcement_started_at else None,
        "mfa_mode": config.mode,
        "statistics": {
            "total_users": total,
            "users_with_mfa": with_mfa,
            "users_without_mfa": total - with_mfa,
            "users_in_grace_period": in_grace,
            "users_grace_expired": grace_expired,
            "users_pending_setup": pending_setup,
            "exempt_users": exempt,
            "compliance_rate": round(with_mfa / total * 100) if total else 100,
        },
    }
    cache.set(MFA_ENFORCEMENT_STATS, stats, ttl_seconds)
    return stats
