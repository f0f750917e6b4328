"""Administrative user management.

Every action re-reads the acting admin's row under lock, so a demotion or
deactivation committed by another request is seen before the action runs.
Changes and their audit rows go into the caller's transaction.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import INVALID_INPUT, NOT_ALLOWED, NOT_FOUND, raise_domain_error
from authcore.core.audit import AuditAction, write_audit
from authcore.core.config import settings
from authcore.core.logging import get_logger
from authcore.core.security import UNUSABLE_PASSWORD_HASH, hash_token
from authcore.core.security_logging import RequestMeta
from authcore.core.tokens import generate_hex_token
from authcore.models.mfa import Email2FACode, MFABackupCode, MFAChallenge, MFASecret
from authcore.models.mfa_config import UserMFAPreferences
from authcore.models.oauth import OAuthAccount
from authcore.models.session import TrustedDevice
from authcore.models.user import User, UserRole
from authcore.services import sessions
from authcore.services.auth_flow import ensure_unique_identity, new_user, normalize_email, validate_username

logger = get_logger(__name__)

PRIVILEGED_ROLES = (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)
USER_UPDATE_FIELDS = ("username", "email", "email_verified")


def _load_actor(db: Session, actor: User) -> User:
    current = db.query(User).filter(User.id == actor.id).with_for_update().first()
    if current is None or not current.can_authenticate or not current.is_admin:
        raise_domain_error(NOT_ALLOWED, "Administrator privileges required")
    return current


def _get_target(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if user is None:
        raise_domain_error(NOT_FOUND, "User not found")
    return user


def _is_super_admin(user: User) -> bool:
    return user.role == UserRole.SUPER_ADMIN.value


def _forbid_self(actor: User, target: User, action: str) -> None:
    if actor.id == target.id:
        raise_domain_error(NOT_ALLOWED, f"You cannot {action} your own account")


def _guard_privileged_target(actor: User, target: User) -> None:
    """Only a super admin may act on a super admin."""
    if _is_super_admin(target) and not _is_super_admin(actor):
        raise_domain_error(NOT_ALLOWED, "Only a super admin can modify a super admin")


def _validate_role(role: str) -> str:
    if role not in {r.value for r in UserRole}:
        raise_domain_error(INVALID_INPUT, f"Invalid role: {role}")
    return role


def list_users(
    db: Session,
    offset: int,
    limit: int,
    q: str | None = None,
    role: str | None = None,
    status: str | None = None,
) -> tuple[list[User], int]:
    query = db.query(User)
    if q:
        term = f"%{q.lower()}%"
        query = query.filter(or_(func.lower(User.username).like(term), func.lower(User.email).like(term)))
    if role:
        query = query.filter(User.role == _validate_role(role))
    if status:
        if status == "active":
            query = query.filter(User.is_active.is_(True), User.archived_at.is_(None), User.anonymized_at.is_(None))
        elif status == "disabled":
            query = query.filter(User.is_active.is_(False), User.archived_at.is_(None))
        elif status == "archived":
            query = query.filter(User.archived_at.isnot(None), User.anonymized_at.is_(None))
        elif status == "anonymized":
            query = query.filter(User.anonymized_at.isnot(None))
        else:
            raise_domain_error(INVALID_INPUT, f"Invalid status: {status}")

    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit).all()
    return users, total


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise_domain_error(NOT_FOUND, "User not found")
    return user


def _issue_reset_token(user: User, now: datetime) -> str:
    token = generate_hex_token()
    user.password_reset_token = hash_token(token)
    user.password_reset_expires = now + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
    return token


def create_user(
    db: Session,
    actor: User,
    username: str,
    email: str,
    role: str,
    now: datetime,
    password: str | None = None,
    meta: RequestMeta | None = None,
) -> tuple[User, str | None]:
    """Create a verified user. Without a password a reset token is returned for the invite."""
    actor = _load_actor(db, actor)
    role = _validate_role(role)
    if role in PRIVILEGED_ROLES and not _is_super_admin(actor):
        raise_domain_error(NOT_ALLOWED, "Only a super admin can create administrators")

    user = new_user(db, username, email, password, now, role=role, email_verified=True)
    reset_token = _issue_reset_token(user, now) if password is None else None

    write_audit(
        db,
        AuditAction.USER_CREATE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"email": user.email, "role": role, "invited": password is None},
        meta=meta,
    )
    return user, reset_token


def update_user(
    db: Session,
    actor: User,
    user_id: int,
    changes: dict[str, Any],
    now: datetime,
    meta: RequestMeta | None = None,
) -> User:
    unknown = sorted(set(changes) - set(USER_UPDATE_FIELDS))
    if unknown:
        raise_domain_error(INVALID_INPUT, "Unknown user fields", {"keys": unknown})

    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    _guard_privileged_target(actor, user)
    if user.anonymized_at is not None:
        raise_domain_error(NOT_ALLOWED, "Anonymized users cannot be modified")

    username = validate_username(changes["username"]) if "username" in changes else user.username
    email = normalize_email(changes["email"]) if "email" in changes else user.email
    ensure_unique_identity(db, username, email, exclude_user_id=user.id)

    diff = {}
    for name, value in (("username", username), ("email", email)):
        if getattr(user, name) != value:
            diff[name] = {"old": getattr(user, name), "new": value}
            setattr(user, name, value)
    if "email_verified" in changes and bool(changes["email_verified"]) != user.email_verified:
        diff["email_verified"] = {"old": user.email_verified, "new": bool(changes["email_verified"])}
        user.email_verified = bool(changes["email_verified"])
        user.email_verified_at = now if user.email_verified else None
    user.updated_at = now

    write_audit(
        db,
        AuditAction.USER_UPDATE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"changes": diff},
        meta=meta,
    )
    return user


def change_role(
    db: Session,
    actor: User,
    user_id: int,
    new_role: str,
    now: datetime,
    meta: RequestMeta | None = None,
) -> User:
    actor = _load_actor(db, actor)
    new_role = _validate_role(new_role)
    user = _get_target(db, user_id)
    _forbid_self(actor, user, "change the role of")

    if not _is_super_admin(actor) and (new_role in PRIVILEGED_ROLES or user.role in PRIVILEGED_ROLES):
        raise_domain_error(NOT_ALLOWED, "Only a super admin can grant or revoke administrator roles")

    old_role = user.role
    if old_role == new_role:
        return user
    user.role = new_role
    user.updated_at = now
    # Outstanding tokens carry the old role
    sessions.revoke_all_user_sessions(db, user.id, now, reason="role_changed")

    write_audit(
        db,
        AuditAction.USER_ROLE_CHANGE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"old_role": old_role, "new_role": new_role},
        meta=meta,
    )
    return user


def set_status(
    db: Session,
    actor: User,
    user_id: int,
    is_active: bool,
    now: datetime,
    meta: RequestMeta | None = None,
) -> User:
    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    if not is_active:
        _forbid_self(actor, user, "deactivate")
    _guard_privileged_target(actor, user)
    if user.anonymized_at is not None or user.archived_at is not None:
        raise_domain_error(NOT_ALLOWED, f"User is {user.lifecycle_state}")

    old = user.is_active
    user.is_active = is_active
    user.updated_at = now
    revoked = 0
    if not is_active:
        revoked = sessions.revoke_all_user_sessions(db, user.id, now, reason="account_disabled")

    write_audit(
        db,
        AuditAction.USER_STATUS_CHANGE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"old": old, "new": is_active, "sessions_revoked": revoked},
        meta=meta,
    )
    return user


def delete_user(db: Session, actor: User, user_id: int, meta: RequestMeta | None = None) -> None:
    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    _forbid_self(actor, user, "delete")
    if user.role in PRIVILEGED_ROLES and not _is_super_admin(actor):
        raise_domain_error(NOT_ALLOWED, "Only a super admin can delete administrators")

    write_audit(
        db,
        AuditAction.USER_DELETE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"email": user.email, "role": user.role},
        meta=meta,
    )
    db.delete(user)
    db.flush()
    logger.info("user_deleted", extra={"event": "user_deleted", "user_id": user_id, "actor_id": actor.id})


def archive_user(db: Session, actor: User, user_id: int, now: datetime, meta: RequestMeta | None = None) -> User:
    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    _forbid_self(actor, user, "archive")
    _guard_privileged_target(actor, user)
    if user.anonymized_at is not None:
        raise_domain_error(NOT_ALLOWED, "User is anonymized")
    if user.archived_at is None:
        user.archived_at = now
        user.is_active = False
        user.updated_at = now
    revoked = sessions.revoke_all_user_sessions(db, user.id, now, reason="account_archived")

    write_audit(
        db,
        AuditAction.USER_ARCHIVE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"sessions_revoked": revoked},
        meta=meta,
    )
    return user


def anonymize_user(db: Session, actor: User, user_id: int, now: datetime, meta: RequestMeta | None = None) -> User:
    """Irreversibly strip personal data; the row stays for referential history."""
    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    _forbid_self(actor, user, "anonymize")
    _guard_privileged_target(actor, user)
    if user.anonymized_at is not None:
        return user

    sessions.revoke_all_user_sessions(db, user.id, now, reason="account_anonymized")
    for model in (MFASecret, MFABackupCode, Email2FACode, MFAChallenge, TrustedDevice, UserMFAPreferences, OAuthAccount):
        db.query(model).filter(model.user_id == user.id).delete(synchronize_session=False)

    user.username = f"anonymized-{user.id}"
    user.email = f"anonymized-{user.id}@anonymized.invalid"
    user.password_hash = UNUSABLE_PASSWORD_HASH
    user.is_active = False
    user.email_verification_token = None
    user.email_verification_expires = None
    user.password_reset_token = None
    user.password_reset_expires = None
    user.mfa_setup_required = False
    user.mfa_grace_period_start = None
    user.mfa_grace_period_end = None
    user.archived_at = user.archived_at or now
    user.anonymized_at = now
    user.updated_at = now
    db.expire(user, ["mfa_secret", "mfa_preferences"])

    write_audit(
        db,
        AuditAction.USER_ANONYMIZE,
        actor=actor,
        target_type="user",
        target_id=user.id,
        meta=meta,
    )
    return user


def trigger_password_reset(
    db: Session, actor: User, user_id: int, now: datetime, meta: RequestMeta | None = None
) -> tuple[User, str]:
    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    _guard_privileged_target(actor, user)
    if not user.can_authenticate:
        raise_domain_error(NOT_ALLOWED, f"User is {user.lifecycle_state}")

    token = _issue_reset_token(user, now)
    write_audit(
        db,
        AuditAction.USER_PASSWORD_RESET,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"expires_at": user.password_reset_expires.isoformat()},
        meta=meta,
    )
    return user, token


def revoke_user_sessions(
    db: Session, actor: User, user_id: int, now: datetime, meta: RequestMeta | None = None
) -> int:
    actor = _load_actor(db, actor)
    user = _get_target(db, user_id)
    _guard_privileged_target(actor, user)
    revoked = sessions.revoke_all_user_sessions(db, user.id, now, reason="admin_revoked")
    write_audit(
        db,
        AuditAction.SESSIONS_REVOKED_ALL,
        actor=actor,
        target_type="user",
        target_id=user.id,
        details={"count": revoked},
        meta=meta,
    )
    return revoked
