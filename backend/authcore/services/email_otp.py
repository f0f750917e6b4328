"""Email one-time codes: issuance, verification, resend, lockout.

Every function works inside the caller's transaction and locks the user's
unused code rows first, so issuance, verification and resend for one user
are serialized. Failed verifications are returned, not raised, so the caller
can commit the attempt counter before reporting the error.
"""

import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import (
    COOLDOWN,
    EXPIRED_CODE,
    INVALID_CODE,
    LOCKED_OUT,
    NO_CODE,
    RATE_LIMITED,
    raise_domain_error,
)
from authcore.core.logging import get_logger
from authcore.core.mfa import UNAMBIGUOUS_ALPHABET
from authcore.core.tokens import constant_time_equals, sha256_hex
from authcore.models.mfa import Email2FACode
from authcore.models.mfa_config import CodeFormat, LockoutBehavior
from authcore.services.mfa_policy import EffectiveOTPSettings

logger = get_logger(__name__)

# Lock length standing in for "until an administrator unlocks"
ADMIN_LOCK_DURATION = timedelta(days=365 * 100)


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    can_resend_at: datetime
    resend_count: int = 0


@dataclass(frozen=True)
class CodeVerification:
    success: bool
    error_code: str | None = None
    remaining_attempts: int | None = None
    locked_until: datetime | None = None
    lockout_behavior: str | None = None

    @property
    def details(self) -> dict:
        details: dict = {}
        if self.remaining_attempts is not None:
            details["remaining_attempts"] = self.remaining_attempts
        if self.locked_until is not None:
            details["locked_until"] = self.locked_until.isoformat()
        if self.lockout_behavior is not None:
            details["lockout_behavior"] = self.lockout_behavior
        return details


def generate_code(code_format: str) -> str:
    """Uniformly random code in the configured format."""
    if code_format == CodeFormat.NUMERIC_8.value:
        return "".join(secrets.choice(string.digits) for _ in range(8))
    if code_format == CodeFormat.ALPHANUMERIC_6.value:
        return "".join(secrets.choice(UNAMBIGUOUS_ALPHABET) for _ in range(6))
    return "".join(secrets.choice(string.digits) for _ in range(6))


def hash_code(code: str) -> str:
    return sha256_hex((code or "").strip().upper())


def _unused_codes(db: Session, user_id: int) -> list[Email2FACode]:
    stmt = (
        select(Email2FACode)
        .where(Email2FACode.user_id == user_id, Email2FACode.used.is_(False))
        .order_by(Email2FACode.created_at.desc(), Email2FACode.id.desc())
        .with_for_update()
    )
    return list(db.scalars(stmt).all())


def _active_lock(db: Session, user_id: int, now: datetime) -> Email2FACode | None:
    """Longest lock still in force on any of the user's rows, used or not."""
    stmt = (
        select(Email2FACode)
        .where(Email2FACode.user_id == user_id, Email2FACode.locked_until > now)
        .order_by(Email2FACode.locked_until.desc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def _raise_if_locked(db: Session, user_id: int, now: datetime) -> None:
    lock = _active_lock(db, user_id, now)
    if lock is not None:
        raise_domain_error(
            LOCKED_OUT,
            "Too many failed attempts. Email verification is locked.",
            {"locked_until": lock.locked_until.isoformat()},
        )


def get_active_code(db: Session, user_id: int, now: datetime) -> Email2FACode | None:
    """Newest unused code that is neither expired nor locked."""
    rows = _unused_codes(db, user_id)
    if not rows:
        return None
    newest = rows[0]
    if newest.expires_at <= now:
        return None
    if _active_lock(db, user_id, now) is not None:
        return None
    return newest


def issue_code(
    db: Session,
    user_id: int,
    otp_settings: EffectiveOTPSettings,
    now: datetime,
    resend_count: int = 0,
    last_resend_at: datetime | None = None,
) -> IssuedCode:
    """Invalidate the user's unused codes and store a new one. Returns the plaintext."""
    rows = _unused_codes(db, user_id)
    _raise_if_locked(db, user_id, now)

    for row in rows:
        row.used = True

    code = generate_code(otp_settings.code_format)
    expires_at = now + timedelta(minutes=otp_settings.code_expiration_minutes)
    db.add(
        Email2FACode(
            user_id=user_id,
            code_hash=hash_code(code),
            expires_at=expires_at,
            attempts=0,
            resend_count=resend_count,
            last_resend_at=last_resend_at,
            used=False,
            created_at=now,
        )
    )
    db.flush()

    logger.info(
        "email_code_issued",
        extra={"event": "email_code_issued", "user_id": user_id, "invalidated": len(rows)},
    )
    return IssuedCode(
        code=code,
        expires_at=expires_at,
        can_resend_at=now + timedelta(seconds=otp_settings.resend_cooldown_seconds),
        resend_count=resend_count,
    )


def verify_code(
    db: Session,
    user_id: int,
    code: str,
    otp_settings: EffectiveOTPSettings,
    now: datetime,
) -> CodeVerification:
    """Check a submitted code against the user's newest unused code."""
    rows = _unused_codes(db, user_id)
    if not rows:
        return CodeVerification(success=False, error_code=NO_CODE)

    lock = _active_lock(db, user_id, now)
    if lock is not None:
        return CodeVerification(success=False, error_code=LOCKED_OUT, locked_until=lock.locked_until)

    row = rows[0]

    if row.expires_at < now:
        return CodeVerification(success=False, error_code=EXPIRED_CODE)

    if constant_time_equals(hash_code(code), row.code_hash):
        row.used = True
        db.flush()
        return CodeVerification(success=True)

    row.attempts = (row.attempts or 0) + 1
    max_attempts = otp_settings.max_failed_attempts
    if row.attempts >= max_attempts:
        if otp_settings.lockout_behavior == LockoutBehavior.ADMIN_INTERVENTION.value:
            row.locked_until = now + ADMIN_LOCK_DURATION
        else:
            row.locked_until = now + timedelta(minutes=otp_settings.lockout_duration_minutes)
        db.flush()
        logger.warning(
            "email_code_locked",
            extra={"event": "email_code_locked", "user_id": user_id, "attempts": row.attempts},
        )
        return CodeVerification(
            success=False,
            error_code=LOCKED_OUT,
            remaining_attempts=0,
            locked_until=row.locked_until,
            lockout_behavior=otp_settings.lockout_behavior,
        )

    db.flush()
    return CodeVerification(
        success=False,
        error_code=INVALID_CODE,
        remaining_attempts=max_attempts - row.attempts,
    )


def resend_code(
    db: Session,
    user_id: int,
    otp_settings: EffectiveOTPSettings,
    now: datetime,
) -> IssuedCode:
    """Issue a replacement code subject to the resend limit and cooldown."""
    rows = _unused_codes(db, user_id)
    if not rows:
        return issue_code(db, user_id, otp_settings, now)

    latest = rows[0]
    if latest.resend_count >= otp_settings.resend_rate_limit:
        raise_domain_error(
            RATE_LIMITED,
            "Maximum resend attempts reached. Please log in again.",
            {"resend_limit": otp_settings.resend_rate_limit},
        )

    last_sent = latest.last_resend_at or latest.created_at
    available_at = last_sent + timedelta(seconds=otp_settings.resend_cooldown_seconds)
    if now < available_at:
        wait_seconds = max(1, math.ceil((available_at - now).total_seconds()))
        raise_domain_error(
            COOLDOWN,
            f"Please wait {wait_seconds} seconds before requesting a new code.",
            {"wait_seconds": wait_seconds},
        )

    return issue_code(
        db,
        user_id,
        otp_settings,
        now,
        resend_count=latest.resend_count + 1,
        last_resend_at=now,
    )


def unlock_user(db: Session, user_id: int) -> int:
    """Clear lockouts on every row and attempt counters on unused ones (administrative unlock)."""
    result = db.execute(
        update(Email2FACode)
        .where(Email2FACode.user_id == user_id, Email2FACode.locked_until.isnot(None))
        .values(locked_until=None)
    )
    db.execute(
        update(Email2FACode)
        .where(Email2FACode.user_id == user_id, Email2FACode.used.is_(False))
        .values(attempts=0)
    )
    return result.rowcount or 0


def invalidate_codes(db: Session, user_id: int) -> None:
    db.execute(
        update(Email2FACode)
        .where(Email2FACode.user_id == user_id, Email2FACode.used.is_(False))
        .values(used=True)
    )


def cleanup_codes(db: Session, older_than: datetime, now: datetime) -> int:
    """Delete codes created before the cutoff unless they still hold a lock. Caller commits."""
    result = db.execute(
        delete(Email2FACode).where(
            Email2FACode.created_at < older_than,
            or_(Email2FACode.locked_until.is_(None), Email2FACode.locked_until <= now),
        )
    )
    return result.rowcount or 0


def get_code_status(db: Session, user_id: int, otp_settings: EffectiveOTPSettings, now: datetime) -> dict:
    """Summary of the user's current code for display."""
    rows = _unused_codes(db, user_id)
    lock = _active_lock(db, user_id, now)
    if not rows:
        return {"has_active_code": False, "is_locked": lock is not None}

    row = rows[0]
    last_sent = row.last_resend_at or row.created_at
    return {
        "has_active_code": row.expires_at > now,
        "expires_at": row.expires_at,
        "attempts": row.attempts,
        "remaining_attempts": max(0, otp_settings.max_failed_attempts - row.attempts),
        "is_locked": lock is not None,
        "locked_until": lock.locked_until if lock is not None else None,
        "resend_count": row.resend_count,
        "can_resend_at": last_sent + timedelta(seconds=otp_settings.resend_cooldown_seconds),
    }
