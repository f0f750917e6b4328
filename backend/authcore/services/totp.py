"""TOTP enrolment, verification with replay guard, and backup codes."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import CONFLICT, INVALID_CODE, INVALID_CREDENTIALS, NOT_FOUND, raise_domain_error
from authcore.core.crypto import SecretCipher
from authcore.core.logging import get_logger
from authcore.core.mfa import (
    decrypt_totp_secret,
    encrypt_totp_secret,
    generate_backup_codes,
    generate_totp_provisioning_uri,
    generate_totp_secret,
    hash_backup_code,
    match_totp_step,
)
from authcore.core.security import verify_password
from authcore.core.tokens import constant_time_equals
from authcore.models.mfa import MFABackupCode, MFASecret
from authcore.models.user import User
from authcore.services.mfa_store import get_totp_secret

logger = get_logger(__name__)


@dataclass(frozen=True)
class TOTPSetup:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class BackupCodeResult:
    success: bool
    remaining: int


def start_setup(db: Session, cipher: SecretCipher, user: User, now: datetime) -> TOTPSetup:
    """Store a fresh, not yet enabled secret for the user."""
    existing = get_totp_secret(db, user.id, for_update=True)
    if existing is not None and existing.enabled:
        raise_domain_error(CONFLICT, "TOTP is already enabled")

    secret = generate_totp_secret()
    if existing is None:
        db.add(
            MFASecret(
                user_id=user.id,
                secret_encrypted=encrypt_totp_secret(cipher, secret),
                enabled=False,
                created_at=now,
            )
        )
    else:
        existing.secret_encrypted = encrypt_totp_secret(cipher, secret)
        existing.last_used_step = None
        existing.created_at = now
    db.flush()

    return TOTPSetup(secret=secret, provisioning_uri=generate_totp_provisioning_uri(secret, user.email))


def confirm_setup(
    db: Session,
    cipher: SecretCipher,
    user: User,
    code: str,
    now: datetime,
    with_backup_codes: bool = True,
) -> list[str]:
    """Enable TOTP after one valid code. Returns plaintext backup codes (shown once)."""
    record = get_totp_secret(db, user.id, for_update=True)
    if record is None:
        raise_domain_error(NOT_FOUND, "TOTP setup has not been started")
    if record.enabled:
        raise_domain_error(CONFLICT, "TOTP is already enabled")

    secret = decrypt_totp_secret(cipher, record.secret_encrypted)
    step = match_totp_step(secret, code, now)
    if step is None:
        raise_domain_error(INVALID_CODE, "Invalid TOTP code")

    record.enabled = True
    record.enabled_at = now
    record.last_used_step = step

    codes: list[str] = []
    if with_backup_codes:
        codes = replace_backup_codes(db, user.id, now)
    db.flush()
    return codes


def verify_totp(db: Session, cipher: SecretCipher, user_id: int, code: str, now: datetime) -> bool:
    """Verify a login TOTP code, rejecting any step at or before the last accepted one."""
    record = get_totp_secret(db, user_id, for_update=True)
    if record is None or not record.enabled:
        return False

    secret = decrypt_totp_secret(cipher, record.secret_encrypted)
    step = match_totp_step(secret, code, now)
    if step is None:
        return False
    if record.last_used_step is not None and step <= record.last_used_step:
        logger.warning("totp_replay_rejected", extra={"event": "totp_replay_rejected", "user_id": user_id})
        return False

    record.last_used_step = step
    db.flush()
    return True


def replace_backup_codes(db: Session, user_id: int, now: datetime) -> list[str]:
    """Drop the old set and store hashes of a fresh one."""
    db.execute(delete(MFABackupCode).where(MFABackupCode.user_id == user_id))
    codes = generate_backup_codes()
    for code in codes:
        db.add(MFABackupCode(user_id=user_id, code_hash=hash_backup_code(code), created_at=now))
    db.flush()
    return codes


def remaining_backup_codes(db: Session, user_id: int) -> int:
    return db.scalar(
        select(func.count(MFABackupCode.id)).where(
            MFABackupCode.user_id == user_id, MFABackupCode.used_at.is_(None)
        )
    ) or 0


def consume_backup_code(db: Session, user_id: int, code: str, now: datetime) -> BackupCodeResult:
    """Mark a matching unused backup code as used."""
    submitted = hash_backup_code(code)
    rows = db.scalars(
        select(MFABackupCode)
        .where(MFABackupCode.user_id == user_id, MFABackupCode.used_at.is_(None))
        .with_for_update()
    ).all()

    matched: MFABackupCode | None = None
    for row in rows:
        if constant_time_equals(submitted, row.code_hash) and matched is None:
            matched = row

    if matched is None:
        return BackupCodeResult(success=False, remaining=len(rows))

    matched.used_at = now
    db.flush()
    return BackupCodeResult(success=True, remaining=len(rows) - 1)


def disable(db: Session, user: User, password: str) -> None:
    """Remove TOTP and backup codes after re-checking the password."""
    if not verify_password(password, user.password_hash):
        raise_domain_error(INVALID_CREDENTIALS, "Password is incorrect")

    record = get_totp_secret(db, user.id, for_update=True)
    if record is None:
        raise_domain_error(NOT_FOUND, "TOTP is not configured")

    db.delete(record)
    db.execute(delete(MFABackupCode).where(MFABackupCode.user_id == user.id))
    db.flush()


def regenerate_backup_codes(db: Session, user: User, password: str, now: datetime) -> list[str]:
    if not verify_password(password, user.password_hash):
        raise_domain_error(INVALID_CREDENTIALS, "Password is incorrect")
    record = get_totp_secret(db, user.id)
    if record is None or not record.enabled:
        raise_domain_error(NOT_FOUND, "TOTP is not enabled")
    return replace_backup_codes(db, user.id, now)
