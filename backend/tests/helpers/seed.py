"""Test seed helpers for creating test data."""

import re
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from authcore.core.crypto import SecretCipher
from authcore.core.mfa import encrypt_totp_secret, generate_totp_secret, totp_code_at
from authcore.core.security import hash_password
from authcore.models.mfa import MFASecret
from authcore.models.user import User, UserRole
from authcore.services import sessions
from authcore.services.mfa_store import get_mfa_config, get_or_create_preferences

DEFAULT_PASSWORD = "Secure1!"
_CODE_RE = re.compile(r"code is: (\S+)")


def create_test_user(
    db: Session,
    username: str,
    email: str,
    password: str = DEFAULT_PASSWORD,
    role: UserRole = UserRole.USER,
    email_verified: bool = True,
    is_active: bool = True,
    **kwargs: Any,
) -> User:
    """
    Create a user with deterministic defaults. Flushes, does not commit.

    Args:
        db: Database session
        username: Unique username
        email: Email (stored lower-cased)
        password: Plain password (will be hashed)
        role: User role
        email_verified: Whether email is verified
        is_active: Whether the account is enabled
        **kwargs: Additional user attributes
    """
    user = User(
        username=username,
        email=email.lower().strip(),
        password_hash=hash_password(password),
        role=role.value,
        email_verified=email_verified,
        is_active=is_active,
        **kwargs,
    )
    db.add(user)
    db.flush()
    return user


def set_mfa_config(db: Session, **fields: Any) -> None:
    config = get_mfa_config(db)
    for name, value in fields.items():
        setattr(config, name, value)
    db.commit()


def enroll_totp(db: Session, cipher: SecretCipher, user: User, now: datetime) -> str:
    """Store an enabled TOTP secret for the user and return it."""
    secret = generate_totp_secret()
    db.add(
        MFASecret(
            user_id=user.id,
            secret_encrypted=encrypt_totp_secret(cipher, secret),
            enabled=True,
            enabled_at=now,
            created_at=now,
        )
    )
    db.commit()
    return secret


def enable_email_mfa(db: Session, user: User, now: datetime) -> None:
    prefs = get_or_create_preferences(db, user.id)
    prefs.email_2fa_enabled = True
    prefs.email_2fa_enabled_at = now
    db.commit()


def totp_code(secret: str, at: datetime) -> str:
    return totp_code_at(secret, at)


def auth_headers(db: Session, user: User, now: datetime, remember_me: bool = False) -> dict[str, str]:
    """Open a real session for the user and return a bearer header."""
    tokens = sessions.create_session(db, user, None, remember_me, now)
    db.commit()
    return {"Authorization": f"Bearer {tokens.access_token}"}


def last_code(outbox: list[dict]) -> str:
    """Code from the newest MFA email in the outbox."""
    for message in reversed(outbox):
        match = _CODE_RE.search(message["body_text"])
        if match:
            return match.group(1)
    raise AssertionError("no code email in outbox")
