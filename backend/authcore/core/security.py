"""Security utilities: password hashing, JWT access tokens, refresh tokens."""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any
from uuid import uuid4

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.core.app_exceptions import INVALID_INPUT, raise_domain_error
from authcore.core.config import settings
from authcore.core.logging import get_logger
from authcore.core.password_policy import validate_password_strength
from authcore.core.tokens import generate_opaque_token, sha256_hex

logger = get_logger(__name__)

# Stored for anonymized accounts; never a valid argon2 digest
UNUSABLE_PASSWORD_HASH = "!anonymized"

_password_hasher = PasswordHasher(
    time_cost=settings.PASSWORD_HASH_TIME_COST,
    memory_cost=settings.PASSWORD_HASH_MEMORY_COST,
    parallelism=settings.PASSWORD_HASH_PARALLELISM,
)


def hash_password(plain_password: str) -> str:
    """Hash a plain password using Argon2 after checking strength."""
    errors = validate_password_strength(plain_password)
    if errors:
        raise_domain_error(INVALID_INPUT, "Password does not meet requirements", {"errors": errors})
    return _password_hasher.hash(plain_password)


def verify_password(plain_password: str, password_hash: str | None) -> bool:
    """Verify a plain password against a hash. Never raises."""
    if not password_hash:
        return False
    try:
        return _password_hasher.verify(password_hash, plain_password)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return _password_hasher.hash(generate_opaque_token(16))


def verify_password_timing_safe(plain_password: str, password_hash: str | None) -> bool:
    """Verify against the real hash or a dummy one so unknown users cost the same."""
    if password_hash and password_hash.startswith("$argon2"):
        return verify_password(plain_password, password_hash)
    verify_password(plain_password, _dummy_hash())
    return False


def create_access_token(user_id: int, role: str, session_id: int | None = None) -> str:
    """Create a JWT access token."""
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")

    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_EXPIRES_IN)

    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": expire,
        "jti": str(uuid4()),
        "type": "access",
    }
    if session_id is not None:
        payload["sid"] = session_id

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def verify_access_token(token: str) -> dict[str, Any]:
    """Verify and decode a JWT access token."""
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired") from None
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Token is not an access token")
    return payload


def create_refresh_token() -> str:
    """Create an opaque refresh token (random string)."""
    return generate_opaque_token()


def hash_token(token: str) -> str:
    """Hash an opaque token for storage."""
    return sha256_hex(token)
