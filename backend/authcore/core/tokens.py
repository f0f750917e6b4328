"""Secure random tokens, hashing and constant-time comparison."""

import hashlib
import hmac
import secrets

TOKEN_BYTES = 32  # 256 bits


def generate_hex_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random hex token for verification and reset links."""
    return secrets.token_hex(nbytes)


def generate_opaque_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random URL-safe token for challenge and refresh credentials."""
    return secrets.token_urlsafe(nbytes)


def sha256_hex(value: str) -> str:
    """SHA-256 hex digest of a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two token strings without leaking timing."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
