"""Password strength rules."""

import re

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

_SYMBOL_RE = re.compile("[" + re.escape(PASSWORD_SYMBOLS) + "]")


def validate_password_strength(password: str) -> list[str]:
    """Return the list of unmet requirements (empty when the password is acceptable)."""
    errors: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not _SYMBOL_RE.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def is_password_strong(password: str) -> bool:
    return not validate_password_strength(password)
