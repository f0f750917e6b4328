"""MFA utilities: TOTP and backup codes."""

import secrets
from datetime import datetime

import pyotp
from pyotp.utils import strings_equal

from authcore.core.config import settings
from authcore.core.crypto import SecretCipher
from authcore.core.logging import get_logger
from authcore.core.tokens import sha256_hex

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6

# Excludes 0/O and 1/I
UNAMBIGUOUS_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8


def encrypt_totp_secret(cipher: SecretCipher, secret: str) -> str:
    """Encrypt TOTP secret."""
    return cipher.encrypt(secret)


def decrypt_totp_secret(cipher: SecretCipher, encrypted_secret: str) -> str:
    """Decrypt TOTP secret."""
    return cipher.decrypt(encrypted_secret)


def generate_totp_secret() -> str:
    """Generate a new TOTP secret."""
    return pyotp.random_base32()


def generate_totp_provisioning_uri(secret: str, email: str) -> str:
    """Generate TOTP provisioning URI for QR code."""
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    return totp.provisioning_uri(name=email, issuer_name=settings.MFA_TOTP_ISSUER)


def totp_code_at(secret: str, for_time: datetime) -> str:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL).at(for_time)


def match_totp_step(secret: str, code: str, now: datetime, window: int = 1) -> int | None:
    """Return the time step the code belongs to within ±window steps, or None."""
    code = (code or "").strip().replace(" ", "")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return None

    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    current = totp.timecode(now)
    matched: int | None = None
    # Check every step so timing does not depend on which one matched
    for offset in range(-window, window + 1):
        step = current + offset
        if strings_equal(totp.generate_otp(step), code) and matched is None:
            matched = step
    return matched


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().upper().replace("-", "").replace(" ", "")


def generate_backup_codes(count: int | None = None) -> list[str]:
    """Generate backup codes formatted as XXXX-XXXX."""
    if count is None:
        count = settings.MFA_BACKUP_CODES_COUNT
    codes: set[str] = set()
    while len(codes) < count:
        raw = "".join(secrets.choice(UNAMBIGUOUS_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        codes.add(f"{raw[:4]}-{raw[4:]}")
    return sorted(codes)


def hash_backup_code(code: str) -> str:
    """Hash a backup code for storage."""
    return sha256_hex(normalize_backup_code(code))
