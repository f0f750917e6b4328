"""AES-256-GCM encryption for secrets stored at rest.

Email-service credentials and TOTP secrets are encrypted with a single
process-wide master key read from ``EMAIL_ENCRYPTION_KEY``. The key may be
given as 64 hex characters or 32 raw characters; any other value is
stretched with scrypt.

Stored format: ``base64(iv):base64(tag):base64(ciphertext)``.
"""

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from authcore.core.logging import get_logger

logger = get_logger(__name__)

KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
_KDF_SALT = b"auth-system-salt"


class DecryptionError(ValueError):
    """Raised when a stored secret cannot be decrypted."""


def derive_key(raw_key: str) -> bytes:
    """Turn the configured key string into 32 key bytes."""
    if not raw_key:
        raise ValueError("EMAIL_ENCRYPTION_KEY must be set")

    if len(raw_key) == KEY_BYTES * 2:
        try:
            return bytes.fromhex(raw_key)
        except ValueError:
            pass

    encoded = raw_key.encode("utf-8")
    if len(encoded) == KEY_BYTES:
        return encoded

    kdf = Scrypt(salt=_KDF_SALT, length=KEY_BYTES, n=2**14, r=8, p=1)
    return kdf.derive(encoded)


class SecretCipher:
    """AES-256-GCM cipher bound to one master key."""

    def __init__(self, raw_key: str):
        self._aesgcm = AESGCM(derive_key(raw_key))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext))

    def decrypt(self, stored: str) -> str:
        try:
            iv_b64, tag_b64, ct_b64 = stored.split(":")
            iv = base64.b64decode(iv_b64)
            tag = base64.b64decode(tag_b64)
            ciphertext = base64.b64decode(ct_b64)
        except (ValueError, binascii.Error) as e:
            raise DecryptionError("Malformed encrypted value") from e

        try:
            return self._aesgcm.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except InvalidTag as e:
            raise DecryptionError("Encrypted value failed authentication") from e

    def encrypt_json(self, value: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(value, sort_keys=True))

    def decrypt_json(self, stored: str) -> dict[str, Any]:
        return json.loads(self.decrypt(stored))

    def self_test(self) -> None:
        """Round-trip probe run once at startup."""
        probe = "authcore-key-probe"
        if self.decrypt(self.encrypt(probe)) != probe:
            raise RuntimeError("Encryption key self-test failed")
        logger.info("encryption_key_verified", extra={"event": "encryption_key_verified"})
