"""
Reversible encryption for participant email addresses at rest.

Emails are kept so the summary can be mailed when a session finishes, but
they never sit in storage as plaintext. AES-256-GCM with a key derived from
the server secret via PBKDF2 (fresh salt per value); the session id is bound
as associated data so a ciphertext cannot be replayed into another session.
"""

import json
import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.core.config import settings
from src.core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
SALT_LENGTH = 16
KEY_ITERATIONS = 100_000


class EmailCipher:
    """Encrypt/decrypt email addresses bound to a session"""

    def __init__(self, secret: Optional[str] = None):
        self._secret = secret if secret is not None else settings.SESSION_SECRET

    def _derive_key(self, salt: bytes) -> bytes:
        if not self._secret:
            raise ConfigurationError("SESSION_SECRET not configured", component="EmailCipher")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=KEY_ITERATIONS,
        )
        return kdf.derive(self._secret.encode("utf-8"))

    def encrypt(self, email: str, session_id: str) -> str:
        """
        Encrypt an email address.

        Returns:
            JSON string ``{"salt", "nonce", "data"}`` (hex fields)
        """
        if not email or not isinstance(email, str):
            raise ValidationError("Email must be a non-empty string", field="email")

        salt = secrets.token_bytes(SALT_LENGTH)
        nonce = secrets.token_bytes(NONCE_LENGTH)
        key = self._derive_key(salt)

        ciphertext = AESGCM(key).encrypt(nonce, email.encode("utf-8"), session_id.encode("utf-8"))
        return json.dumps({
            "v": 1,
            "salt": salt.hex(),
            "nonce": nonce.hex(),
            "data": ciphertext.hex(),
        })

    def decrypt(self, serialized: str, session_id: str) -> str:
        """
        Decrypt a value produced by ``encrypt``.

        Raises:
            ValidationError: If the value is malformed, tampered with, or
                belongs to a different session
        """
        try:
            parsed = json.loads(serialized)
            salt = bytes.fromhex(parsed["salt"])
            nonce = bytes.fromhex(parsed["nonce"])
            data = bytes.fromhex(parsed["data"])
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError("Malformed encrypted email", field="encryptedEmail") from e

        if len(salt) != SALT_LENGTH or len(nonce) != NONCE_LENGTH:
            raise ValidationError("Malformed encrypted email", field="encryptedEmail")

        key = self._derive_key(salt)
        try:
            plaintext = AESGCM(key).decrypt(nonce, data, session_id.encode("utf-8"))
        except InvalidTag as e:
            logger.warning(f"Email decryption failed for session {session_id[:8]}...")
            raise ValidationError("Failed to decrypt email", field="encryptedEmail") from e

        return plaintext.decode("utf-8")
