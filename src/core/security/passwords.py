"""
Session password hashing.

Hashes are PBKDF2-HMAC-SHA256 with a fresh 16-byte salt per call and are
encoded as ``pbkdf2_sha256$<iterations>$<base64(salt || key)>``. The
algorithm tag and iteration count travel with the hash, so raising the cost
later keeps previously issued hashes verifiable.

Hashes written before the tag was introduced are bare ``base64(salt || key)``
strings; ``verify_password`` still accepts them with the reference parameters.
"""

import asyncio
import base64
import binascii
import logging
import secrets
from typing import Optional, Tuple

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

ALGORITHM_TAG = "pbkdf2_sha256"
ITERATIONS = 100_000
SALT_LENGTH = 16
KEY_LENGTH = 64  # 512 bits


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )


def hash_password(password: str, iterations: int = ITERATIONS) -> str:
    """
    Hash a password with a fresh random salt.

    Args:
        password: The plaintext password (must be UTF-8 encodable)
        iterations: PBKDF2 cost factor

    Returns:
        Encoded hash string
    """
    salt = secrets.token_bytes(SALT_LENGTH)
    derived = _kdf(salt, iterations).derive(password.encode("utf-8"))
    blob = base64.b64encode(salt + derived).decode("ascii")
    return f"{ALGORITHM_TAG}${iterations}${blob}"


def _parse(encoded: str) -> Optional[Tuple[int, bytes, bytes]]:
    """Split an encoded hash into (iterations, salt, key); None if malformed"""
    if "$" in encoded:
        parts = encoded.split("$")
        if len(parts) != 3 or parts[0] != ALGORITHM_TAG:
            return None
        try:
            iterations = int(parts[1])
        except ValueError:
            return None
        if iterations <= 0:
            return None
        blob = parts[2]
    else:
        # Legacy untagged format
        iterations = ITERATIONS
        blob = encoded

    try:
        combined = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError):
        return None

    if len(combined) != SALT_LENGTH + KEY_LENGTH:
        return None

    return iterations, combined[:SALT_LENGTH], combined[SALT_LENGTH:]


def verify_password(password: str, encoded: str) -> bool:
    """
    Verify a password against an encoded hash.

    Never raises: malformed input simply fails verification so callers
    cannot learn anything about the stored format.
    """
    if not isinstance(password, str) or not isinstance(encoded, str):
        return False

    parsed = _parse(encoded)
    if parsed is None:
        logger.debug("Rejected malformed password hash")
        return False

    try:
        candidate = password.encode("utf-8")
    except UnicodeEncodeError:
        return False

    iterations, salt, stored = parsed
    try:
        _kdf(salt, iterations).verify(candidate, stored)
    except InvalidKey:
        return False
    return True


async def hash_password_async(password: str) -> str:
    """Run hash_password in a worker thread so the event loop stays free"""
    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(password: str, encoded: str) -> bool:
    """Run verify_password in a worker thread so the event loop stays free"""
    return await asyncio.to_thread(verify_password, password, encoded)
