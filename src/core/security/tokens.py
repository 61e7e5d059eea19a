"""
Email verification tokens.

A token proves that its holder completed email verification. It is a
compact HS256 JWT with a ``ver`` header and payload
``{email, issuedAt, expiresAt}`` (epoch milliseconds). The server keeps no
record of issued tokens; validity is self-contained and time-boxed, so a
leaked token stays valid until it expires.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from jose import JWTError, jwt

from src.core.config import settings
from src.core.exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_VERSION = 1
MS_PER_DAY = 24 * 60 * 60 * 1000

INVALID_TOKEN_MESSAGE = "Invalid or expired token"


class EmailTokenService:
    """Issue and verify signed, time-boxed email tokens"""

    def __init__(
        self,
        secret: Optional[str] = None,
        ttl_days: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            secret: Signing secret (defaults to settings.SESSION_SECRET)
            ttl_days: Token lifetime (defaults to settings.EMAIL_TOKEN_TTL_DAYS)
            clock: Returns current epoch seconds
        """
        self._secret = secret if secret is not None else settings.SESSION_SECRET
        self.ttl_days = ttl_days if ttl_days is not None else settings.EMAIL_TOKEN_TTL_DAYS
        self._clock = clock

        if not self._secret:
            logger.warning("SESSION_SECRET not configured - email tokens are unavailable")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue(self, email: str) -> str:
        """
        Issue a token for a verified email address.

        Raises:
            ConfigurationError: If no signing secret is configured
        """
        if not self._secret:
            raise ConfigurationError("SESSION_SECRET not configured", component="EmailTokenService")

        issued_at = self._now_ms()
        payload = {
            "email": email,
            "issuedAt": issued_at,
            "expiresAt": issued_at + self.ttl_days * MS_PER_DAY,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM, headers={"ver": TOKEN_VERSION})

    def verify(self, token: str) -> str:
        """
        Verify a token and return the email it vouches for.

        Every failure raises the same AuthenticationError; the reason is
        only visible in the log.

        Raises:
            AuthenticationError: If the token is malformed, forged or expired
        """
        reason = self._check(token)
        if isinstance(reason, dict):
            return reason["email"]

        logger.info(f"Email token rejected: {reason}")
        raise AuthenticationError(INVALID_TOKEN_MESSAGE, reason=reason, code="INVALID_TOKEN")

    def _check(self, token: Any) -> Union[Dict[str, Any], str]:
        """Return the payload on success, otherwise a short failure reason"""
        if not self._secret:
            return "secret_not_configured"

        if not isinstance(token, str):
            return "not_a_string"

        if token.count(".") != 2:
            return "wrong_segment_count"

        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return "undecodable"

        if header.get("alg") != ALGORITHM:
            return "unexpected_algorithm"
        if header.get("ver", TOKEN_VERSION) != TOKEN_VERSION:
            return "unsupported_version"

        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError:
            return "bad_signature"

        email = payload.get("email")
        issued_at = payload.get("issuedAt")
        expires_at = payload.get("expiresAt")
        if not isinstance(email, str) or not email \
                or not isinstance(issued_at, int) or not isinstance(expires_at, int):
            return "missing_fields"

        if self._now_ms() > expires_at:
            return "expired"

        return payload

    def is_valid(self, token: str) -> bool:
        return isinstance(self._check(token), dict)


def peek_email(token: str) -> Optional[str]:
    """
    Read the email from a token WITHOUT verifying it.

    Display only; authorization must go through EmailTokenService.verify.
    """
    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    email = payload.get("email")
    return email if isinstance(email, str) and email else None
