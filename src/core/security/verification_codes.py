"""
Six-digit email verification codes.

A code is stored under ``verification:code:{hmac(code)}`` so a leaked store
never reveals a usable code. Codes are single-use and expire after
VERIFICATION_CODE_TTL_SECONDS. A successful verification yields an email
token; every failure looks the same to the caller.
"""

import hashlib
import hmac
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from src.core.config import settings
from src.core.exceptions import AuthenticationError, ConfigurationError
from src.core.rate_limit_config import ActionClass
from src.core.rate_limiter import RateLimiter
from src.core.security.tokens import EmailTokenService
from src.core.validation import is_valid_code, is_valid_email, normalize_email
from src.models.session import VerificationCodeRecord
from src.services.session_store import InMemorySessionBackend, SessionBackend

logger = logging.getLogger(__name__)

CODE_KEY_PREFIX = "verification:code"
GENERIC_SUCCESS_MESSAGE = "Check your email for the verification code"
GENERIC_ERROR_MESSAGE = "Invalid or expired verification code"


class EmailSender(ABC):
    """Delivers verification codes; transport lives outside this service"""

    @abstractmethod
    async def send_verification_code(self, email: str, code: str) -> None:
        pass


class LoggingEmailSender(EmailSender):
    """Development sender: writes the code to the log instead of mailing it"""

    async def send_verification_code(self, email, code):
        logger.info(f"📧 [mock email] Verification code for {email}: {code}")


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


class VerificationCodeService:
    """Issue and redeem email verification codes"""

    def __init__(
        self,
        backend: Optional[SessionBackend] = None,
        rate_limiter: Optional[RateLimiter] = None,
        token_service: Optional[EmailTokenService] = None,
        email_sender: Optional[EmailSender] = None,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        self._clock = clock
        self.backend = backend or InMemorySessionBackend(clock)
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.token_service = token_service or EmailTokenService(clock=clock)
        self.email_sender = email_sender or LoggingEmailSender()
        self._secret = secret if secret is not None else settings.SESSION_SECRET
        self.ttl_seconds = ttl_seconds or settings.VERIFICATION_CODE_TTL_SECONDS

    def _code_key(self, code: str) -> str:
        if not self._secret:
            raise ConfigurationError("SESSION_SECRET is required to hash verification codes",
                                     component="verification_codes")
        digest = hmac.new(self._secret.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{CODE_KEY_PREFIX}:{digest}"

    def _reject(self, reason: str) -> AuthenticationError:
        logger.info(f"Verification code rejected: {reason}")
        return AuthenticationError(
            GENERIC_ERROR_MESSAGE,
            reason=reason,
            code="INVALID_CODE",
            status_code=400
        )

    async def send_code(self, email: str) -> str:
        """
        Generate, store and deliver a code for ``email``.

        Always returns the generic success message so the response never
        reveals whether an address is known. Delivery failures are logged
        and swallowed for the same reason.

        Raises:
            RateLimitedError: More than the hourly quota for this address
            StorageError: The code could not be stored
        """
        if isinstance(email, str):
            email = normalize_email(email)
        if not is_valid_email(email):
            logger.info("Verification code requested for malformed address")
            return GENERIC_SUCCESS_MESSAGE

        await self.rate_limiter.enforce(email, ActionClass.EMAIL_CODE_SEND)

        code = generate_code()
        record = VerificationCodeRecord(email=email, created_at=int(self._clock() * 1000))
        await self.backend.set(
            self._code_key(code),
            record.model_dump_json(by_alias=True),
            self.ttl_seconds
        )

        try:
            await self.email_sender.send_verification_code(email, code)
        except Exception as e:
            logger.error(f"Failed to deliver verification code: {e}")

        return GENERIC_SUCCESS_MESSAGE

    async def verify_code(self, email: str, code: str) -> str:
        """
        Redeem ``code`` for ``email`` and return a fresh email token.

        Raises:
            AuthenticationError: Unknown, expired, mismatched or malformed code
            RateLimitedError: Too many attempts for this address
        """
        if isinstance(email, str):
            email = normalize_email(email)
        if not is_valid_email(email):
            raise self._reject("malformed_email")
        if not is_valid_code(code):
            raise self._reject("malformed_code")

        code = code.strip()

        await self.rate_limiter.enforce(email, ActionClass.EMAIL_CODE_VERIFY)

        key = self._code_key(code)
        raw = await self.backend.get(key)
        if raw is None:
            raise self._reject("unknown_code")

        try:
            record = VerificationCodeRecord.model_validate_json(raw)
        except PydanticValidationError:
            raise self._reject("unreadable_record")

        if record.email != email:
            raise self._reject("email_mismatch")

        age_ms = int(self._clock() * 1000) - record.created_at
        if age_ms > self.ttl_seconds * 1000:
            await self.backend.delete(key)
            raise self._reject("expired")

        await self.backend.delete(key)
        logger.info("✅ Email verified")
        return self.token_service.issue(email)
