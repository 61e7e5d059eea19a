# tests/core/test_verification_codes.py
"""
Unit tests for email verification codes.
"""
import pytest
from unittest.mock import AsyncMock

from src.core.exceptions import AuthenticationError, RateLimitedError
from src.core.security.verification_codes import (
    CODE_KEY_PREFIX,
    GENERIC_ERROR_MESSAGE,
    GENERIC_SUCCESS_MESSAGE,
    LoggingEmailSender,
    generate_code
)


class TestGenerateCode:

    def test_always_six_digits(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6 and code.isdigit()


class TestSendCode:

    async def test_sends_and_stores_hashed(self, code_service, email_sender, session_backend):
        message = await code_service.send_code("Lead@Example.com ")

        assert message == GENERIC_SUCCESS_MESSAGE
        email, code = email_sender.sent[-1]
        assert email == "lead@example.com"

        keys = list(session_backend._data)
        assert len(keys) == 1
        assert keys[0].startswith(f"{CODE_KEY_PREFIX}:")
        assert code not in keys[0]

    async def test_malformed_address_gets_same_answer(self, code_service, email_sender):
        assert await code_service.send_code("not-an-email") == GENERIC_SUCCESS_MESSAGE
        assert email_sender.sent == []

    async def test_delivery_failure_is_hidden(self, code_service):
        code_service.email_sender = AsyncMock()
        code_service.email_sender.send_verification_code.side_effect = RuntimeError("smtp down")

        assert await code_service.send_code("lead@example.com") == GENERIC_SUCCESS_MESSAGE

    async def test_ten_per_hour_per_address(self, code_service):
        for _ in range(10):
            await code_service.send_code("lead@example.com")

        with pytest.raises(RateLimitedError):
            await code_service.send_code("lead@example.com")

        # Other addresses are unaffected
        await code_service.send_code("other@example.com")

    async def test_logging_sender_does_not_raise(self):
        await LoggingEmailSender().send_verification_code("lead@example.com", "123456")


class TestVerifyCode:

    async def test_correct_code_returns_token(self, code_service, email_sender, token_service):
        await code_service.send_code("lead@example.com")
        code = email_sender.last_code_for("lead@example.com")

        token = await code_service.verify_code("LEAD@example.com", f" {code} ")
        assert token_service.verify(token) == "lead@example.com"

    async def test_code_is_single_use(self, code_service, email_sender):
        await code_service.send_code("lead@example.com")
        code = email_sender.last_code_for("lead@example.com")

        await code_service.verify_code("lead@example.com", code)
        with pytest.raises(AuthenticationError) as exc_info:
            await code_service.verify_code("lead@example.com", code)
        assert exc_info.value.reason == "unknown_code"

    async def test_code_for_other_address_rejected(self, code_service, email_sender):
        await code_service.send_code("lead@example.com")
        code = email_sender.last_code_for("lead@example.com")

        with pytest.raises(AuthenticationError) as exc_info:
            await code_service.verify_code("other@example.com", code)
        assert exc_info.value.reason == "email_mismatch"

    async def test_expired_code_rejected(self, code_service, email_sender, clock):
        await code_service.send_code("lead@example.com")
        code = email_sender.last_code_for("lead@example.com")

        clock.advance(301)
        with pytest.raises(AuthenticationError):
            await code_service.verify_code("lead@example.com", code)

    async def test_unknown_and_wrong_look_identical(self, code_service, email_sender):
        """No way to tell a wrong code from a code that never existed"""
        await code_service.send_code("lead@example.com")
        code = email_sender.last_code_for("lead@example.com")
        wrong = f"{(int(code) + 1) % 1_000_000:06d}"

        errors = []
        for email, attempt in [("lead@example.com", wrong), ("nobody@example.com", code), ("bad", "12")]:
            with pytest.raises(AuthenticationError) as exc_info:
                await code_service.verify_code(email, attempt)
            errors.append(exc_info.value)

        assert {e.to_response()["error"] for e in errors} == {GENERIC_ERROR_MESSAGE}
        assert {e.status_code for e in errors} == {400}

    async def test_five_attempts_per_fifteen_minutes(self, code_service, clock):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await code_service.verify_code("lead@example.com", "000000")

        with pytest.raises(RateLimitedError):
            await code_service.verify_code("lead@example.com", "000000")

        clock.advance(15 * 60 + 1)
        with pytest.raises(AuthenticationError):
            await code_service.verify_code("lead@example.com", "000000")
