# tests/conftest.py
"""
Shared fixtures for the session service tests.

Everything runs against in-memory backends and a controllable clock, so no
Redis instance is needed.
"""

import os

TEST_SECRET = "test-session-secret-not-for-production"

# Must be set before src.core.config builds its settings singleton
os.environ["SESSION_SECRET"] = TEST_SECRET
for _var in ("REDIS_URL", "REDIS_TLS_URL", "UPSTASH_REDIS_URL", "REDIS_DIRECT_URI"):
    os.environ.pop(_var, None)

import pytest
from typing import List, Tuple

from src.core.rate_limiter import RateLimiter, InMemoryRateLimitBackend
from src.core.security import EmailCipher, EmailSender, EmailTokenService, VerificationCodeService
from src.services.session_service import StandupSessionService
from src.services.session_store import SessionStore, InMemorySessionBackend


class FakeClock:
    """Callable clock returning epoch seconds; advance it by hand"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmailSender(EmailSender):
    """Keeps every code it was asked to send"""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    async def send_verification_code(self, email, code):
        self.sent.append((email, code))

    def last_code_for(self, email: str) -> str:
        return [code for to, code in self.sent if to == email][-1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_backend(clock):
    return InMemorySessionBackend(clock)


@pytest.fixture
def session_store(session_backend, clock):
    return SessionStore(
        backend=session_backend,
        ttl_seconds=4 * 60 * 60,
        ttl_policy="fixed",
        clock=clock
    )


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(backend=InMemoryRateLimitBackend(), clock=clock, sweep_interval=300)


@pytest.fixture
def token_service(clock):
    return EmailTokenService(secret=TEST_SECRET, ttl_days=30, clock=clock)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def code_service(session_backend, rate_limiter, token_service, email_sender, clock):
    return VerificationCodeService(
        backend=session_backend,
        rate_limiter=rate_limiter,
        token_service=token_service,
        email_sender=email_sender,
        secret=TEST_SECRET,
        ttl_seconds=300,
        clock=clock
    )


@pytest.fixture
def email_cipher():
    return EmailCipher(secret=TEST_SECRET)


@pytest.fixture
def session_service(session_store, rate_limiter, token_service, code_service, email_cipher):
    return StandupSessionService(
        store=session_store,
        rate_limiter=rate_limiter,
        token_service=token_service,
        code_service=code_service,
        email_cipher=email_cipher,
        max_participants=20
    )
