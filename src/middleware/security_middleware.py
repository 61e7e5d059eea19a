"""
Security middleware for the session API
Handles security headers, timing and rate limit monitoring
"""

from fastapi import Request, Response
import time
import logging
from collections import OrderedDict
from typing import Callable, Tuple

logger = logging.getLogger(__name__)


class SecurityMiddleware:
    """Adds security headers and flags slow requests"""

    def __init__(self, slow_request_seconds: float = 1.0):
        self.slow_request_seconds = slow_request_seconds

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(self), camera=()"
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        if "server" in response.headers:
            del response.headers["server"]

        if process_time > self.slow_request_seconds:
            logger.warning(f"⏱️ Slow request: {request.url.path} took {process_time:.2f}s")

        return response


class RateLimitMonitor:
    """
    Monitor and log rate limit violations.

    Counts are kept per identifier for ``retention_seconds`` after the last
    violation, and at most ``max_tracked`` identifiers are remembered; the
    least recently seen are dropped first.
    """

    def __init__(
        self,
        violation_threshold: int = 10,
        retention_seconds: float = 3600,
        max_tracked: int = 10_000,
        clock: Callable[[], float] = time.monotonic
    ):
        # identifier -> (violation count, last seen), oldest first
        self.violations: "OrderedDict[str, Tuple[int, float]]" = OrderedDict()
        self.violation_threshold = violation_threshold
        self.retention_seconds = retention_seconds
        self.max_tracked = max_tracked
        self._clock = clock

    def _prune(self, now: float) -> None:
        while self.violations:
            identifier, (_, last_seen) = next(iter(self.violations.items()))
            if now - last_seen < self.retention_seconds and len(self.violations) <= self.max_tracked:
                break
            del self.violations[identifier]

    def record_violation(self, identifier: str, action: str = "global") -> bool:
        """
        Record a rate limit violation.

        Returns:
            True once the identifier crosses the violation threshold
        """
        now = self._clock()
        self._prune(now)

        count = self.violations.pop(identifier, (0, now))[0] + 1
        self.violations[identifier] = (count, now)
        if len(self.violations) > self.max_tracked:
            self.violations.popitem(last=False)

        logger.warning(f"🚦 Rate limit violation #{count} ({action}) from {identifier}")

        if count >= self.violation_threshold:
            logger.error(f"🚫 {identifier} exceeded violation threshold")
            return True
        return False

    def get_violation_stats(self) -> dict:
        """Aggregate counts only; identifiers stay in the logs"""
        self._prune(self._clock())
        return {
            "totalViolators": len(self.violations),
            "totalViolations": sum(count for count, _ in self.violations.values()),
        }
