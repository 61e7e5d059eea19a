"""
Rate limiting configuration for the session API
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict

from fastapi import Request
from slowapi.util import get_remote_address


def get_real_ip(request: Request) -> str:
    """
    Get the real IP address, considering proxy headers.
    Important for deployments behind load balancers.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip

    return get_remote_address(request)


class ActionClass(str, Enum):
    """Action classes with independent quotas"""
    SESSION_CREATE = "session_create"
    SESSION_JOIN = "session_join"
    EMAIL_CODE_SEND = "email_code_send"
    EMAIL_CODE_VERIFY = "email_code_verify"
    SESSION_UPDATE = "session_update"


@dataclass(frozen=True)
class RateLimitRule:
    """``max_requests`` allowed per ``window_seconds``"""
    max_requests: int
    window_seconds: int


ACTION_LIMITS: Dict[ActionClass, RateLimitRule] = {
    ActionClass.SESSION_CREATE: RateLimitRule(max_requests=5, window_seconds=60 * 60),
    ActionClass.SESSION_JOIN: RateLimitRule(max_requests=10, window_seconds=60 * 60),
    ActionClass.EMAIL_CODE_SEND: RateLimitRule(max_requests=10, window_seconds=60 * 60),
    ActionClass.EMAIL_CODE_VERIFY: RateLimitRule(max_requests=5, window_seconds=15 * 60),
    ActionClass.SESSION_UPDATE: RateLimitRule(max_requests=120, window_seconds=60 * 60),
}

# Custom error messages
RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    ActionClass.SESSION_CREATE: "Too many session creations. Please wait before trying again.",
    ActionClass.SESSION_JOIN: "Too many join attempts. Please wait before trying again.",
    ActionClass.EMAIL_CODE_SEND: "Too many verification code requests. Please try again later.",
    ActionClass.EMAIL_CODE_VERIFY: "Too many failed attempts. Please try again later.",
    ActionClass.SESSION_UPDATE: "Too many session updates. Please wait before trying again.",
}


def get_rate_limit_message(action) -> str:
    """Get custom error message for a rate limited action"""
    return RATE_LIMIT_MESSAGES.get(action, RATE_LIMIT_MESSAGES["default"])
