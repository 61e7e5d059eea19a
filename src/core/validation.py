# src/core/validation.py
"""
Server-side input validation.

Predicates (``is_*``) answer yes/no; ``require_*`` helpers raise
ValidationError with a specific code and return the cleaned value.
"""

import html
import re
from typing import Any, Optional

from src.core.config import settings
from src.core.exceptions import ValidationError

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{40,50}$")
PARTICIPANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CODE_PATTERN = re.compile(r"^\d{6}$")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
HTML_SPECIALS = re.compile(r"[<>&\"']")
HTML_TAGS = re.compile(r"<[^>]*>")

MAX_NAME_LENGTH = 50


def is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) > 0


def is_utf8_encodable(value: Any) -> bool:
    """False for strings carrying lone surrogates, which JSON allows but UTF-8 does not"""
    if not isinstance(value, str):
        return False
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def is_valid_session_id(session_id: Any) -> bool:
    """base64url, 40-50 characters (32 random bytes encode to 43)"""
    return isinstance(session_id, str) and bool(SESSION_ID_PATTERN.match(session_id))


def is_valid_participant_id(user_id: Any) -> bool:
    return isinstance(user_id, str) and bool(PARTICIPANT_ID_PATTERN.match(user_id))


def is_valid_user_name(name: Any) -> bool:
    if not isinstance(name, str):
        return False
    trimmed = name.strip()
    if not trimmed or len(trimmed) > MAX_NAME_LENGTH:
        return False
    if not is_utf8_encodable(trimmed):
        return False
    if CONTROL_CHARS.search(trimmed):
        return False
    if HTML_SPECIALS.search(trimmed):
        return False
    return True


def is_password_secure(password: Any, min_length: Optional[int] = None) -> bool:
    min_length = min_length or settings.PASSWORD_MIN_LENGTH
    return isinstance(password, str) and len(password) >= min_length


def is_valid_email(email: Any) -> bool:
    return is_utf8_encodable(email) and bool(EMAIL_PATTERN.match(email))


def is_valid_code(code: Any) -> bool:
    return isinstance(code, str) and bool(CODE_PATTERN.match(code.strip()))


def sanitize_input(value: Any) -> str:
    """Strip tags, escape HTML entities and trim; second line of defense"""
    if not isinstance(value, str):
        return ""
    return html.escape(HTML_TAGS.sub("", value), quote=True).strip()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def require_session_id(session_id: Any) -> str:
    if not is_non_empty_string(session_id):
        raise ValidationError("Session ID is required", field="sessionId", code="MISSING_SESSION_ID")
    if not is_valid_session_id(session_id):
        raise ValidationError("Invalid session ID format", field="sessionId", code="INVALID_SESSION_ID")
    return session_id


def require_participant_id(user_id: Any) -> str:
    if not is_non_empty_string(user_id):
        raise ValidationError("User ID is required", field="userId", code="MISSING_USER_ID")
    if not is_valid_participant_id(user_id):
        raise ValidationError("Invalid user ID format", field="userId", code="INVALID_USER_ID")
    return user_id


def require_user_name(name: Any, field: str, label: str) -> str:
    """
    Validate a display name.

    Args:
        name: Raw input
        field: Request field name (``leaderName``, ``participantName``)
        label: Human label used in messages (``Leader name``)
    """
    code_suffix = "LEADER_NAME" if field == "leaderName" else "PARTICIPANT_NAME"
    if not is_non_empty_string(name):
        raise ValidationError(f"{label} is required", field=field, code=f"MISSING_{code_suffix}")
    if not is_valid_user_name(name):
        raise ValidationError(
            f"{label} must be 1-{MAX_NAME_LENGTH} characters and contain no special characters",
            field=field,
            code=f"INVALID_{code_suffix}"
        )
    return sanitize_input(name)


def require_secure_password(password: Any) -> str:
    if not is_non_empty_string(password):
        raise ValidationError("Password must not be empty", field="password", code="EMPTY_PASSWORD")
    if not is_utf8_encodable(password):
        raise ValidationError(
            "Password contains invalid characters",
            field="password",
            code="INVALID_PASSWORD_FORMAT"
        )
    if not is_password_secure(password):
        raise ValidationError(
            f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters",
            field="password",
            code="WEAK_PASSWORD"
        )
    return password
