# src/core/exceptions.py
"""
Core exceptions - standardized error handling for the session service.

Every exception carries a stable machine-readable ``code`` and the HTTP
``status_code`` it maps to. ``public_message`` is what may be shown to a
caller; ``message`` and ``details`` are for logs only.
"""

from typing import Optional, Dict, Any


class StandupError(Exception):
    """Base exception for all service errors"""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
        public_message: Optional[str] = None
    ):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details (never sent to clients)
            code: Optional override of the class-level error code
            public_message: Optional client-facing message (defaults to message)
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        self.public_message = public_message or message

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_response(self) -> Dict[str, Any]:
        """Client-facing error body"""
        return {"error": self.public_message, "code": self.code}


class ValidationError(StandupError):
    """Malformed or out-of-range input. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize validation error.

        Args:
            message: Error description
            field: Field that failed validation
            code: Specific error code (e.g. ``INVALID_LEADER_NAME``)
            details: Additional validation context
        """
        super().__init__(message, details, code=code)
        self.field = field

        if field:
            self.details['field'] = field


class SessionFullError(ValidationError):
    """Session reached its participant limit"""

    code = "SESSION_FULL"
    status_code = 403


class AuthenticationError(StandupError):
    """
    Bad password, invalid or expired token, unknown verification code.

    The public message never reveals which part of the credential failed.
    """

    code = "AUTHENTICATION_FAILED"
    status_code = 401

    def __init__(
        self,
        message: str = "Authentication failed",
        reason: Optional[str] = None,
        code: Optional[str] = None,
        public_message: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        """
        Initialize authentication error.

        Args:
            message: Client-safe error description
            reason: Internal failure reason, kept for logging only
            code: Specific error code
            public_message: Override for the client-facing message
            status_code: Override of the HTTP status (verify-email uses 400)
        """
        super().__init__(message, code=code, public_message=public_message)
        self.reason = reason
        if status_code:
            self.status_code = status_code

        if reason:
            self.details['reason'] = reason


class RateLimitedError(StandupError):
    """Request volume exceeded. Retry permitted after ``reset_at``."""

    code = "RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        remaining: int = 0,
        reset_at: Optional[float] = None
    ):
        """
        Initialize rate limit error.

        Args:
            message: Client-facing message
            action: Rate-limited action class
            remaining: Remaining requests in the current window
            reset_at: Epoch seconds when the window resets
        """
        super().__init__(message)
        self.action = action
        self.remaining = remaining
        self.reset_at = reset_at

        if action:
            self.details['action'] = action

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["remaining"] = self.remaining
        body["resetAt"] = int(self.reset_at * 1000) if self.reset_at else 0
        return body


class NotFoundError(StandupError):
    """Session or code absent or expired - indistinguishable from never existed"""

    code = "SESSION_NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        message: str = "Session not found or expired",
        session_id: Optional[str] = None,
        code: Optional[str] = None
    ):
        super().__init__(message, code=code)
        self.session_id = session_id

        if session_id:
            self.details['session_id'] = session_id[:8]


class StorageError(StandupError):
    """
    Backing persistence unreachable or write failed. Safe to retry with backoff.

    The client only ever sees the generic public message.
    """

    code = "STORAGE_ERROR"
    status_code = 503
    retryable = True

    GENERIC_MESSAGE = "Service temporarily unavailable. Please try again."

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize storage error.

        Args:
            message: Internal error description
            key: Storage key that failed
            operation: Storage operation that failed
            details: Additional storage context
        """
        super().__init__(message, details, public_message=self.GENERIC_MESSAGE)
        self.key = key
        self.operation = operation

        if key:
            self.details['key'] = key
        if operation:
            self.details['operation'] = operation


class StorageTimeoutError(StorageError):
    """Backing persistence did not answer within the configured timeout"""

    code = "STORAGE_TIMEOUT"


class StorageConflictError(StorageError):
    """Concurrent writers kept winning the compare-and-set race"""

    code = "STORAGE_CONFLICT"


class ConfigurationError(StandupError):
    """Errors in system configuration and initialization"""

    code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details, public_message="Internal server error")
        self.component = component

        if component:
            self.details['component'] = component


class ServiceError(StandupError):
    """Errors in external service interactions"""

    code = "SERVICE_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error.

        Args:
            message: Error description
            service_name: Name of the failing service
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details, public_message="Upstream service error. Please try again.")
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation
