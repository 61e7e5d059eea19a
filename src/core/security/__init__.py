"""
Credential handling for standup sessions.

Centralizes all security-related functionality:
- Password hashing and verification
- Signed email tokens
- Email verification codes
- Email encryption at rest

This module is a layer beneath the session operations; it never touches
session records itself.
"""

from .passwords import (
    hash_password,
    hash_password_async,
    verify_password,
    verify_password_async
)
from .tokens import EmailTokenService, peek_email
from .email_crypto import EmailCipher
from .verification_codes import (
    EmailSender,
    LoggingEmailSender,
    VerificationCodeService
)

__all__ = [
    'hash_password',
    'hash_password_async',
    'verify_password',
    'verify_password_async',
    'EmailTokenService',
    'peek_email',
    'EmailCipher',
    'EmailSender',
    'LoggingEmailSender',
    'VerificationCodeService'
]
