"""
Error taxonomy shared by the phone auth client and the backend.

- AuthErrorCode: closed set of provider-reported failures, with lookup
  tables for parsing provider messages and for user-facing text
- AuthProviderError: raised by identity clients when the provider rejects a call
- ApiError: raised by backend routes, rendered as {success: false, error}
"""

from enum import Enum
from typing import Optional


class AuthErrorCode(str, Enum):
    INVALID_PHONE_NUMBER = "invalid-phone-number"
    INVALID_VERIFICATION_CODE = "invalid-verification-code"
    CODE_EXPIRED = "code-expired"
    TOO_MANY_REQUESTS = "too-many-requests"
    INVALID_SESSION = "invalid-session"
    CAPTCHA_CHECK_FAILED = "captcha-check-failed"
    QUOTA_EXCEEDED = "quota-exceeded"
    TOKEN_EXPIRED = "token-expired"
    USER_DISABLED = "user-disabled"
    UNKNOWN = "unknown"


# Identity Toolkit / Secure Token error messages
PROVIDER_MESSAGE_CODES = {
    "INVALID_PHONE_NUMBER": AuthErrorCode.INVALID_PHONE_NUMBER,
    "MISSING_PHONE_NUMBER": AuthErrorCode.INVALID_PHONE_NUMBER,
    "INVALID_CODE": AuthErrorCode.INVALID_VERIFICATION_CODE,
    "MISSING_CODE": AuthErrorCode.INVALID_VERIFICATION_CODE,
    "SESSION_EXPIRED": AuthErrorCode.CODE_EXPIRED,
    "CODE_EXPIRED": AuthErrorCode.CODE_EXPIRED,
    "TOO_MANY_ATTEMPTS_TRY_LATER": AuthErrorCode.TOO_MANY_REQUESTS,
    "INVALID_SESSION_INFO": AuthErrorCode.INVALID_SESSION,
    "MISSING_SESSION_INFO": AuthErrorCode.INVALID_SESSION,
    "CAPTCHA_CHECK_FAILED": AuthErrorCode.CAPTCHA_CHECK_FAILED,
    "INVALID_RECAPTCHA_TOKEN": AuthErrorCode.CAPTCHA_CHECK_FAILED,
    "MISSING_RECAPTCHA_TOKEN": AuthErrorCode.CAPTCHA_CHECK_FAILED,
    "QUOTA_EXCEEDED": AuthErrorCode.QUOTA_EXCEEDED,
    "TOKEN_EXPIRED": AuthErrorCode.TOKEN_EXPIRED,
    "INVALID_REFRESH_TOKEN": AuthErrorCode.TOKEN_EXPIRED,
    "USER_DISABLED": AuthErrorCode.USER_DISABLED,
}

AUTH_ERROR_MESSAGES = {
    AuthErrorCode.INVALID_PHONE_NUMBER: "Invalid phone number format",
    AuthErrorCode.INVALID_VERIFICATION_CODE: "Invalid verification code",
    AuthErrorCode.CODE_EXPIRED: "Code expired. Request a new one",
    AuthErrorCode.TOO_MANY_REQUESTS: "Too many attempts. Wait before trying again",
}

# Failures that invalidate the challenge handle itself
CHALLENGE_ENDING_CODES = frozenset({
    AuthErrorCode.CODE_EXPIRED,
    AuthErrorCode.INVALID_SESSION,
})


def from_provider_message(message: Optional[str]) -> AuthErrorCode:
    """
    Map a provider error message to an AuthErrorCode.

    Messages look like "INVALID_CODE" or "TOO_MANY_ATTEMPTS_TRY_LATER : ...";
    only the leading token is significant.
    """
    if not message:
        return AuthErrorCode.UNKNOWN
    key = message.split(":", 1)[0].strip().upper()
    return PROVIDER_MESSAGE_CODES.get(key, AuthErrorCode.UNKNOWN)


class AuthProviderError(Exception):
    """The identity provider rejected a call."""

    def __init__(self, code: AuthErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def describe_auth_error(error: AuthProviderError) -> str:
    """Human-readable text for a provider error, echoing unmapped messages."""
    default = "An error occurred: " + error.message
    return AUTH_ERROR_MESSAGES.get(error.code, default)


class ApiError(Exception):
    """
    Backend failure with an HTTP status.

    Rendered by the exception handler in main.py as an ErrorResponse body.
    """

    def __init__(
        self,
        status_code: int,
        error: str,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.code = code
        self.details = details
