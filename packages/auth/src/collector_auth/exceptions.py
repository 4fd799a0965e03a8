"""Authentication gate exceptions.

Every error carries an :class:`ErrorCategory` so callers can decide whether
an outcome is retryable and whether it counts toward login rate limiting,
plus a ``user_message`` that is safe to show in the UI.
"""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorCategory(str, Enum):
    """Error taxonomy shared by every auth gate operation."""

    VALIDATION = "validation"
    AUTH = "auth"
    NETWORK = "network"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.VALIDATION: "Please check your information and try again.",
    ErrorCategory.AUTH: "Authentication failed. Please check your credentials.",
    ErrorCategory.NETWORK: (
        "Network connection issue. Please check your internet and try again."
    ),
    ErrorCategory.UNKNOWN: "Something went wrong. Please try again.",
}


# ═══════════════════════════════════════════════════════════════
# BASE ERROR
# ═══════════════════════════════════════════════════════════════


class AuthGateError(Exception):
    """Root exception for the authentication gate.

    Attributes:
        category: Taxonomy bucket of the failure.
        user_message: Human-readable message for the UI.
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str = "", *, user_message: str | None = None) -> None:
        super().__init__(message or USER_MESSAGES[self.category])
        self.user_message = user_message or USER_MESSAGES[self.category]


# ═══════════════════════════════════════════════════════════════
# VALIDATION ERRORS
# ═══════════════════════════════════════════════════════════════


class ValidationError(AuthGateError):
    """Raised for caller bugs: missing or malformed factor/challenge ids.

    Not retried automatically.
    """

    category = ErrorCategory.VALIDATION


class PasswordPolicyError(ValidationError):
    """Raised when a new password does not satisfy the password policy."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        message = "Password must contain " + ", ".join(problems) + "."
        super().__init__(message, user_message=message)


# ═══════════════════════════════════════════════════════════════
# AUTHENTICATION ERRORS
# ═══════════════════════════════════════════════════════════════


class AuthenticationError(AuthGateError):
    """Expected, user-retryable authentication failure."""

    category = ErrorCategory.AUTH


class InvalidCredentialsError(AuthenticationError):
    """Raised when the identity provider rejects the credential."""

    def __init__(self, message: str = "Invalid login credentials") -> None:
        super().__init__(message, user_message="Invalid email or password.")


class InvalidMfaCodeError(AuthenticationError):
    """Raised by providers when a verification code is rejected.

    The orchestrator converts this into ``verified=False``; it never reaches
    the UI as an exception.
    """

    def __init__(self, message: str = "Invalid MFA code") -> None:
        super().__init__(
            message,
            user_message="The code you entered is incorrect. Request a new code and try again.",
        )


class AccountLockedError(AuthenticationError):
    """Raised when sign-in is rejected by the client-side lockout.

    Attributes:
        retry_after_seconds: Seconds until the lockout ends.
    """

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message, user_message=message)
        self.retry_after_seconds = retry_after_seconds


# ═══════════════════════════════════════════════════════════════
# PROVIDER ERRORS
# ═══════════════════════════════════════════════════════════════


class ProviderUnavailableError(AuthGateError):
    """Transient identity provider unavailability.

    Retryable and never counted toward lockout.
    """

    category = ErrorCategory.NETWORK


class UnexpectedResponseError(AuthGateError):
    """Identity provider answered with a shape the gate does not understand."""

    category = ErrorCategory.UNKNOWN


# ═══════════════════════════════════════════════════════════════
# CATEGORIZATION
# ═══════════════════════════════════════════════════════════════


_NETWORK_HINTS = ("network", "connection", "timeout", "offline")
_AUTH_HINTS = ("unauthorized", "unauthenticated", "forbidden", "invalid login")


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map any exception onto the auth gate taxonomy.

    Args:
        error: Exception raised by the gate, the provider or the transport.

    Returns:
        The matching category; UNKNOWN when nothing matches.
    """
    if isinstance(error, AuthGateError):
        return error.category
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK

    text = str(error).lower()
    if any(hint in text for hint in _NETWORK_HINTS):
        return ErrorCategory.NETWORK
    if any(hint in text for hint in _AUTH_HINTS):
        return ErrorCategory.AUTH
    return ErrorCategory.UNKNOWN


def as_auth_gate_error(error: BaseException) -> AuthGateError:
    """Wrap a foreign exception in the matching :class:`AuthGateError`.

    Auth gate errors are returned unchanged.
    """
    if isinstance(error, AuthGateError):
        return error
    category = categorize_error(error)
    if category is ErrorCategory.NETWORK:
        return ProviderUnavailableError(str(error))
    if category is ErrorCategory.AUTH:
        return AuthenticationError(str(error))
    return UnexpectedResponseError(str(error) or type(error).__name__)


def user_message_for(error: BaseException) -> str:
    """Return the human-readable message for an exception."""
    if isinstance(error, AuthGateError):
        return error.user_message
    return USER_MESSAGES[categorize_error(error)]


__all__: list[str] = [
    "ErrorCategory",
    "USER_MESSAGES",
    "AuthGateError",
    "ValidationError",
    "PasswordPolicyError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidMfaCodeError",
    "AccountLockedError",
    "ProviderUnavailableError",
    "UnexpectedResponseError",
    "categorize_error",
    "as_auth_gate_error",
    "user_message_for",
]
