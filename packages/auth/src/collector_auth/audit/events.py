"""Audit events for authentication gate operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AuthEventType(Enum):
    """Types of authentication audit events.

    Event naming follows the pattern: `auth.<resource>.<action>`
    """

    # Login events
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILED = "auth.login.failed"
    LOGIN_BLOCKED = "auth.login.blocked"
    LOGOUT = "auth.logout"

    # MFA events
    MFA_ENROLLED = "auth.mfa.enrolled"
    MFA_VERIFIED = "auth.mfa.verified"
    MFA_FAILED = "auth.mfa.failed"
    MFA_CANCELLED = "auth.mfa.cancelled"
    MFA_DISABLED = "auth.mfa.disabled"

    # Account events
    USER_CREATED = "auth.user.created"
    USER_LOCKED = "auth.user.locked"


@dataclass(frozen=True)
class AuthAuditEvent:
    """Authentication audit event.

    Attributes:
        event_type: The type of authentication event.
        identifier: Normalized account identifier (email), if known.
        user_id: Provider user id, if known.
        timestamp: When the event occurred (UTC).
        success: Whether the operation was successful.
        error_code: Error category if the operation failed.
        error_message: Human-readable message if failed.
        metadata: Additional event-specific data.
    """

    event_type: AuthEventType
    identifier: str | None = None
    user_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = True
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.success and not self.error_code:
            object.__setattr__(self, "error_code", "unknown")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "identifier": self.identifier,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


# ═══════════════════════════════════════════════════════════════
# EVENT FACTORY FUNCTIONS
# ═══════════════════════════════════════════════════════════════


def login_success_event(
    identifier: str, user_id: str, *, mfa: bool = False
) -> AuthAuditEvent:
    """Create a successful login event."""
    return AuthAuditEvent(
        event_type=AuthEventType.LOGIN_SUCCESS,
        identifier=identifier,
        user_id=user_id,
        metadata={"mfa": mfa},
    )


def login_failed_event(
    identifier: str,
    *,
    error_code: str,
    error_message: str | None = None,
) -> AuthAuditEvent:
    """Create a failed login event."""
    return AuthAuditEvent(
        event_type=AuthEventType.LOGIN_FAILED,
        identifier=identifier,
        success=False,
        error_code=error_code,
        error_message=error_message,
    )


def login_blocked_event(identifier: str, retry_after_seconds: int) -> AuthAuditEvent:
    return AuthAuditEvent(
        event_type=AuthEventType.LOGIN_BLOCKED,
        identifier=identifier,
        success=False,
        error_code="rate_limited",
        metadata={"retry_after_seconds": retry_after_seconds},
    )


def user_locked_event(
    identifier: str, lockout_seconds: int, lockout_cycle: int
) -> AuthAuditEvent:
    return AuthAuditEvent(
        event_type=AuthEventType.USER_LOCKED,
        identifier=identifier,
        metadata={"lockout_seconds": lockout_seconds, "lockout_cycle": lockout_cycle},
    )


def mfa_event(
    event_type: AuthEventType,
    factor_id: str | None,
    *,
    identifier: str | None = None,
    success: bool = True,
    error_code: str | None = None,
) -> AuthAuditEvent:
    """Create an MFA lifecycle event (enrolled, verified, failed, ...)."""
    return AuthAuditEvent(
        event_type=event_type,
        identifier=identifier,
        success=success,
        error_code=error_code,
        metadata={"factor_id": factor_id, "method": "totp"},
    )


def user_created_event(identifier: str, user_id: str | None) -> AuthAuditEvent:
    return AuthAuditEvent(
        event_type=AuthEventType.USER_CREATED,
        identifier=identifier,
        user_id=user_id,
        metadata={"confirmation_pending": user_id is None},
    )


def logout_event(identifier: str | None, user_id: str | None) -> AuthAuditEvent:
    return AuthAuditEvent(
        event_type=AuthEventType.LOGOUT,
        identifier=identifier,
        user_id=user_id,
    )


__all__: list[str] = [
    "AuthEventType",
    "AuthAuditEvent",
    "login_success_event",
    "login_failed_event",
    "login_blocked_event",
    "user_locked_event",
    "mfa_event",
    "logout_event",
    "user_created_event",
]
