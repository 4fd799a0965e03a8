"""Audit module for authentication gate events."""

from __future__ import annotations

from .events import (
    AuthAuditEvent,
    AuthEventType,
    login_blocked_event,
    login_failed_event,
    login_success_event,
    logout_event,
    mfa_event,
    user_created_event,
    user_locked_event,
)
from .memory import InMemoryAuthAuditStore

__all__: list[str] = [
    # Event types and classes
    "AuthEventType",
    "AuthAuditEvent",
    # Event factory functions
    "login_success_event",
    "login_failed_event",
    "login_blocked_event",
    "user_locked_event",
    "mfa_event",
    "logout_event",
    "user_created_event",
    # Store implementations
    "InMemoryAuthAuditStore",
]
