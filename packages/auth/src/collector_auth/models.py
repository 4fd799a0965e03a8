"""Data model of the authentication gate.

Value objects are frozen dataclasses; mutation happens by building a new
instance with :func:`dataclasses.replace`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .exceptions import AuthGateError


def utc_now() -> datetime:
    """Default clock used across the package."""
    return datetime.now(timezone.utc)


def normalize_identifier(identifier: str) -> str:
    """Normalize an account identifier (email) for lookups."""
    return identifier.strip().lower()


_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(identifier: str) -> bool:
    """Loose shape check: one @, no whitespace, a dot in the domain."""
    return _EMAIL_PATTERN.match(identifier) is not None


def _parse_dt(value: Any) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ═══════════════════════════════════════════════════════════════
# RATE LIMITING
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class LoginAttemptRecord:
    """Failed sign-in bookkeeping for one identifier.

    Attributes:
        identifier: Normalized account identifier.
        consecutive_failures: Failures since the last success or window reset.
        lockout_until: Absolute end of the current lockout, if any.
        last_attempt_at: When the last failure was recorded.
        lockout_cycles: Lockouts triggered since the last success.
    """

    identifier: str
    consecutive_failures: int = 0
    lockout_until: datetime | None = None
    last_attempt_at: datetime | None = None
    lockout_cycles: int = 0

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_until is not None and now < self.lockout_until

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "consecutive_failures": self.consecutive_failures,
            "lockout_until": _format_dt(self.lockout_until),
            "last_attempt_at": _format_dt(self.last_attempt_at),
            "lockout_cycles": self.lockout_cycles,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoginAttemptRecord:
        """Build a record from its stored representation.

        Raises:
            KeyError, ValueError, TypeError: If the payload is malformed.
        """
        return cls(
            identifier=data["identifier"],
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            lockout_until=_parse_dt(data.get("lockout_until")),
            last_attempt_at=_parse_dt(data.get("last_attempt_at")),
            lockout_cycles=int(data.get("lockout_cycles", 0)),
        )


@dataclass(frozen=True)
class RateLimitStatus:
    """Result of a rate limit check."""

    is_blocked: bool
    attempts_remaining: int
    retry_after_seconds: int = 0
    lockout_until: datetime | None = None


# ═══════════════════════════════════════════════════════════════
# MFA
# ═══════════════════════════════════════════════════════════════


class FactorStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class MfaState(str, Enum):
    """Per-account MFA protocol state."""

    NOT_ENROLLED = "not_enrolled"
    ENROLLING = "enrolling"
    UNVERIFIED = "unverified"
    CHALLENGING = "challenging"
    VERIFIED = "verified"


@dataclass(frozen=True)
class MFAFactor:
    factor_id: str
    status: FactorStatus = FactorStatus.UNVERIFIED
    enrolled_at: datetime = field(default_factory=utc_now)
    friendly_name: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.status is FactorStatus.VERIFIED


@dataclass(frozen=True)
class MFAChallenge:
    """A single-use challenge issued by the identity provider."""

    challenge_id: str
    factor_id: str
    issued_at: datetime = field(default_factory=utc_now)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True)
class MfaEnrollment:
    """Enrollment payload handed to the UI (QR code + manual key)."""

    qr_payload: str
    shared_secret: str
    factor_id: str


@dataclass(frozen=True)
class MfaChallengeResult:
    challenge_id: str


@dataclass(frozen=True)
class MfaVerification:
    verified: bool


# ═══════════════════════════════════════════════════════════════
# SESSIONS
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SessionCredential:
    """Opaque session issued by the identity provider.

    Attributes:
        access_token: Bearer token for provider calls.
        user_id: Provider user id.
        refresh_token: Token used to renew the session.
        expires_at: Absolute access token expiry.
        email: Account email, when the provider reports it.
    """

    access_token: str
    user_id: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    email: str | None = None

    def __repr__(self) -> str:
        return f"SessionCredential(user_id={self.user_id!r}, email={self.email!r})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "user_id": self.user_id,
            "refresh_token": self.refresh_token,
            "expires_at": _format_dt(self.expires_at),
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionCredential:
        return cls(
            access_token=data["access_token"],
            user_id=data["user_id"],
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_dt(data.get("expires_at")),
            email=data.get("email"),
        )


@dataclass(frozen=True)
class PendingSession:
    """Credential-verified sign-in waiting for its second factor.

    Lives only in memory between credential success and MFA completion or
    cancellation.
    """

    identifier: str
    factor_id: str
    credential: SessionCredential
    created_at: datetime = field(default_factory=utc_now)


class AuthState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    MFA_PENDING = "mfa_pending"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthStateChange:
    """Notification delivered to controller subscribers."""

    previous: AuthState
    current: AuthState
    identifier: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


class SignInOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"
    FAILED = "failed"


@dataclass(frozen=True)
class SignInResult:
    """Structured outcome of :meth:`AuthSessionController.sign_in`.

    Attributes:
        outcome: Which of the three sign-in outcomes occurred.
        factor_id: Factor awaiting verification when MFA is required.
        session: Finalized session when authenticated.
        error: Structured error when the sign-in failed.
        message: Human-readable message for the UI (may be empty).
        rate_limit: Rate limit status observed during the attempt.
    """

    outcome: SignInOutcome
    factor_id: str | None = None
    session: SessionCredential | None = None
    error: AuthGateError | None = None
    message: str = ""
    rate_limit: RateLimitStatus | None = None

    @property
    def mfa_required(self) -> bool:
        return self.outcome is SignInOutcome.MFA_REQUIRED

    @property
    def succeeded(self) -> bool:
        return self.outcome is SignInOutcome.AUTHENTICATED


__all__: list[str] = [
    "utc_now",
    "is_valid_email",
    "normalize_identifier",
    "LoginAttemptRecord",
    "RateLimitStatus",
    "FactorStatus",
    "MfaState",
    "MFAFactor",
    "MFAChallenge",
    "MfaEnrollment",
    "MfaChallengeResult",
    "MfaVerification",
    "SessionCredential",
    "PendingSession",
    "AuthState",
    "AuthStateChange",
    "SignInOutcome",
    "SignInResult",
]
