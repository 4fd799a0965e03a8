"""Authentication gate ports (protocols).

These protocols describe the external collaborators of the gate: the
remote identity provider, the OS-level secure keystore, the login attempt
store and the audit store. All ports use @runtime_checkable for isinstance
checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .audit.events import AuthAuditEvent, AuthEventType
    from .models import LoginAttemptRecord, MFAChallenge, MFAFactor, SessionCredential


# ═══════════════════════════════════════════════════════════════
# IDENTITY PROVIDER PORT
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FactorEnrollment:
    """Enrollment payload returned by the provider for a new TOTP factor.

    Attributes:
        factor_id: Opaque factor id.
        qr_payload: ``otpauth://`` URI or rendered QR code data.
        shared_secret: Base32 secret for manual entry.
    """

    factor_id: str
    qr_payload: str
    shared_secret: str


@dataclass(frozen=True)
class FactorVerification:
    """Result of a provider-side code verification.

    Attributes:
        verified: Whether the provider accepted the code.
        session: Upgraded session, when the provider issues one.
    """

    verified: bool
    session: SessionCredential | None = None


@runtime_checkable
class IIdentityProvider(Protocol):
    """Protocol for the remote identity provider.

    The provider owns credential verification, session issuance and TOTP
    verification. Implementations raise:

        - InvalidCredentialsError: credential rejected (AUTH).
        - ProviderUnavailableError: transport failure or 5xx (NETWORK).
        - UnexpectedResponseError: unreadable response (UNKNOWN).
    """

    async def sign_in_with_password(
        self, identifier: str, password: str
    ) -> SessionCredential:
        """Check a credential and issue a (possibly provisional) session."""
        ...

    async def sign_up(self, identifier: str, password: str) -> SessionCredential | None:
        """Register a new account.

        Returns:
            A session when the provider signs the user in immediately, None
            when email confirmation is pending.
        """
        ...

    async def sign_out(self, session: SessionCredential | None = None) -> None:
        """Revoke the given (or current) remote session."""
        ...

    def set_session(self, session: SessionCredential | None) -> None:
        """Adopt a previously issued session for subsequent calls."""
        ...

    async def enroll_factor(self) -> FactorEnrollment:
        """Create a new, unverified TOTP factor for the signed-in user."""
        ...

    async def challenge_factor(self, factor_id: str) -> MFAChallenge:
        """Issue a single-use challenge for a factor."""
        ...

    async def verify_factor(
        self, factor_id: str, challenge_id: str, code: str
    ) -> FactorVerification:
        """Verify a code against a challenge.

        A rejected code is reported as ``verified=False`` or by raising
        InvalidMfaCodeError; both mean the same thing.
        """
        ...

    async def list_factors(self) -> list[MFAFactor]:
        """List the TOTP factors of the signed-in user."""
        ...

    async def unenroll_factor(self, factor_id: str) -> None:
        """Remove a factor."""
        ...


# ═══════════════════════════════════════════════════════════════
# SECURE KEYSTORE PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class ISecureKeystore(Protocol):
    """Protocol for encrypted at-rest key-value storage.

    Values are strings; callers serialize structured data themselves.
    """

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def set_many(self, values: dict[str, str]) -> None:
        """Write several keys as one operation.

        Readers never observe a state where only some of the keys are written.
        """
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_many(self, keys: list[str]) -> None:
        """Delete several keys as one operation.

        Readers never observe a state where only some of the keys are gone.
        """
        ...


# ═══════════════════════════════════════════════════════════════
# LOGIN ATTEMPT STORE PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class ILoginAttemptStore(Protocol):
    """Protocol for persisting :class:`LoginAttemptRecord` values."""

    async def load(self, identifier: str) -> LoginAttemptRecord | None:
        """Load the record for a normalized identifier, or None."""
        ...

    async def save(self, record: LoginAttemptRecord) -> None:
        ...

    async def delete(self, identifier: str) -> None:
        ...


# ═══════════════════════════════════════════════════════════════
# AUDIT PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IAuthAuditStore(Protocol):
    """Protocol for authentication audit event storage."""

    async def record(self, event: AuthAuditEvent) -> None:
        ...

    async def get_events(
        self,
        identifier: str,
        *,
        event_types: list[AuthEventType] | None = None,
        limit: int = 100,
    ) -> list[AuthAuditEvent]:
        """Get audit events for an identifier, most recent first."""
        ...


__all__: list[str] = [
    "FactorEnrollment",
    "FactorVerification",
    "IIdentityProvider",
    "ISecureKeystore",
    "ILoginAttemptStore",
    "IAuthAuditStore",
]
