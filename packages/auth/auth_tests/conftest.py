"""Test configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from collector_auth import (
    AuthGateSettings,
    AuthSessionController,
    InMemoryAuthAuditStore,
    InMemoryIdentityProvider,
    InMemoryKeystore,
    InMemoryLoginAttemptStore,
    MFAOrchestrator,
    RateLimiter,
    SecureCredentialStore,
)

PASSWORD = "Collect0r!Pass"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_store() -> InMemoryAuthAuditStore:
    return InMemoryAuthAuditStore()


@pytest.fixture
def keystore() -> InMemoryKeystore:
    return InMemoryKeystore()


@pytest.fixture
def credential_store(keystore: InMemoryKeystore) -> SecureCredentialStore:
    return SecureCredentialStore(keystore)


@pytest.fixture
def rate_limiter(clock: FakeClock, audit_store: InMemoryAuthAuditStore) -> RateLimiter:
    return RateLimiter(InMemoryLoginAttemptStore(), clock=clock, audit_store=audit_store)


@pytest.fixture
def provider() -> InMemoryIdentityProvider:
    """In-memory provider with one registered account."""
    provider = InMemoryIdentityProvider()
    provider.add_user("user@x.com", PASSWORD)
    return provider


@pytest.fixture
def mfa(
    provider: InMemoryIdentityProvider,
    credential_store: SecureCredentialStore,
    clock: FakeClock,
    audit_store: InMemoryAuthAuditStore,
) -> MFAOrchestrator:
    return MFAOrchestrator(provider, credential_store, clock=clock, audit_store=audit_store)


@pytest.fixture
def controller(
    provider: InMemoryIdentityProvider,
    rate_limiter: RateLimiter,
    mfa: MFAOrchestrator,
    credential_store: SecureCredentialStore,
    clock: FakeClock,
    audit_store: InMemoryAuthAuditStore,
) -> AuthSessionController:
    return AuthSessionController(
        provider,
        rate_limiter,
        mfa,
        credential_store,
        AuthGateSettings(),
        clock=clock,
        audit_store=audit_store,
    )


@pytest.fixture
def password() -> str:
    """Password of the account registered in ``provider``."""
    return PASSWORD
