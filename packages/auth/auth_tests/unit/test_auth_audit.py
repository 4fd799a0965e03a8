"""Tests for auth audit events and InMemoryAuthAuditStore."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from collector_auth.audit import (
    AuthAuditEvent,
    AuthEventType,
    InMemoryAuthAuditStore,
    login_blocked_event,
    login_failed_event,
    login_success_event,
    logout_event,
    mfa_event,
    user_created_event,
)


@pytest.fixture
def store() -> InMemoryAuthAuditStore:
    return InMemoryAuthAuditStore()


class TestAuthAuditEvent:
    def test_failed_event_defaults_error_code(self) -> None:
        event = AuthAuditEvent(event_type=AuthEventType.LOGIN_FAILED, success=False)
        assert event.error_code == "unknown"

    def test_to_dict(self) -> None:
        event = login_failed_event("u@x.com", error_code="auth", error_message="bad")

        data = event.to_dict()

        assert data["event_type"] == "auth.login.failed"
        assert data["identifier"] == "u@x.com"
        assert data["success"] is False
        assert data["error_code"] == "auth"
        assert data["timestamp"].endswith("+00:00")

    def test_factories(self) -> None:
        assert login_success_event("u@x.com", "u-1", mfa=True).metadata == {"mfa": True}
        blocked = login_blocked_event("u@x.com", 30)
        assert blocked.error_code == "rate_limited"
        assert blocked.metadata == {"retry_after_seconds": 30}
        assert mfa_event(AuthEventType.MFA_VERIFIED, "f-1").metadata == {
            "factor_id": "f-1",
            "method": "totp",
        }
        assert user_created_event("u@x.com", None).metadata == {"confirmation_pending": True}
        assert logout_event(None, None).identifier is None


class TestInMemoryAuthAuditStore:
    @pytest.mark.asyncio
    async def test_record_and_count(self, store: InMemoryAuthAuditStore) -> None:
        await store.record(login_success_event("a@x.com", "u-1"))
        await store.record(logout_event(None, None))

        assert store.count() == 2
        assert store.count_by_type(AuthEventType.LOGOUT) == 1

    @pytest.mark.asyncio
    async def test_get_events_most_recent_first(self, store: InMemoryAuthAuditStore) -> None:
        await store.record(login_failed_event("a@x.com", error_code="auth"))
        await store.record(login_success_event("a@x.com", "u-1"))
        await store.record(login_success_event("b@x.com", "u-2"))

        events = await store.get_events("a@x.com")

        assert [e.event_type for e in events] == [
            AuthEventType.LOGIN_SUCCESS,
            AuthEventType.LOGIN_FAILED,
        ]

    @pytest.mark.asyncio
    async def test_get_events_filters_and_limits(self, store: InMemoryAuthAuditStore) -> None:
        for _ in range(3):
            await store.record(login_failed_event("a@x.com", error_code="auth"))
        await store.record(login_success_event("a@x.com", "u-1"))

        failed = await store.get_events(
            "a@x.com", event_types=[AuthEventType.LOGIN_FAILED], limit=2
        )

        assert len(failed) == 2
        assert all(e.event_type is AuthEventType.LOGIN_FAILED for e in failed)

    @pytest.mark.asyncio
    async def test_clear(self, store: InMemoryAuthAuditStore) -> None:
        await store.record(login_success_event("a@x.com", "u-1"))

        store.clear()

        assert store.count() == 0
        assert await store.get_events("a@x.com") == []


class TestRetentionAndFailures:
    @pytest.mark.asyncio
    async def test_oldest_events_are_dropped(self) -> None:
        store = InMemoryAuthAuditStore(max_events=2)
        for _ in range(3):
            await store.record(login_failed_event("a@x.com", error_code="auth"))

        assert store.count() == 2
        assert store.count_by_type(AuthEventType.LOGIN_FAILED) == 3

    @pytest.mark.asyncio
    async def test_get_failures_since(self, store: InMemoryAuthAuditStore) -> None:
        start = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

        def at(event: AuthAuditEvent, minutes: int) -> AuthAuditEvent:
            return replace(event, timestamp=start + timedelta(minutes=minutes))

        await store.record(at(login_failed_event("a@x.com", error_code="auth"), 0))
        await store.record(at(login_success_event("a@x.com", "u-1"), 10))
        await store.record(at(login_blocked_event("b@x.com", 30), 20))
        await store.record(at(login_failed_event("a@x.com", error_code="auth"), 30))

        recent = await store.get_failures(since=start + timedelta(minutes=5))
        mine = await store.get_failures("a@x.com", since=start)

        assert [e.event_type for e in recent] == [
            AuthEventType.LOGIN_FAILED,
            AuthEventType.LOGIN_BLOCKED,
        ]
        assert len(mine) == 2
        assert all(e.identifier == "a@x.com" for e in mine)
