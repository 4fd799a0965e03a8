"""Tests for the login rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from collector_auth import (
    AuthEventType,
    EncryptedFileKeystore,
    InMemoryLoginAttemptStore,
    KeystoreLoginAttemptStore,
    RateLimitConfig,
    RateLimiter,
    RateLimitStatus,
    format_rate_limit_message,
)


class BrokenAuditStore:
    """Audit sink that rejects every event."""

    async def record(self, event):
        raise OSError("audit sink offline")


class BrokenAttemptStore:
    """Attempt store whose backend is unavailable."""

    async def load(self, identifier):
        raise OSError("keystore locked")

    async def save(self, record):
        raise OSError("keystore locked")

    async def delete(self, identifier):
        raise OSError("keystore locked")


async def fail(limiter: RateLimiter, identifier: str, times: int) -> RateLimitStatus:
    status = None
    for _ in range(times):
        status = await limiter.record_login_attempt(identifier, success=False)
    assert status is not None
    return status


class TestLockout:
    """Lockout after consecutive failures."""

    @pytest.mark.asyncio
    async def test_unknown_identifier_is_not_blocked(self, rate_limiter) -> None:
        status = await rate_limiter.check_login_rate_limit("nobody@x.com")

        assert not status.is_blocked
        assert status.attempts_remaining == 5
        assert status.retry_after_seconds == 0

    @pytest.mark.asyncio
    async def test_attempts_remaining_counts_down(self, rate_limiter) -> None:
        await fail(rate_limiter, "user@x.com", 2)

        status = await rate_limiter.check_login_rate_limit("user@x.com")
        assert not status.is_blocked
        assert status.attempts_remaining == 3

    @pytest.mark.asyncio
    async def test_threshold_failures_block(self, rate_limiter) -> None:
        """After exactly five failures the identifier is locked out."""
        await fail(rate_limiter, "user@x.com", 4)
        assert not (await rate_limiter.check_login_rate_limit("user@x.com")).is_blocked

        await rate_limiter.record_login_attempt("user@x.com", success=False)
        status = await rate_limiter.check_login_rate_limit("user@x.com")

        assert status.is_blocked
        assert status.attempts_remaining == 0
        assert status.retry_after_seconds == 30
        assert status.lockout_until is not None

    @pytest.mark.asyncio
    async def test_check_is_read_only(self, rate_limiter) -> None:
        for _ in range(10):
            await rate_limiter.check_login_rate_limit("user@x.com")

        assert await rate_limiter.get_record("user@x.com") is None

    @pytest.mark.asyncio
    async def test_identifiers_are_normalized(self, rate_limiter) -> None:
        await fail(rate_limiter, "  User@X.com ", 5)

        status = await rate_limiter.check_login_rate_limit("user@x.com")
        assert status.is_blocked

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, rate_limiter) -> None:
        await fail(rate_limiter, "user@x.com", 5)

        status = await rate_limiter.check_login_rate_limit("other@x.com")
        assert not status.is_blocked

    @pytest.mark.asyncio
    async def test_failures_during_lockout_do_not_extend_it(
        self, rate_limiter, clock
    ) -> None:
        await fail(rate_limiter, "user@x.com", 5)
        clock.advance(10)

        status = await rate_limiter.record_login_attempt("user@x.com", success=False)

        assert status.is_blocked
        assert status.retry_after_seconds == 20

    @pytest.mark.asyncio
    async def test_lockout_records_audit_event(self, rate_limiter, audit_store) -> None:
        await fail(rate_limiter, "user@x.com", 5)

        events = await audit_store.get_events(
            "user@x.com", event_types=[AuthEventType.USER_LOCKED]
        )
        assert len(events) == 1
        assert events[0].metadata == {"lockout_seconds": 30, "lockout_cycle": 1}


class TestRecovery:
    """Success, lockout expiry and the failure window."""

    @pytest.mark.asyncio
    async def test_lockout_elapses_then_success_resets(self, rate_limiter, clock) -> None:
        """Five failures block; after the lockout a success clears everything."""
        await fail(rate_limiter, "user@x.com", 5)
        assert (await rate_limiter.check_login_rate_limit("user@x.com")).is_blocked

        clock.advance(31)
        assert not (await rate_limiter.check_login_rate_limit("user@x.com")).is_blocked

        await rate_limiter.record_login_attempt("user@x.com", success=True)
        record = await rate_limiter.get_record("user@x.com")
        status = await rate_limiter.check_login_rate_limit("user@x.com")

        assert record.consecutive_failures == 0
        assert record.lockout_until is None
        assert record.lockout_cycles == 0
        assert not status.is_blocked
        assert status.attempts_remaining == 5

    @pytest.mark.asyncio
    async def test_success_clears_active_lockout(self, rate_limiter) -> None:
        await fail(rate_limiter, "user@x.com", 5)

        status = await rate_limiter.record_login_attempt("user@x.com", success=True)

        assert not status.is_blocked
        assert status.attempts_remaining == 5

    @pytest.mark.asyncio
    async def test_failures_outside_window_are_forgotten(self, rate_limiter, clock) -> None:
        await fail(rate_limiter, "user@x.com", 3)
        clock.advance(901)

        assert (await rate_limiter.check_login_rate_limit("user@x.com")).attempts_remaining == 5
        status = await rate_limiter.record_login_attempt("user@x.com", success=False)
        assert status.attempts_remaining == 4

    @pytest.mark.asyncio
    async def test_reset_removes_state(self, rate_limiter) -> None:
        await fail(rate_limiter, "user@x.com", 5)

        await rate_limiter.reset("USER@x.com")

        assert await rate_limiter.get_record("user@x.com") is None
        assert not (await rate_limiter.check_login_rate_limit("user@x.com")).is_blocked


class TestProgressiveBackoff:
    """Lockout durations across cycles."""

    @pytest.mark.asyncio
    async def test_durations_never_shrink(self, rate_limiter, clock) -> None:
        durations = []
        for _ in range(7):
            status = await fail(rate_limiter, "user@x.com", 5)
            assert status.is_blocked
            durations.append(status.retry_after_seconds)
            clock.advance(status.retry_after_seconds + 1)

        assert durations == [30, 60, 300, 900, 3600, 3600, 3600]
        assert all(a <= b for a, b in zip(durations, durations[1:]))

    @pytest.mark.asyncio
    async def test_success_restarts_backoff(self, rate_limiter, clock) -> None:
        await fail(rate_limiter, "user@x.com", 5)
        clock.advance(31)
        await rate_limiter.record_login_attempt("user@x.com", success=True)

        status = await fail(rate_limiter, "user@x.com", 5)

        assert status.retry_after_seconds == 30

    @pytest.mark.asyncio
    async def test_long_quiet_period_restarts_backoff(self, rate_limiter, clock) -> None:
        await fail(rate_limiter, "user@x.com", 5)
        clock.advance(30 + 901)

        status = await fail(rate_limiter, "user@x.com", 5)

        assert status.retry_after_seconds == 30

    def test_backoff_is_capped(self, clock) -> None:
        limiter = RateLimiter(
            config=RateLimitConfig(backoff_schedule=(30, 7200), max_lockout_seconds=3600),
            clock=clock,
        )

        assert limiter.backoff(0) == 30
        assert limiter.backoff(1) == 3600
        assert limiter.backoff(50) == 3600

    @pytest.mark.asyncio
    async def test_custom_threshold(self, clock) -> None:
        limiter = RateLimiter(
            InMemoryLoginAttemptStore(), config=RateLimitConfig(threshold=2), clock=clock
        )

        status = await fail(limiter, "user@x.com", 2)

        assert status.is_blocked


class TestPersistence:
    """Lockouts survive a restart."""

    @pytest.mark.asyncio
    async def test_lockout_survives_new_instance(self, tmp_path, clock) -> None:
        path = tmp_path / "auth.bin"
        key = EncryptedFileKeystore.generate_key()

        first = RateLimiter(
            KeystoreLoginAttemptStore(EncryptedFileKeystore(path, key)), clock=clock
        )
        await fail(first, "user@x.com", 5)

        restarted = RateLimiter(
            KeystoreLoginAttemptStore(EncryptedFileKeystore(path, key)), clock=clock
        )
        clock.advance(5)
        status = await restarted.check_login_rate_limit("user@x.com")

        assert status.is_blocked
        assert status.retry_after_seconds == 25


class TestStorageFailures:
    """The limiter never raises on storage errors."""

    @pytest.mark.asyncio
    async def test_check_fails_open(self, clock) -> None:
        limiter = RateLimiter(BrokenAttemptStore(), clock=clock)

        status = await limiter.check_login_rate_limit("user@x.com")

        assert not status.is_blocked
        assert status.attempts_remaining == 5

    @pytest.mark.asyncio
    async def test_record_returns_status(self, clock) -> None:
        limiter = RateLimiter(BrokenAttemptStore(), clock=clock)

        status = await limiter.record_login_attempt("user@x.com", success=False)

        assert not status.is_blocked

    @pytest.mark.asyncio
    async def test_lockout_persists_when_audit_fails(self, clock) -> None:
        store = InMemoryLoginAttemptStore()
        limiter = RateLimiter(store, clock=clock, audit_store=BrokenAuditStore())

        status = await fail(limiter, "user@x.com", 5)

        assert status.is_blocked
        assert status.retry_after_seconds == 30
        record = await store.load("user@x.com")
        assert record.lockout_until is not None
        assert (await limiter.check_login_rate_limit("user@x.com")).is_blocked


class TestSerialization:
    """Per-identifier ordering of recorded attempts."""

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self, rate_limiter) -> None:
        await asyncio.gather(
            *(rate_limiter.record_login_attempt("user@x.com", success=False) for _ in range(4))
        )

        record = await rate_limiter.get_record("user@x.com")
        assert record.consecutive_failures == 4

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self, rate_limiter) -> None:
        for index in range(20):
            await rate_limiter.record_login_attempt(f"user{index}@x.com", success=False)
        await rate_limiter.reset("user0@x.com")

        assert rate_limiter._locks == {}
        assert not rate_limiter._lock_users


class TestFormatRateLimitMessage:
    """User-facing rate limit messages."""

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [
            (1, "Please try again in 1 second."),
            (30, "Please try again in 30 seconds."),
            (60, "Please try again in 1 minute."),
            (61, "Please try again in 2 minutes."),
            (900, "Please try again in 15 minutes."),
        ],
    )
    def test_blocked_message(self, seconds: int, expected: str) -> None:
        status = RateLimitStatus(
            is_blocked=True, attempts_remaining=0, retry_after_seconds=seconds
        )

        message = format_rate_limit_message(status)

        assert message == f"Too many failed login attempts. {expected}"

    def test_warning_when_few_attempts_remain(self) -> None:
        two = RateLimitStatus(is_blocked=False, attempts_remaining=2)
        one = RateLimitStatus(is_blocked=False, attempts_remaining=1)

        assert format_rate_limit_message(two) == (
            "Warning: 2 login attempts remaining before temporary lockout."
        )
        assert format_rate_limit_message(one) == (
            "Warning: 1 login attempt remaining before temporary lockout."
        )

    def test_no_message_with_attempts_to_spare(self) -> None:
        status = RateLimitStatus(is_blocked=False, attempts_remaining=3)

        assert format_rate_limit_message(status) == ""

    def test_limiter_uses_configured_warning_threshold(self) -> None:
        limiter = RateLimiter(config=RateLimitConfig(warning_threshold=3))
        status = RateLimitStatus(is_blocked=False, attempts_remaining=3)

        assert limiter.format_rate_limit_message(status).startswith("Warning: 3")
