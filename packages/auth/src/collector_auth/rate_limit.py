"""Client-side adaptive login rate limiting.

Tracks consecutive failed sign-ins per normalized identifier and locks the
identifier out with progressive backoff once the threshold is reached.
Lockouts are stored as absolute end timestamps so they survive restarts.

This limiter is advisory: the authoritative limiter lives server-side. Its
local guarantee is that after ``threshold`` consecutive failures inside the
failure window the identifier is locked out for a duration that never
shrinks between successive lockout cycles.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta

from .audit import user_locked_event
from .config import RateLimitConfig
from .models import LoginAttemptRecord, RateLimitStatus, normalize_identifier, utc_now
from .observability import AuthMetrics
from .ports import IAuthAuditStore, ILoginAttemptStore
from .storage import InMemoryLoginAttemptStore

logger = logging.getLogger(__name__)


def format_rate_limit_message(status: RateLimitStatus, *, warning_threshold: int = 2) -> str:
    """Format a user-facing message for a rate limit status.

    Args:
        status: Result of a rate limit check.
        warning_threshold: Remaining attempts at or below which to warn.

    Returns:
        The lockout message, a low-attempts warning, or an empty string.
    """
    if status.is_blocked:
        seconds = max(status.retry_after_seconds, 1)
        if seconds < 60:
            unit, amount = "second", seconds
        else:
            unit, amount = "minute", math.ceil(seconds / 60)
        plural = "" if amount == 1 else "s"
        return (
            "Too many failed login attempts. "
            f"Please try again in {amount} {unit}{plural}."
        )
    if status.attempts_remaining <= warning_threshold:
        remaining = status.attempts_remaining
        plural = "" if remaining == 1 else "s"
        return (
            f"Warning: {remaining} login attempt{plural} remaining "
            "before temporary lockout."
        )
    return ""


class RateLimiter:
    """Per-identifier login rate limiter with progressive backoff.

    ``record_login_attempt`` calls for the same identifier are applied in
    the order they are issued. Concurrent ``sign_in`` calls for one
    identifier are expected to be serialized by the caller.

    Example:
        ```python
        limiter = RateLimiter(KeystoreLoginAttemptStore(keystore))

        status = await limiter.check_login_rate_limit("user@x.com")
        if status.is_blocked:
            print(limiter.format_rate_limit_message(status))

        await limiter.record_login_attempt("user@x.com", success=False)
        ```
    """

    def __init__(
        self,
        store: ILoginAttemptStore | None = None,
        *,
        config: RateLimitConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            store: Persistence for attempt records (in-memory if omitted).
            config: Threshold and backoff configuration.
            clock: Source of the current UTC time.
            audit_store: Receives USER_LOCKED events (optional).
        """
        self.store = store or InMemoryLoginAttemptStore()
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._audit_store = audit_store
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @property
    def threshold(self) -> int:
        return self.config.threshold

    def backoff(self, cycle: int) -> int:
        """Lockout duration in seconds for a zero-based lockout cycle."""
        schedule = self.config.backoff_schedule
        step = schedule[min(max(cycle, 0), len(schedule) - 1)]
        return min(step, self.config.max_lockout_seconds)

    @asynccontextmanager
    async def _serialized(self, identifier: str) -> AsyncIterator[None]:
        """Hold the identifier's lock; the lock is dropped once nobody uses it."""
        lock = self._locks.setdefault(identifier, asyncio.Lock())
        self._lock_users[identifier] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[identifier] -= 1
            if not self._lock_users[identifier]:
                del self._lock_users[identifier]
                del self._locks[identifier]

    def _quiet_since(self, record: LoginAttemptRecord, now: datetime) -> bool:
        """True when nothing happened for this identifier within the window."""
        last_activity = record.last_attempt_at
        if record.lockout_until is not None and (
            last_activity is None or record.lockout_until > last_activity
        ):
            last_activity = record.lockout_until
        if last_activity is None:
            return False
        window = timedelta(seconds=self.config.failure_window_seconds)
        return now - last_activity > window

    def _status(self, record: LoginAttemptRecord | None, now: datetime) -> RateLimitStatus:
        if record is None:
            return RateLimitStatus(is_blocked=False, attempts_remaining=self.threshold)

        if record.is_locked(now):
            assert record.lockout_until is not None
            remaining = (record.lockout_until - now).total_seconds()
            return RateLimitStatus(
                is_blocked=True,
                attempts_remaining=0,
                retry_after_seconds=max(math.ceil(remaining), 1),
                lockout_until=record.lockout_until,
            )

        if record.lockout_until is not None or self._quiet_since(record, now):
            # Elapsed lockout or lapsed window: the next failure starts a new count.
            return RateLimitStatus(is_blocked=False, attempts_remaining=self.threshold)

        return RateLimitStatus(
            is_blocked=False,
            attempts_remaining=max(self.threshold - record.consecutive_failures, 0),
        )

    async def _load(self, identifier: str) -> LoginAttemptRecord | None:
        return await self.store.load(identifier)

    async def check_login_rate_limit(self, identifier: str) -> RateLimitStatus:
        """Check whether an identifier may attempt to sign in.

        Pure read: nothing is written.

        Args:
            identifier: Account identifier (normalized internally).

        Returns:
            RateLimitStatus. Storage failures are logged and reported as
            not blocked.
        """
        key = normalize_identifier(identifier)
        now = self._clock()
        try:
            record = await self._load(key)
        except Exception:
            logger.exception("Rate limit lookup failed for %s", key)
            return RateLimitStatus(is_blocked=False, attempts_remaining=self.threshold)
        return self._status(record, now)

    async def record_login_attempt(self, identifier: str, success: bool) -> RateLimitStatus:
        """Record the outcome of a sign-in attempt.

        Success clears failures, lockout and backoff cycles. Failure
        increments the counter and starts a lockout on reaching the
        threshold; failures recorded during an active lockout do not
        extend it.

        Args:
            identifier: Account identifier (normalized internally).
            success: Whether the attempt succeeded.

        Returns:
            The status after recording.
        """
        key = normalize_identifier(identifier)
        async with self._serialized(key):
            now = self._clock()
            locked_for: int | None = None
            try:
                if success:
                    record = LoginAttemptRecord(identifier=key, last_attempt_at=now)
                else:
                    record, locked_for = await self._apply_failure(key, now)
                await self.store.save(record)
            except Exception:
                logger.exception("Failed to record login attempt for %s", key)
                return RateLimitStatus(is_blocked=False, attempts_remaining=self.threshold)

            if locked_for is not None:
                await self._report_lockout(key, locked_for, record.lockout_cycles)
        return self._status(record, now)

    async def _report_lockout(self, key: str, duration: int, cycle: int) -> None:
        logger.warning("Login locked for %s: %ds (cycle %d)", key, duration, cycle)
        AuthMetrics.record_lockout(duration, cycle=cycle)
        if self._audit_store is None:
            return
        try:
            await self._audit_store.record(user_locked_event(key, duration, cycle))
        except Exception:
            logger.exception("Failed to audit lockout for %s", key)

    async def _apply_failure(
        self, key: str, now: datetime
    ) -> tuple[LoginAttemptRecord, int | None]:
        """Apply one failure; also returns the lockout duration when one starts."""
        record = await self._load(key) or LoginAttemptRecord(identifier=key)

        if record.is_locked(now):
            return record, None

        if self._quiet_since(record, now):
            record = LoginAttemptRecord(identifier=key)
        elif record.lockout_until is not None:
            record = replace(record, consecutive_failures=0, lockout_until=None)

        record = replace(
            record,
            consecutive_failures=record.consecutive_failures + 1,
            last_attempt_at=now,
        )
        if record.consecutive_failures < self.threshold:
            return record, None

        duration = self.backoff(record.lockout_cycles)
        record = replace(
            record,
            lockout_until=now + timedelta(seconds=duration),
            lockout_cycles=record.lockout_cycles + 1,
        )
        return record, duration

    def format_rate_limit_message(self, status: RateLimitStatus) -> str:
        return format_rate_limit_message(
            status, warning_threshold=self.config.warning_threshold
        )

    async def get_record(self, identifier: str) -> LoginAttemptRecord | None:
        return await self._load(normalize_identifier(identifier))

    async def reset(self, identifier: str) -> None:
        """Administrative clear of all state for an identifier."""
        key = normalize_identifier(identifier)
        async with self._serialized(key):
            await self.store.delete(key)
        logger.info("Rate limit state reset for %s", key)


__all__: list[str] = ["RateLimiter", "format_rate_limit_message"]
