"""In-memory audit store for testing and development."""

from __future__ import annotations

from collections import Counter, deque
from typing import TYPE_CHECKING

from ..ports import IAuthAuditStore

if TYPE_CHECKING:
    from datetime import datetime

    from .events import AuthAuditEvent, AuthEventType


class InMemoryAuthAuditStore(IAuthAuditStore):
    """Bounded in-memory implementation of IAuthAuditStore.

    Only the newest ``max_events`` events are kept; per-type counts cover
    everything ever recorded.

    Note:
        Events are stored in memory and will be lost on restart.
        Not suitable for production use.

    Example:
        ```python
        store = InMemoryAuthAuditStore()
        controller = AuthSessionController(..., audit_store=store)

        events = await store.get_events("user@example.com")
        failures = await store.get_failures(since=an_hour_ago)
        ```
    """

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: deque[AuthAuditEvent] = deque(maxlen=max_events)
        self._type_counts: Counter[str] = Counter()

    async def record(self, event: AuthAuditEvent) -> None:
        self._events.append(event)
        self._type_counts[event.event_type.value] += 1

    async def get_events(
        self,
        identifier: str,
        *,
        event_types: list[AuthEventType] | None = None,
        limit: int = 100,
    ) -> list[AuthAuditEvent]:
        """Get audit events for an identifier.

        Args:
            identifier: Normalized account identifier.
            event_types: Optional filter by event types.
            limit: Maximum number of events to return.

        Returns:
            List of audit events, most recent first.
        """
        matches = (
            event
            for event in reversed(self._events)
            if event.identifier == identifier
            and (not event_types or event.event_type in event_types)
        )
        return [event for _, event in zip(range(limit), matches)]

    async def get_failures(
        self,
        identifier: str | None = None,
        *,
        since: datetime,
        limit: int = 100,
    ) -> list[AuthAuditEvent]:
        """Get failed events (login, MFA, blocked attempts) since a point in time.

        Args:
            identifier: Optional filter by identifier.
            since: Only events at or after this UTC time.
            limit: Maximum number of events to return.
        """
        results: list[AuthAuditEvent] = []
        for event in reversed(self._events):
            if event.timestamp < since:
                break
            if event.success or (identifier and event.identifier != identifier):
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def count_by_type(self, event_type: AuthEventType) -> int:
        return self._type_counts[event_type.value]

    def clear(self) -> None:
        self._events.clear()
        self._type_counts.clear()

    def count(self) -> int:
        """Number of events currently retained."""
        return len(self._events)


__all__: list[str] = ["InMemoryAuthAuditStore"]
