"""Auth gate metrics for Prometheus.

Metrics are created on first use and registered with the default
``prometheus_client`` registry, so importing the package never touches the
registry.

Usage:
    ```python
    from collector_auth.observability import AuthMetrics

    with AuthMetrics.operation("sign_in", provider="gotrue"):
        credential = await provider.sign_in_with_password(email, password)

    AuthMetrics.record_lockout(30, cycle=1)
    ```
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

_logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Generator

    from ..audit.events import AuthAuditEvent

METRIC_PREFIX = "collector_auth"

# Lockout durations follow the default backoff schedule.
LOCKOUT_BUCKETS = (30.0, 60.0, 300.0, 900.0, 3600.0)


@dataclass(frozen=True)
class _GateMetrics:
    operation_seconds: Histogram
    operations: Counter
    events: Counter
    lockouts: Counter
    lockout_seconds: Histogram


_metrics: _GateMetrics | None = None


def _gate_metrics() -> _GateMetrics:
    global _metrics
    if _metrics is None:
        _metrics = _GateMetrics(
            operation_seconds=Histogram(
                f"{METRIC_PREFIX}_operation_duration_seconds",
                "Identity provider round trip duration per gate operation",
                ["provider", "operation"],
            ),
            operations=Counter(
                f"{METRIC_PREFIX}_operations_total",
                "Identity provider calls per gate operation and result",
                ["provider", "operation", "result"],
            ),
            events=Counter(
                f"{METRIC_PREFIX}_events_total",
                "Audit events emitted by the gate",
                ["provider", "event_type", "result"],
            ),
            lockouts=Counter(
                f"{METRIC_PREFIX}_lockouts_total",
                "Client-side lockouts triggered, by backoff cycle",
                ["cycle"],
            ),
            lockout_seconds=Histogram(
                f"{METRIC_PREFIX}_lockout_duration_seconds",
                "Length of client-side lockouts",
                buckets=LOCKOUT_BUCKETS,
            ),
        )
        _logger.debug("Auth gate metrics registered")
    return _metrics


class AuthMetrics:
    """Helpers for recording auth gate metrics."""

    @staticmethod
    @contextmanager
    def operation(
        operation: str,
        *,
        provider: str = "unknown",
    ) -> Generator[None, None, None]:
        """Time an identity provider call.

        The result label is ``error`` when the block raises.

        Args:
            operation: Gate operation (sign_in, mfa_enroll, mfa_challenge,
                mfa_verify, mfa_list_factors).
            provider: Identity provider name.
        """
        metrics = _gate_metrics()
        started = time.perf_counter()
        outcome = "error"
        try:
            yield
            outcome = "success"
        finally:
            metrics.operation_seconds.labels(provider=provider, operation=operation).observe(
                time.perf_counter() - started
            )
            metrics.operations.labels(
                provider=provider, operation=operation, result=outcome
            ).inc()

    @staticmethod
    def record_event(event: AuthAuditEvent, *, provider: str = "unknown") -> None:
        _gate_metrics().events.labels(
            provider=provider,
            event_type=event.event_type.value,
            result="success" if event.success else "failure",
        ).inc()

    @staticmethod
    def record_lockout(duration_seconds: int, *, cycle: int) -> None:
        """Count a lockout and observe its length.

        Cycles past the last backoff step share one label value.
        """
        metrics = _gate_metrics()
        label = str(cycle) if cycle <= len(LOCKOUT_BUCKETS) else f">{len(LOCKOUT_BUCKETS)}"
        metrics.lockouts.labels(cycle=label).inc()
        metrics.lockout_seconds.observe(duration_seconds)


__all__: list[str] = ["AuthMetrics", "METRIC_PREFIX"]
