"""Auth gate observability helpers for metrics and tracing."""

from __future__ import annotations

from .metrics import AuthMetrics
from .tracing import TRACER_NAME, AuthTracing

__all__: list[str] = [
    "AuthMetrics",
    "AuthTracing",
    "TRACER_NAME",
]
