"""Auth gate tracing helpers for OpenTelemetry.

Spans are no-ops until the application installs a tracer provider.

Usage:
    ```python
    from collector_auth.observability import AuthTracing

    with AuthTracing.span("sign_in", attributes={"auth.identifier": email}) as span:
        result = await controller.sign_in(email, password)
        AuthTracing.set_outcome(span, result.outcome.value)
    ```
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Generator

TRACER_NAME = "collector-auth"


class AuthTracing:
    """Context managers for spans around auth gate operations."""

    @staticmethod
    @contextmanager
    def span(
        operation: str,
        *,
        provider: str = "unknown",
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Any, None, None]:
        """Context manager for a traced auth operation.

        Args:
            operation: Operation name (sign_in, mfa.challenge, mfa.verify).
            provider: Identity provider name.
            attributes: Additional span attributes.

        Yields:
            The active span.
        """
        tracer = trace.get_tracer(TRACER_NAME)
        with tracer.start_as_current_span(f"auth.{operation}") as span:
            try:
                span.set_attribute("auth.operation", operation)
                span.set_attribute("auth.provider", provider)
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, str(value))
                yield span
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise

    @staticmethod
    def set_outcome(span: Any, outcome: str) -> None:
        span.set_attribute("auth.outcome", outcome)
        if outcome == "failed":
            span.set_status(Status(StatusCode.ERROR, outcome))
        else:
            span.set_status(Status(StatusCode.OK))


__all__: list[str] = ["AuthTracing", "TRACER_NAME"]
