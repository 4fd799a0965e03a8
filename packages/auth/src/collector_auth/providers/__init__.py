"""Identity provider implementations."""

from __future__ import annotations

from .gotrue import GoTrueIdentityProvider
from .memory import InMemoryIdentityProvider

__all__: list[str] = ["GoTrueIdentityProvider", "InMemoryIdentityProvider"]
