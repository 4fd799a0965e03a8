"""Multi-factor authentication for the auth gate (TOTP via the identity provider)."""

from __future__ import annotations

from .orchestrator import MFAOrchestrator

__all__: list[str] = ["MFAOrchestrator"]
