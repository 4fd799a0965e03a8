"""Login attempt record stores."""

from __future__ import annotations

import json
import logging

from ..models import LoginAttemptRecord
from ..ports import ILoginAttemptStore, ISecureKeystore

logger = logging.getLogger(__name__)


class InMemoryLoginAttemptStore(ILoginAttemptStore):
    """In-memory attempt store for TESTING ONLY.

    ⚠️ WARNING: Records are lost on restart, so lockouts do not survive.
    """

    def __init__(self) -> None:
        self._records: dict[str, LoginAttemptRecord] = {}

    async def load(self, identifier: str) -> LoginAttemptRecord | None:
        return self._records.get(identifier)

    async def save(self, record: LoginAttemptRecord) -> None:
        self._records[record.identifier] = record

    async def delete(self, identifier: str) -> None:
        self._records.pop(identifier, None)


class KeystoreLoginAttemptStore(ILoginAttemptStore):
    """Attempt store persisted in the secure keystore.

    Each identifier is stored as JSON under ``<prefix>:login_attempt:<id>``.
    An unreadable record is treated as absent rather than failing sign-in.
    """

    def __init__(self, keystore: ISecureKeystore, *, prefix: str = "collector") -> None:
        self.keystore = keystore
        self.prefix = prefix

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:login_attempt:{identifier}"

    async def load(self, identifier: str) -> LoginAttemptRecord | None:
        raw = await self.keystore.get(self._key(identifier))
        if raw is None:
            return None
        try:
            return LoginAttemptRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Ignoring unreadable login attempt record for %s", identifier)
            return None

    async def save(self, record: LoginAttemptRecord) -> None:
        await self.keystore.set(self._key(record.identifier), json.dumps(record.to_dict()))

    async def delete(self, identifier: str) -> None:
        await self.keystore.delete(self._key(identifier))


__all__: list[str] = ["InMemoryLoginAttemptStore", "KeystoreLoginAttemptStore"]
