"""Namespaced credential persistence on top of a secure keystore."""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from ..config import LocalAuthFlags
from ..models import SessionCredential
from ..ports import ISecureKeystore

logger = logging.getLogger(__name__)


class StorageKey(str, Enum):
    USER_ID = "user_id"
    USER_SESSION = "user_session"
    MFA_FACTOR_ID = "mfa_factor_id"
    MFA_ENABLED = "mfa_enabled"
    NOTIFICATIONS_ENABLED = "notifications_enabled"


IDENTITY_KEYS: tuple[StorageKey, ...] = (StorageKey.USER_ID, StorageKey.USER_SESSION)


class SecureCredentialStore:
    """Scoped, encrypted key-value persistence for session and MFA state.

    Keys are namespaced with ``prefix`` so several apps (or test cases) can
    share one keystore. Structured values are stored as JSON strings.

    Example:
        ```python
        store = SecureCredentialStore(EncryptedFileKeystore(path, key))

        await store.save_session(session)
        restored = await store.load_session()

        await store.clear_identity()  # sign-out
        ```
    """

    def __init__(self, keystore: ISecureKeystore, *, prefix: str = "collector") -> None:
        self.keystore = keystore
        self.prefix = prefix

    def _key(self, key: StorageKey | str) -> str:
        name = key.value if isinstance(key, StorageKey) else key
        return f"{self.prefix}:{name}"

    async def save(self, key: StorageKey | str, value: Any) -> None:
        """Store a value; non-strings are serialized to JSON."""
        if not isinstance(value, str):
            value = json.dumps(value)
        await self.keystore.set(self._key(key), value)

    async def get(self, key: StorageKey | str) -> str | None:
        return await self.keystore.get(self._key(key))

    async def get_json(self, key: StorageKey | str) -> Any:
        """Get and parse a JSON value.

        Returns:
            The parsed value, or None when missing or not valid JSON.
        """
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored value for %s is not valid JSON", self._key(key))
            return None

    async def delete(self, key: StorageKey | str) -> None:
        await self.keystore.delete(self._key(key))

    async def delete_many(self, keys: list[StorageKey | str]) -> None:
        await self.keystore.delete_many([self._key(key) for key in keys])

    async def save_many(self, values: dict[StorageKey | str, Any]) -> None:
        """Store several values in one keystore operation."""
        await self.keystore.set_many(
            {
                self._key(key): value if isinstance(value, str) else json.dumps(value)
                for key, value in values.items()
            }
        )

    # --- identity namespace -------------------------------------------------

    async def save_session(self, session: SessionCredential) -> None:
        """Write the session and user id together."""
        await self.save_many(
            {StorageKey.USER_SESSION: session.to_dict(), StorageKey.USER_ID: session.user_id}
        )

    async def load_session(self) -> SessionCredential | None:
        data = await self.get_json(StorageKey.USER_SESSION)
        if not isinstance(data, dict):
            return None
        try:
            return SessionCredential.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable stored session")
            return None

    async def clear_identity(self) -> None:
        """Remove every identity key in one keystore operation."""
        await self.delete_many(list(IDENTITY_KEYS))
        logger.debug("Identity namespace cleared")

    # --- typed flags ---------------------------------------------------------

    async def load_flags(self) -> LocalAuthFlags:
        mfa_enabled = await self.get(StorageKey.MFA_ENABLED)
        notifications = await self.get(StorageKey.NOTIFICATIONS_ENABLED)
        return LocalAuthFlags(
            mfa_enabled=mfa_enabled == "true",
            mfa_factor_id=await self.get(StorageKey.MFA_FACTOR_ID),
            notifications_enabled=notifications != "false",
        )

    async def save_flags(self, flags: LocalAuthFlags) -> None:
        if flags.mfa_enabled:
            await self.save(StorageKey.MFA_ENABLED, "true")
        else:
            await self.delete(StorageKey.MFA_ENABLED)
        if flags.mfa_factor_id:
            await self.save(StorageKey.MFA_FACTOR_ID, flags.mfa_factor_id)
        else:
            await self.delete(StorageKey.MFA_FACTOR_ID)
        await self.save(
            StorageKey.NOTIFICATIONS_ENABLED,
            "true" if flags.notifications_enabled else "false",
        )


__all__: list[str] = ["StorageKey", "IDENTITY_KEYS", "SecureCredentialStore"]
