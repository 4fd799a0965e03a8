"""Secure keystore implementations.

``EncryptedFileKeystore`` keeps every entry in one Fernet-encrypted JSON
document so that batched writes and deletes are a single rewrite of the file.
``InMemoryKeystore`` is for tests only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from ..exceptions import UnexpectedResponseError
from ..ports import ISecureKeystore

logger = logging.getLogger(__name__)


class InMemoryKeystore(ISecureKeystore):
    """In-memory keystore for TESTING ONLY.

    ⚠️ WARNING: Values are kept in plain text and lost on restart.
    """

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def set_many(self, values: dict[str, str]) -> None:
        self._values.update(values)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def delete_many(self, keys: list[str]) -> None:
        # No await between pops, so no reader can interleave.
        for key in keys:
            self._values.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._values)


class EncryptedFileKeystore(ISecureKeystore):
    """Fernet-encrypted keystore persisted to a single file.

    The file is rewritten through a temporary sibling and ``os.replace`` so
    a crash never leaves a half-written document behind. Blocking IO runs in
    a worker thread.

    Example:
        ```python
        key = EncryptedFileKeystore.generate_key()  # keep in the OS keychain
        keystore = EncryptedFileKeystore("~/.collector/keystore.bin", key)

        await keystore.set("user_id", "u-123")
        await keystore.get("user_id")
        ```
    """

    def __init__(self, path: str | os.PathLike[str], key: bytes | str) -> None:
        """Initialize the keystore.

        Args:
            path: Location of the encrypted document.
            key: urlsafe base64 Fernet key.
        """
        self.path = Path(path).expanduser()
        self._fernet = Fernet(key)
        self._lock = asyncio.Lock()
        self._cache: dict[str, str] | None = None

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        token = self.path.read_bytes()
        try:
            plaintext = self._fernet.decrypt(token)
        except InvalidToken as e:
            raise UnexpectedResponseError(
                f"Keystore {self.path} cannot be decrypted with the configured key"
            ) from e
        try:
            data = json.loads(plaintext)
        except ValueError as e:
            raise UnexpectedResponseError(f"Keystore {self.path} is corrupt") from e
        if not isinstance(data, dict):
            raise UnexpectedResponseError(f"Keystore {self.path} is corrupt")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, values: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        token = self._fernet.encrypt(json.dumps(values, sort_keys=True).encode())
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_bytes(token)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

    async def _load(self) -> dict[str, str]:
        if self._cache is None:
            self._cache = await asyncio.to_thread(self._read)
        return self._cache

    async def _commit(self, values: dict[str, str]) -> None:
        await asyncio.to_thread(self._write, values)
        self._cache = values

    async def get(self, key: str) -> str | None:
        async with self._lock:
            values = await self._load()
            return values.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: dict[str, str]) -> None:
        async with self._lock:
            updated = {**await self._load(), **values}
            await self._commit(updated)
        logger.debug("Keystore entries written: %s", ", ".join(values))

    async def delete(self, key: str) -> None:
        await self.delete_many([key])

    async def delete_many(self, keys: list[str]) -> None:
        async with self._lock:
            values = dict(await self._load())
            removed = [key for key in keys if values.pop(key, None) is not None]
            if removed:
                await self._commit(values)
        logger.debug("Keystore entries deleted: %s", ", ".join(keys))


__all__: list[str] = ["InMemoryKeystore", "EncryptedFileKeystore"]
