"""Persistence for the authentication gate."""

from .attempts import InMemoryLoginAttemptStore, KeystoreLoginAttemptStore
from .credential_store import IDENTITY_KEYS, SecureCredentialStore, StorageKey
from .keystore import EncryptedFileKeystore, InMemoryKeystore

__all__: list[str] = [
    "SecureCredentialStore",
    "StorageKey",
    "IDENTITY_KEYS",
    "InMemoryKeystore",
    "EncryptedFileKeystore",
    "InMemoryLoginAttemptStore",
    "KeystoreLoginAttemptStore",
]
