"""
Encrypted key/value store for session state (key sets, table configs, cached records).

- Values are JSON-serialized, then AES-256-CBC encrypted under a store master key derived
  from the user's password (PBKDF2). Only ciphertext reaches the backend.
- The PBKDF2 salt and a SHA-256 verifier of the master key are kept unencrypted beside the
  data so the same password always re-derives the same key and a wrong one is rejected.
- States: uninitialized -> ready (key in memory) or locked (an earlier session exists but no
  key was supplied). A locked store answers reads with None and refuses writes.
"""

import hashlib
import json
import logging
import threading
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import ValidationError

from . import cipher, config, kdf
from .backends import MemoryBackend, StoreBackend
from .errors import (
    DecryptionError,
    InvalidKeyError,
    InvalidPasswordError,
    StoreError,
    StoreLockedError,
    StoreNotInitializedError,
)
from .keyed_hash import compare
from .models import EncryptedValue

logger = logging.getLogger(__name__)

MASTER_KEY_HASH = "master_key_hash"
MASTER_KEY_SALT = "master_key_salt"
_META_KEYS = frozenset({MASTER_KEY_HASH, MASTER_KEY_SALT})


class StorageStats(NamedTuple):
    used_space: int
    total_space: int
    key_count: int
    encryption_enabled: bool


def _key_hash(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class SecureStore:
    """
    Prefix-namespaced encrypted store over a StoreBackend. Construct one per session and
    pass it where needed; several stores may share a backend under different prefixes.
    """

    def __init__(
        self,
        backend: Optional[StoreBackend] = None,
        prefix: Optional[str] = None,
        encryption_enabled: bool = True,
        quota_bytes: Optional[int] = None,
        iterations: Optional[int] = None,
    ):
        self._backend = backend if backend is not None else MemoryBackend()
        self._prefix = config.STORE_PREFIX if prefix is None else prefix
        self._encryption_enabled = encryption_enabled
        self._quota = quota_bytes or config.STORE_QUOTA_BYTES
        self._iterations = iterations
        self._master_key: Optional[str] = None
        self._initialized = False
        self._lock = threading.RLock()

    @property
    def encryption_enabled(self) -> bool:
        return self._encryption_enabled

    @property
    def is_locked(self) -> bool:
        return self._initialized and self._encryption_enabled and self._master_key is None

    def initialize(self, password: Optional[str] = None, master_key: Optional[str] = None) -> None:
        """
        Unlock with a password (or an already derived 64-hex master key). Without either,
        resume a previous session in locked mode; fail if there is none.
        Raises InvalidPasswordError when the key does not match the stored verifier.
        """
        with self._lock:
            if password is None and master_key is None:
                if self._initialized:
                    return
                if self._backend.get_item(self._name(MASTER_KEY_HASH)) is None:
                    raise StoreNotInitializedError(
                        "No master password provided and no existing session found"
                    )
                self._initialized = True
                logger.info("Secure store resumed in locked mode")
                return

            stored_hash = self._backend.get_item(self._name(MASTER_KEY_HASH))
            salt = self._backend.get_item(self._name(MASTER_KEY_SALT))
            if master_key is not None:
                cipher.require_key(master_key)
                key = master_key.lower()
            else:
                derived = kdf.derive_key_from_password(password, salt=salt, iterations=self._iterations)
                key, salt = derived.key, derived.salt
            if stored_hash is not None and not compare(_key_hash(key), stored_hash):
                raise InvalidPasswordError("Invalid master password")
            self._master_key = key
            self._initialized = True
            if stored_hash is None:
                if master_key is None:
                    self._backend.set_item(self._name(MASTER_KEY_SALT), salt)
                self._backend.set_item(self._name(MASTER_KEY_HASH), _key_hash(key))
            logger.debug("Secure store unlocked")

    # --- entries -------------------------------------------------------------

    def set(self, key: str, value: Any) -> None:
        self._ensure_initialized()
        if key in _META_KEYS:
            raise ValueError(f"{key!r} is reserved")
        with self._lock:
            blob = self._seal(value)
            name = self._name(key)
            current = self._backend.get_item(name)
            projected = self._used_space() - len(current or "") + len(blob)
            if projected > self._quota:
                raise StoreError(f"Storage quota exceeded writing {key!r} ({projected} > {self._quota} bytes)")
            self._backend.set_item(name, blob)

    def get(self, key: str, default: Any = None) -> Any:
        """Stored value, or default when absent, undecryptable or the store is locked."""
        self._ensure_initialized()
        blob = self._backend.get_item(self._name(key))
        if blob is None:
            return default
        if self.is_locked:
            logger.info("Secure store is locked; %s not readable", key)
            return default
        try:
            return self._open(blob)
        except (DecryptionError, InvalidKeyError, ValidationError, ValueError) as e:
            logger.warning("Failed to retrieve secure data for key %s: %s", key, e)
            return default

    def remove(self, key: str) -> None:
        self._backend.remove_item(self._name(key))

    def exists(self, key: str) -> bool:
        return self._backend.get_item(self._name(key)) is not None

    def get_all_keys(self) -> List[str]:
        """Data entry names without the prefix; verifier and salt are not listed."""
        n = len(self._prefix)
        return [k[n:] for k in self._backend.keys() if k.startswith(self._prefix) and k[n:] not in _META_KEYS]

    def clear(self) -> None:
        """Remove every data entry. The session verifier stays, so the password still unlocks."""
        with self._lock:
            for key in self.get_all_keys():
                self.remove(key)

    def change_master_password(self, old_password: str, new_password: str) -> None:
        """
        Verify old_password, then re-encrypt every entry under a key derived from new_password.
        Entries are re-encrypted as opaque values; a KeyManager sharing this store changes the
        password through KeyManager.change_master_password so its wrapped keys follow.
        """
        with self._lock:
            stored_hash = self._backend.get_item(self._name(MASTER_KEY_HASH))
            salt = self._backend.get_item(self._name(MASTER_KEY_SALT))
            if stored_hash is None or salt is None:
                raise StoreNotInitializedError("No password-protected session to change")
            old_key = kdf.derive_key_from_password(old_password, salt=salt, iterations=self._iterations).key
            if not compare(_key_hash(old_key), stored_hash):
                raise InvalidPasswordError("Invalid old password")

            self._master_key = old_key
            self._initialized = True
            current: Dict[str, Any] = {}
            for key in self.get_all_keys():
                value = self.get(key)
                if value is None:
                    logger.warning("Dropping unreadable entry %s during password change", key)
                    continue
                current[key] = value

            self.clear()
            new = kdf.derive_key_from_password(new_password, iterations=self._iterations)
            self._master_key = new.key
            self._backend.set_item(self._name(MASTER_KEY_SALT), new.salt)
            self._backend.set_item(self._name(MASTER_KEY_HASH), _key_hash(new.key))
            for key, value in current.items():
                self.set(key, value)
            logger.info("Master password changed; %d entries re-encrypted", len(current))

    # --- backup --------------------------------------------------------------

    def export_data(self) -> Dict[str, str]:
        """Raw blobs (ciphertext plus the salt and verifier) keyed by unprefixed name."""
        n = len(self._prefix)
        return {k[n:]: v for k, v in self._backend.items(self._prefix)}

    def import_data(self, data: Dict[str, str]) -> None:
        """Write raw blobs back as exported. Nothing is decrypted."""
        with self._lock:
            for key, value in data.items():
                if not isinstance(value, str):
                    raise ValueError(f"Blob for {key!r} must be a string")
                self._backend.set_item(self._name(key), value)

    def get_storage_stats(self) -> StorageStats:
        return StorageStats(
            used_space=self._used_space(),
            total_space=self._quota,
            key_count=len(self.get_all_keys()),
            encryption_enabled=self._encryption_enabled,
        )

    # --- session -------------------------------------------------------------

    def secure_clear(self) -> None:
        """Drop the master key from memory (logout). Stored entries are kept."""
        with self._lock:
            self._master_key = None
            self._initialized = False

    def is_ready(self) -> bool:
        return self._initialized and (self._master_key is not None or not self._encryption_enabled)

    # --- internals -----------------------------------------------------------

    def _name(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise StoreNotInitializedError("SecureStore not initialized. Call initialize() first.")

    def _used_space(self) -> int:
        return sum(len(v) for _, v in self._backend.items(self._prefix))

    def _seal(self, value: Any) -> str:
        serialized = json.dumps(value)
        if not self._encryption_enabled:
            return serialized
        if self._master_key is None:
            raise StoreLockedError("Secure store is locked; unlock with the master password to write")
        return cipher.encrypt(serialized, self._master_key).model_dump_json(exclude_none=True)

    def _open(self, blob: str) -> Any:
        if not self._encryption_enabled:
            return json.loads(blob)
        value = EncryptedValue.model_validate_json(blob)
        return json.loads(cipher.decrypt(value, self._master_key))
