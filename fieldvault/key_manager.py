"""
Session authority over the key hierarchy.

master key (PBKDF2 from the user's password, memory only)
  -> workspace keys (random, persisted wrapped under a per-key derivation of the master key)
  -> table key sets (random table master key + one HKDF field key per encrypted field)

Key sets are persisted through StorageManager, so they are encrypted at rest by the secure
store. Mutations are serialized per workspace/table scope.
"""

import hashlib
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

from . import cipher, e2ee, kdf
from .errors import (
    DecryptionError,
    InvalidKeyError,
    InvalidPasswordError,
    KeyNotFoundError,
    NotInitializedError,
)
from .field_types import algorithm_for_field_type
from .keyed_hash import compare
from .models import Algorithm, EncryptedValue, TableKeySet, WorkspaceKeySet
from .storage_manager import StorageManager

logger = logging.getLogger(__name__)

INTEGRITY_SENTINEL = "fieldvault-key-integrity-check"
EXPORT_VERSION = "1.0"
INITIAL_VERSION = "1.0.0"


def bump_patch(version: str) -> str:
    """"1.0.0" -> "1.0.1". Malformed versions restart at 1.0.1."""
    parts = version.split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return "1.0.1"
    major, minor, patch = (int(p) for p in parts)
    return f"{major}.{minor}.{patch + 1}"


def field_key_context(field_name: str, algorithm: Algorithm) -> str:
    """HKDF info for a field key. Names outside the context alphabet are hashed first."""
    name = field_name if kdf.validate_context(f"field:{field_name}") else hashlib.sha256(
        field_name.encode("utf-8")
    ).hexdigest()
    return f"field:{name}:{algorithm.value}"


def derive_field_key(table_master_key: str, field_name: str, algorithm: Algorithm) -> str:
    return kdf.derive_key(table_master_key, field_key_context(field_name, algorithm))


class KeyManager:
    """
    Explicit service object; construct one per session. Nothing here is a module-level
    singleton, so independent sessions (and tests) do not share key state.
    """

    def __init__(self, storage: Optional[StorageManager] = None, iterations: Optional[int] = None):
        self._storage = storage if storage is not None else StorageManager()
        self._iterations = iterations
        self._master_key: Optional[str] = None
        self._workspace_keys: Dict[str, WorkspaceKeySet] = {}
        self._table_keys: Dict[str, TableKeySet] = {}
        self._scope_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._registry_lock = threading.Lock()
        self._persist_lock = threading.RLock()

    @property
    def storage(self) -> StorageManager:
        return self._storage

    def is_initialized(self) -> bool:
        return self._master_key is not None

    @contextmanager
    def _scope(self, scope: str) -> Iterator[None]:
        with self._registry_lock:
            lock = self._scope_locks[scope]
        with lock:
            yield

    def _require_master(self) -> str:
        if self._master_key is None:
            raise NotInitializedError("Key manager not initialized")
        return self._master_key

    # --- session -------------------------------------------------------------

    def initialize(self, password: str) -> None:
        """
        Derive the master key and load persisted key sets. The secure store is unlocked
        with the same password when it is not ready yet. The PBKDF2 salt is persisted on
        first use so later sessions derive the same master key.
        Raises InvalidPasswordError for a password that does not match the stored verifier.
        """
        if not password:
            raise ValueError("Master password required")
        if not self._storage.store.is_ready():
            self._storage.initialize(password=password)

        params = self._storage.get_key_manager_params()
        salt = params.get("salt") if params else None
        derived = kdf.derive_key_from_password(password, salt=salt, iterations=self._iterations)
        verifier = hashlib.sha256(bytes.fromhex(derived.key)).hexdigest()
        if params:
            if not compare(verifier, params.get("verifier", "")):
                raise InvalidPasswordError("Invalid master password")
        else:
            self._storage.store_key_manager_params({"salt": derived.salt, "verifier": verifier})

        self._master_key = derived.key
        self._load_keys_from_storage()
        logger.info(
            "Key manager initialized with %d workspace and %d table key sets",
            len(self._workspace_keys),
            len(self._table_keys),
        )

    def _load_keys_from_storage(self) -> None:
        self._workspace_keys.update(self._storage.load_workspace_key_sets())
        self._table_keys.update(self._storage.load_table_key_sets())

    def _persist_workspace_keys(self) -> None:
        with self._persist_lock:
            self._storage.save_workspace_key_sets(dict(self._workspace_keys))

    def _persist_table_keys(self) -> None:
        with self._persist_lock:
            self._storage.save_table_key_sets(dict(self._table_keys))

    def clear_keys(self) -> None:
        """Forget the master key and every cached key set (logout). Persisted sets remain."""
        self._master_key = None
        self._workspace_keys.clear()
        self._table_keys.clear()
        logger.debug("Key manager cleared")

    # --- workspace keys ------------------------------------------------------

    @staticmethod
    def _wrap(workspace_id: str, workspace_key: str, master_key: str) -> WorkspaceKeySet:
        salt = kdf.generate_salt()
        wrapped = cipher.encrypt(workspace_key, kdf.derive_key(master_key, f"workspace_wrap:{salt}"))
        return WorkspaceKeySet(
            workspace_id=workspace_id,
            encrypted_key=wrapped.data,
            salt=salt,
            iv=wrapped.iv,
        )

    @staticmethod
    def _unwrap(key_set: WorkspaceKeySet, master_key: str) -> str:
        return cipher.decrypt(
            EncryptedValue(data=key_set.encrypted_key, iv=key_set.iv, algorithm=Algorithm.CIPHER),
            kdf.derive_key(master_key, f"workspace_wrap:{key_set.salt}"),
        )

    def change_master_password(self, old_password: str, new_password: str) -> None:
        """
        Re-key the whole hierarchy under new_password: every workspace key is unwrapped with
        the old master key and re-wrapped with the new one, the secure store is re-encrypted,
        and the new salt and verifier are persisted. The store must share the password.
        Raises InvalidPasswordError when old_password does not match.
        """
        if not new_password:
            raise ValueError("New master password required")
        with self._persist_lock:
            if not self._storage.store.is_ready():
                self._storage.initialize(password=old_password)
            params = self._storage.get_key_manager_params()
            if not params:
                raise NotInitializedError("No key manager session to change")
            old = kdf.derive_key_from_password(old_password, salt=params.get("salt"), iterations=self._iterations)
            if not compare(hashlib.sha256(bytes.fromhex(old.key)).hexdigest(), params.get("verifier", "")):
                raise InvalidPasswordError("Invalid old password")

            key_sets = dict(self._storage.load_workspace_key_sets())
            key_sets.update(self._workspace_keys)
            plain = {ws: self._unwrap(ks, old.key) for ws, ks in key_sets.items()}

            self._storage.store.change_master_password(old_password, new_password)
            new = kdf.derive_key_from_password(new_password, iterations=self._iterations)
            self._storage.store_key_manager_params({
                "salt": new.salt,
                "verifier": hashlib.sha256(bytes.fromhex(new.key)).hexdigest(),
            })
            self._master_key = new.key
            self._workspace_keys = {ws: self._wrap(ws, key, new.key) for ws, key in plain.items()}
            self._persist_workspace_keys()
            self._load_keys_from_storage()
        logger.info("Master password changed; %d workspace keys re-wrapped", len(plain))

    def create_workspace_key(self, workspace_id: str) -> WorkspaceKeySet:
        master = self._require_master()
        with self._scope(f"workspace:{workspace_id}"):
            key_set = self._wrap(workspace_id, cipher.generate_key(), master)
            self._workspace_keys[workspace_id] = key_set
            self._persist_workspace_keys()
        logger.info("Created workspace key for %s", workspace_id)
        return key_set

    def get_workspace_key(self, workspace_id: str) -> str:
        """Unwrapped workspace key. Raises KeyNotFoundError when none exists."""
        master = self._require_master()
        key_set = self._workspace_keys.get(workspace_id)
        if key_set is None:
            self._workspace_keys.update(self._storage.load_workspace_key_sets())
            key_set = self._workspace_keys.get(workspace_id)
        if key_set is None:
            raise KeyNotFoundError(f"No key for workspace {workspace_id}")
        return self._unwrap(key_set, master)

    def has_workspace_key(self, workspace_id: str) -> bool:
        return workspace_id in self._workspace_keys

    # --- table keys ----------------------------------------------------------

    def create_table_key(
        self,
        table_id: str,
        workspace_id: str,
        field_types: Mapping[str, str],
        e2ee_enabled: bool = False,
    ) -> TableKeySet:
        """
        New table master key and one derived key per encrypted field. Requires the
        workspace key to exist. Reference and unknown field types get no key.
        """
        self._require_master()
        if workspace_id not in self._workspace_keys:
            self.get_workspace_key(workspace_id)
        with self._scope(f"table:{table_id}"):
            master = kdf.generate_random_key()
            algorithms = {
                name: algorithm_for_field_type(field_type)
                for name, field_type in field_types.items()
                if algorithm_for_field_type(field_type) != Algorithm.NONE
            }
            key_set = TableKeySet(
                table_id=table_id,
                workspace_id=workspace_id,
                master_key=master,
                field_keys={name: derive_field_key(master, name, alg) for name, alg in algorithms.items()},
                field_algorithms=algorithms,
                version=INITIAL_VERSION,
                e2ee_enabled=e2ee_enabled,
            )
            self._table_keys[table_id] = key_set
            self._persist_table_keys()
        logger.info("Created table key set for %s (%d field keys)", table_id, len(key_set.field_keys))
        return key_set

    def get_table_key(self, table_id: str) -> Optional[TableKeySet]:
        self._require_master()
        key_set = self._table_keys.get(table_id)
        if key_set is None:
            key_set = self._storage.load_table_key_sets().get(table_id)
            if key_set is not None:
                self._table_keys[table_id] = key_set
        return key_set

    def get_field_key(self, table_id: str, field_name: str) -> Optional[str]:
        key_set = self.get_table_key(table_id)
        if key_set is None:
            return None
        return key_set.field_keys.get(field_name)

    def rotate_table_key(self, table_id: str) -> TableKeySet:
        """
        New master and field keys under the same field algorithms, patch version bump.
        Existing ciphertext is not re-encrypted; the caller owns that migration.
        """
        with self._scope(f"table:{table_id}"):
            current = self.get_table_key(table_id)
            if current is None:
                raise KeyNotFoundError(f"No key set for table {table_id}")
            master = kdf.generate_random_key()
            algorithms = dict(current.field_algorithms)
            for name in current.field_keys:
                # key sets imported without algorithms fall back to the cipher
                algorithms.setdefault(name, Algorithm.CIPHER)
            rotated = current.model_copy(update={
                "master_key": master,
                "field_keys": {name: derive_field_key(master, name, alg) for name, alg in algorithms.items()},
                "field_algorithms": algorithms,
                "version": bump_patch(current.version),
                "created_at": datetime.now(timezone.utc),
            })
            self._table_keys[table_id] = rotated
            self._persist_table_keys()
        logger.info("Rotated table key set for %s to version %s", table_id, rotated.version)
        return rotated

    def delete_table_key(self, table_id: str) -> bool:
        self._require_master()
        with self._scope(f"table:{table_id}"):
            stored = self._storage.load_table_key_sets()
            existed = self._table_keys.pop(table_id, None) is not None or table_id in stored
            if existed:
                self._persist_table_keys()
        if existed:
            logger.info("Deleted table key set for %s", table_id)
        return existed

    def get_table_ids_for_workspace(self, workspace_id: str) -> List[str]:
        self._require_master()
        return sorted(t for t, ks in self._table_keys.items() if ks.workspace_id == workspace_id)

    # --- checks & backup -----------------------------------------------------

    def validate_key_integrity(self) -> bool:
        """
        Round-trip a sentinel through the cipher under the master key, then unwrap every
        workspace key. False (logged) on any failure; never raises.
        """
        if self._master_key is None:
            return False
        try:
            sentinel = cipher.encrypt(INTEGRITY_SENTINEL, self._master_key)
            if cipher.decrypt(sentinel, self._master_key) != INTEGRITY_SENTINEL:
                return False
            for workspace_id in list(self._workspace_keys):
                if not cipher.is_valid_key(self.get_workspace_key(workspace_id)):
                    logger.warning("Workspace key for %s unwrapped to an invalid key", workspace_id)
                    return False
            for table_id, key_set in self._table_keys.items():
                if not all(cipher.is_valid_key(k) for k in (key_set.master_key, *key_set.field_keys.values())):
                    logger.warning("Table key set for %s holds an invalid key", table_id)
                    return False
        except (DecryptionError, InvalidKeyError) as e:
            logger.warning("Key integrity check failed: %s", e)
            return False
        return True

    def export_keys(self) -> Dict[str, Any]:
        """
        Every workspace and table key set. Table master and field keys are in the clear;
        treat the result as secret.
        """
        self._require_master()
        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "workspace_keys": {k: v.model_dump(mode="json") for k, v in self._workspace_keys.items()},
            "table_keys": {k: v.model_dump(mode="json") for k, v in self._table_keys.items()},
        }

    def import_keys(self, data: Mapping[str, Any]) -> None:
        """
        Merge exported key sets and persist them. Workspace keys only unwrap under the
        master key they were exported with.
        """
        self._require_master()
        workspace_keys = {k: WorkspaceKeySet.model_validate(v) for k, v in (data.get("workspace_keys") or {}).items()}
        table_keys = {k: TableKeySet.model_validate(v) for k, v in (data.get("table_keys") or {}).items()}
        with self._persist_lock:
            self._workspace_keys.update(workspace_keys)
            self._table_keys.update(table_keys)
            self._persist_workspace_keys()
            self._persist_table_keys()
        logger.info("Imported %d workspace and %d table key sets", len(workspace_keys), len(table_keys))

    # --- e2ee ----------------------------------------------------------------

    @staticmethod
    def compute_encryption_auth_key(raw_key: str) -> str:
        return e2ee.compute_encryption_auth_key(raw_key)

    @staticmethod
    def verify_encryption_key(raw_key: str, stored_auth_key: str) -> bool:
        return e2ee.verify_encryption_key(raw_key, stored_auth_key)
