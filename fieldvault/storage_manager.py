"""
Typed facade over SecureStore: one encrypted entry per concern, each a dict keyed by table id
(or workspace id) so a table's data can be dropped in one call.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .models import TableKeySet, WorkspaceKeySet
from .secure_store import SecureStore

logger = logging.getLogger(__name__)

ENCRYPTION_KEYS = "encryption_keys"
TABLE_CONFIGS = "table_configs"
ENCRYPTED_RECORDS = "encrypted_records"
SEARCH_INDEXES = "search_indexes"
USER_PREFERENCES = "user_preferences"
WORKSPACE_KEYS = "workspace_keys"
TABLE_KEYS = "table_keys"
KEY_MANAGER_PARAMS = "key_manager_params"

BACKUP_VERSION = "1.0"

# entries holding per-table data, cleared together by clear_table_data
_TABLE_SCOPED = (ENCRYPTED_RECORDS, TABLE_CONFIGS, SEARCH_INDEXES)


class StorageManager:
    def __init__(self, store: Optional[SecureStore] = None):
        self._store = store if store is not None else SecureStore()

    @property
    def store(self) -> SecureStore:
        return self._store

    def initialize(self, password: Optional[str] = None, master_key: Optional[str] = None) -> None:
        self._store.initialize(password=password, master_key=master_key)

    # --- keys ----------------------------------------------------------------

    def store_keys(self, keys: Dict[str, str]) -> None:
        self._store.set(ENCRYPTION_KEYS, dict(keys))

    def get_keys(self) -> Optional[Dict[str, str]]:
        return self._store.get(ENCRYPTION_KEYS)

    def save_workspace_key_sets(self, key_sets: Dict[str, WorkspaceKeySet]) -> None:
        self._store.set(WORKSPACE_KEYS, {k: v.model_dump(mode="json") for k, v in key_sets.items()})

    def load_workspace_key_sets(self) -> Dict[str, WorkspaceKeySet]:
        raw = self._store.get(WORKSPACE_KEYS) or {}
        return {k: WorkspaceKeySet.model_validate(v) for k, v in raw.items()}

    def save_table_key_sets(self, key_sets: Dict[str, TableKeySet]) -> None:
        self._store.set(TABLE_KEYS, {k: v.model_dump(mode="json") for k, v in key_sets.items()})

    def load_table_key_sets(self) -> Dict[str, TableKeySet]:
        raw = self._store.get(TABLE_KEYS) or {}
        return {k: TableKeySet.model_validate(v) for k, v in raw.items()}

    def store_key_manager_params(self, params: Dict[str, str]) -> None:
        """PBKDF2 salt and verifier of the key-manager master key (not secret)."""
        self._store.set(KEY_MANAGER_PARAMS, dict(params))

    def get_key_manager_params(self) -> Optional[Dict[str, str]]:
        return self._store.get(KEY_MANAGER_PARAMS)

    # --- per-table data --------------------------------------------------------

    def _put(self, entry: str, table_id: str, value: Any) -> None:
        data = self._store.get(entry) or {}
        data[table_id] = value
        self._store.set(entry, data)

    def _take(self, entry: str, table_id: str) -> Any:
        data = self._store.get(entry) or {}
        return data.get(table_id)

    def store_table_config(self, table_id: str, table_config: Dict[str, Any]) -> None:
        self._put(TABLE_CONFIGS, table_id, table_config)

    def get_table_config(self, table_id: str) -> Optional[Dict[str, Any]]:
        return self._take(TABLE_CONFIGS, table_id)

    def store_records(self, table_id: str, records: List[Dict[str, Any]]) -> None:
        """Cache ciphertext rows for a table; rows must be JSON-serializable."""
        self._put(ENCRYPTED_RECORDS, table_id, list(records))

    def get_records(self, table_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._take(ENCRYPTED_RECORDS, table_id)

    def store_search_indexes(self, table_id: str, indexes: Dict[str, Dict[str, List[str]]]) -> None:
        self._put(SEARCH_INDEXES, table_id, indexes)

    def get_search_indexes(self, table_id: str) -> Optional[Dict[str, Dict[str, List[str]]]]:
        return self._take(SEARCH_INDEXES, table_id)

    def store_user_preferences(self, preferences: Dict[str, Any]) -> None:
        self._store.set(USER_PREFERENCES, dict(preferences))

    def get_user_preferences(self) -> Optional[Dict[str, Any]]:
        return self._store.get(USER_PREFERENCES)

    def clear_table_data(self, table_id: str) -> None:
        """Drop records, config and search indexes of one table. Its keys are left alone."""
        for entry in _TABLE_SCOPED:
            data = self._store.get(entry)
            if data and table_id in data:
                del data[table_id]
                self._store.set(entry, data)
        logger.debug("Cleared cached data for table %s", table_id)

    def get_table_ids(self) -> List[str]:
        """Every table id with records, config, indexes or a key set."""
        ids = set()
        for entry in (*_TABLE_SCOPED, TABLE_KEYS):
            ids.update((self._store.get(entry) or {}).keys())
        return sorted(ids)

    # --- backup & maintenance ------------------------------------------------------

    def backup_all(self) -> Dict[str, Any]:
        stats = self._store.get_storage_stats()
        return {
            "data": self._store.export_data(),
            "metadata": {
                "version": BACKUP_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "table_ids": self.get_table_ids(),
                "storage_stats": stats._asdict(),
            },
        }

    def restore_all(self, backup: Dict[str, Any]) -> None:
        data = backup.get("data") if isinstance(backup, dict) else None
        if not isinstance(data, dict):
            raise ValueError("Invalid backup format")
        version = (backup.get("metadata") or {}).get("version")
        if version is not None and version != BACKUP_VERSION:
            raise ValueError(f"Unsupported backup version {version!r}")
        self._store.import_data(data)

    def get_storage_summary(self) -> Dict[str, Any]:
        table_ids = self.get_table_ids()
        records = self._store.get(ENCRYPTED_RECORDS) or {}
        return {
            "table_count": len(table_ids),
            "total_records": sum(len(rows or []) for rows in records.values()),
            "storage_stats": self._store.get_storage_stats()._asdict(),
            "table_ids": table_ids,
        }

    def perform_maintenance(self, active_table_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Purge cached records and indexes of tables that are no longer tracked, and flag
        storage usage above the warning threshold.

        Tracked tables are those with a config or a key set, unless active_table_ids is given.
        """
        if active_table_ids is not None:
            tracked = set(active_table_ids)
        else:
            tracked = set((self._store.get(TABLE_CONFIGS) or {}).keys())
            tracked.update((self._store.get(TABLE_KEYS) or {}).keys())

        cleaned_up: List[str] = []
        cached = set((self._store.get(ENCRYPTED_RECORDS) or {}).keys())
        cached.update((self._store.get(SEARCH_INDEXES) or {}).keys())
        for table_id in sorted(cached - tracked):
            self.clear_table_data(table_id)
            cleaned_up.append(f"Cleaned up orphaned table: {table_id}")
            logger.info("Purged cached data for untracked table %s", table_id)

        warnings: List[str] = []
        stats = self._store.get_storage_stats()
        usage_percent = stats.used_space / stats.total_space * 100 if stats.total_space else 0.0
        if usage_percent > config.STORE_USAGE_WARN_PERCENT:
            warnings.append(f"Storage usage is high: {usage_percent:.2f}%")
            logger.warning("Secure store usage at %.2f%% of quota", usage_percent)

        return {
            "cleaned_up": cleaned_up,
            "warnings": warnings,
            "usage_percent": usage_percent,
            "summary": self.get_storage_summary(),
        }
