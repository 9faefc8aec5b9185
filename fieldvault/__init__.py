"""Client-side field-level encryption: ciphers, tokens, key hierarchy, encrypted store, search."""

from .errors import (
    FieldVaultError,
    InvalidKeyError,
    DecryptionError,
    KeyManagerError,
    NotInitializedError,
    KeyNotFoundError,
    InvalidPasswordError,
    StoreError,
    StoreNotInitializedError,
    StoreLockedError,
)
from .models import (
    Algorithm,
    EncryptedValue,
    FieldEncryptionPolicy,
    WorkspaceKeySet,
    TableKeySet,
    EncryptedPayload,
    IntegrityReport,
)
from .e2ee import compute_encryption_auth_key, verify_encryption_key
from .key_manager import KeyManager
from .secure_store import SecureStore, StorageStats
from .storage_manager import StorageManager
from .search_index import SearchIndexEngine, SearchResult, TokenType
from .payload import (
    build_encrypted_record,
    build_hashed_keywords,
    build_record_hashes,
    build_total_record_hash,
    build_encrypted_payload,
    verify_record_integrity,
    decrypt_record,
)

__all__ = [
    "FieldVaultError",
    "InvalidKeyError",
    "DecryptionError",
    "KeyManagerError",
    "NotInitializedError",
    "KeyNotFoundError",
    "InvalidPasswordError",
    "StoreError",
    "StoreNotInitializedError",
    "StoreLockedError",
    "Algorithm",
    "EncryptedValue",
    "FieldEncryptionPolicy",
    "WorkspaceKeySet",
    "TableKeySet",
    "EncryptedPayload",
    "IntegrityReport",
    "compute_encryption_auth_key",
    "verify_encryption_key",
    "KeyManager",
    "SecureStore",
    "StorageStats",
    "StorageManager",
    "SearchIndexEngine",
    "SearchResult",
    "TokenType",
    "build_encrypted_record",
    "build_hashed_keywords",
    "build_record_hashes",
    "build_total_record_hash",
    "build_encrypted_payload",
    "verify_record_integrity",
    "decrypt_record",
]
