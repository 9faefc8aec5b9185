"""
Data model shared by all components.

- EncryptedValue is the single envelope for every primitive's output
  (AES ciphertext, HMAC digest, OPE token), tagged with its algorithm.
- Key sets are pydantic models so they serialize straight into the secure store.
- EncryptedPayload is the wire shape consumed by the persistence collaborator.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field


class Algorithm(str, Enum):
    CIPHER = "AES-256-CBC"
    ORDER_PRESERVING = "OPE"
    KEYED_HASH = "HMAC-SHA256"
    NONE = "NONE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EncryptedValue(BaseModel):
    """Ciphertext/digest data plus IV, algorithm tag and optional metadata."""
    data: str
    iv: Optional[str] = None
    algorithm: Algorithm
    metadata: Optional[Dict[str, Any]] = None
    # Set only when a primitive generated the key itself; never serialized.
    generated_key: Optional[str] = Field(default=None, exclude=True, repr=False)


class FieldEncryptionPolicy(BaseModel):
    enabled: bool = True
    algorithm: Algorithm = Algorithm.NONE
    searchable: bool = False
    order_preserving: bool = False
    e2ee: bool = False
    key_rotation: bool = False
    # OPE only: (min, max) domain; a per-type default is used when unset.
    value_range: Optional[Tuple[float, float]] = None
    # Declared field type; boolean types canonicalize "yes"/"1"/True alike before hashing.
    field_type: Optional[str] = None


class WorkspaceKeySet(BaseModel):
    """Workspace key wrapped under the session master key. Plaintext key is never stored."""
    workspace_id: str
    encrypted_key: str
    salt: str
    iv: str
    created_at: datetime = Field(default_factory=_utcnow)


class TableKeySet(BaseModel):
    table_id: str
    workspace_id: str
    master_key: str
    field_keys: Dict[str, str] = Field(default_factory=dict)
    field_algorithms: Dict[str, Algorithm] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    version: str = "1.0.0"
    e2ee_enabled: bool = False


FieldCiphertext = Union[EncryptedValue, List[EncryptedValue]]
FieldHash = Union[str, List[str]]


class EncryptedPayload(BaseModel):
    record: Dict[str, FieldCiphertext] = Field(default_factory=dict)
    hashed_keywords: Dict[str, List[str]] = Field(default_factory=dict)
    record_hashes: Dict[str, FieldHash] = Field(default_factory=dict)
    record_hash: str = ""


class IntegrityReport(BaseModel):
    ok: bool
    mismatches: List[str] = Field(default_factory=list)
