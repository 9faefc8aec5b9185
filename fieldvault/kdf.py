"""
Key derivation for the field-encryption key hierarchy.

- Password -> 256-bit key via PBKDF2-HMAC-SHA256 (salt is random, not secret; store it).
- Master key + context -> sub-key via HKDF-SHA256 (RFC 5869); the context string is the
  HKDF info, so distinct contexts give independent keys and the same input always gives
  the same key.
- All keys and salts cross the API as hex strings.
"""

import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional

from Crypto.Random import get_random_bytes

from . import config

KEY_SIZE = 32
SALT_SIZE = 16
HKDF_HASH = hashlib.sha256

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_CONTEXT_RE = re.compile(r"^[A-Za-z0-9_:-]{1,256}$")
_REPEAT_RUN_RE = re.compile(r"(.)\1{4,}")

HIERARCHY_CONTEXTS = (
    "workspace_key",
    "table_key_prefix",
    "field_key_prefix",
    "search_key_prefix",
    "audit_key",
)
PERIODS = ("hour", "day", "week", "month")


class DerivedKey(NamedTuple):
    """PBKDF2 result. Salt and iterations are needed to re-derive; store them with the data."""
    key: str
    salt: str
    iterations: int
    key_length: int


class KeyStrength(NamedTuple):
    is_valid: bool
    score: int
    suggestions: List[str]


class KeyHierarchy(NamedTuple):
    workspace_key: str
    table_key_prefix: str
    field_key_prefix: str
    search_key_prefix: str
    audit_key: str


def key_bytes(value: str) -> bytes:
    """Hex strings decode to raw bytes; anything else is taken as UTF-8 text."""
    if len(value) % 2 == 0 and _HEX_RE.match(value):
        return bytes.fromhex(value)
    return value.encode("utf-8")


def _hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """HKDF-Extract: PRK = HMAC-Hash(salt, IKM)."""
    return hmac.new(salt, ikm, HKDF_HASH).digest()


def _hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    digest_len = HKDF_HASH().digest_size
    n = (length + digest_len - 1) // digest_len
    if n > 255:
        raise ValueError("HKDF-Expand length too large")
    out = b""
    t = b""
    for i in range(1, n + 1):
        t = hmac.new(prk, t + info + bytes([i]), HKDF_HASH).digest()
        out += t
    return out[:length]


def generate_salt(length: int = SALT_SIZE) -> str:
    return get_random_bytes(length).hex()


def generate_random_key(length: int = KEY_SIZE) -> str:
    return get_random_bytes(length).hex()


def derive_key_from_password(
    password: str,
    salt: Optional[str] = None,
    iterations: Optional[int] = None,
    key_length: int = KEY_SIZE,
) -> DerivedKey:
    """
    PBKDF2-HMAC-SHA256. Generates a salt when none is given; the caller must keep it
    to derive the same key again.
    """
    if iterations is None:
        iterations = config.PBKDF2_ITERATIONS
    if iterations < 1:
        raise ValueError("PBKDF2 iterations must be positive")
    if salt is None:
        salt = generate_salt()
    raw = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), key_bytes(salt), iterations, dklen=key_length
    )
    return DerivedKey(key=raw.hex(), salt=salt, iterations=iterations, key_length=key_length)


def validate_context(context: str) -> bool:
    return isinstance(context, str) and bool(_CONTEXT_RE.match(context))


def derive_key(master_key: str, context: str, length: int = KEY_SIZE) -> str:
    """HKDF-SHA256(master_key, info=context). Returns `length` bytes as hex."""
    if not master_key:
        raise ValueError("Master key required")
    if not validate_context(context):
        raise ValueError(f"Invalid derivation context: {context!r}")
    prk = _hkdf_extract(b"", key_bytes(master_key))
    return _hkdf_expand(prk, context.encode("utf-8"), length).hex()


def derive_multiple_keys(master_key: str, contexts: List[str]) -> Dict[str, str]:
    return {ctx: derive_key(master_key, ctx) for ctx in contexts}


def derive_key_hierarchy(master_key: str, workspace_id: str) -> KeyHierarchy:
    """Five purpose-scoped keys for a workspace; each context is prefixed by the workspace id."""
    keys = derive_multiple_keys(master_key, [f"{workspace_id}:{c}" for c in HIERARCHY_CONTEXTS])
    return KeyHierarchy(*(keys[f"{workspace_id}:{c}"] for c in HIERARCHY_CONTEXTS))


def _period_key(ts: datetime, period: str) -> str:
    if period == "hour":
        return ts.strftime("%Y-%m-%d-%H")
    if period == "day":
        return ts.strftime("%Y-%m-%d")
    if period == "week":
        return ts.strftime("%G-W%V")  # ISO week
    if period == "month":
        return ts.strftime("%Y-%m")
    raise ValueError(f"Unknown rotation period {period!r}; expected one of {PERIODS}")


def derive_time_based_key(
    master_key: str,
    context: str,
    timestamp: Optional[datetime] = None,
    period: str = "day",
) -> str:
    """Key scoped to a rotation period: every timestamp in the same period yields the same key."""
    ts = timestamp or datetime.now(timezone.utc)
    return derive_key(master_key, f"{context}:{_period_key(ts, period)}")


def validate_key_strength(key: str) -> KeyStrength:
    suggestions: List[str] = []
    score = 0
    if len(key) >= 64:
        score += 25
    else:
        suggestions.append("Key should be at least 32 bytes (64 hex characters)")
    if len(set(key.lower())) >= 10:
        score += 25
    else:
        suggestions.append("Key should have high entropy (many unique characters)")
    if key and _HEX_RE.match(key):
        score += 25
    else:
        suggestions.append("Key should be in hexadecimal format")
    if not _REPEAT_RUN_RE.search(key):
        score += 25
    else:
        suggestions.append("Key should not have repeating patterns")
    return KeyStrength(is_valid=score >= 75, score=score, suggestions=suggestions)


def create_derivation_info(master_key_id: str, context: str, timestamp: Optional[datetime] = None) -> dict:
    """Non-secret record of how a key was derived (for audit trails)."""
    return {
        "master_key_id": master_key_id,
        "context": context,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        "algorithm": "HKDF-SHA256",
        "version": "1.0",
    }
