"""
Encrypted payload for one record: ciphertext per field, search keywords, and tamper evidence.

    record          field -> EncryptedValue (or a list for multi-value fields)
    hashed_keywords field -> search token digests (searchable fields only)
    record_hashes   field -> HMAC of the field's canonical ciphertext, keyed by the field key
    record_hash     HMAC over all record_hashes, keyed by a digest of all field keys

Fields without a policy or key are skipped; a caller that needs a field protected must check
that it is present in the output.
"""

import hashlib
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from . import cipher, keyed_hash, ope
from .errors import DecryptionError, FieldVaultError, InvalidKeyError
from .field_types import is_boolean_type
from .keyed_hash import compare
from .models import (
    Algorithm,
    EncryptedPayload,
    EncryptedValue,
    FieldCiphertext,
    FieldEncryptionPolicy,
    FieldHash,
    IntegrityReport,
)
from .search_index import SearchIndexEngine

logger = logging.getLogger(__name__)

TOTAL = "total"

Policies = Mapping[str, FieldEncryptionPolicy]
Keys = Mapping[str, str]


def _encrypt_one(field: str, value: Any, policy: FieldEncryptionPolicy, key: str, pack_cipher: bool) -> Optional[FieldCiphertext]:
    if policy.algorithm == Algorithm.CIPHER:
        if isinstance(value, (list, tuple)):
            return [_encrypt_one(field, v, policy, key, pack_cipher) for v in value]
        enc = cipher.encrypt(str(value), key)
        return cipher.to_wire(enc) if pack_cipher else enc
    if policy.algorithm == Algorithm.KEYED_HASH:
        if isinstance(value, (list, tuple, set)):
            return keyed_hash.hash_select_list(list(value), key)
        if isinstance(value, bool) or is_boolean_type(policy.field_type):
            return keyed_hash.hash_checkbox(value, key)
        return keyed_hash.hash_select_one(value, key)
    if policy.algorithm == Algorithm.ORDER_PRESERVING:
        if not ope.can_encrypt(value):
            logger.warning("Field %s: %s value cannot be order-preserving encoded; skipped", field, type(value).__name__)
            return None
        return ope.encode(value, key, policy.value_range)
    return None


def build_encrypted_record(
    raw: Mapping[str, Any],
    policies: Policies,
    keys: Keys,
    pack_cipher: bool = False,
) -> Dict[str, FieldCiphertext]:
    """
    Encrypt every enabled, keyed field with its policy's algorithm. With pack_cipher, cipher
    outputs carry the b64(iv || ciphertext) wire form expected by the persistence layer.
    """
    out: Dict[str, FieldCiphertext] = {}
    for field, value in raw.items():
        policy = policies.get(field)
        if policy is None or not policy.enabled or policy.algorithm == Algorithm.NONE:
            continue
        key = keys.get(field)
        if not key or value is None:
            continue
        enc = _encrypt_one(field, value, policy, key, pack_cipher)
        if enc is not None:
            out[field] = enc
    return out


def build_hashed_keywords(
    raw: Mapping[str, Any],
    policies: Policies,
    keys: Keys,
    engine: Optional[SearchIndexEngine] = None,
) -> Dict[str, List[str]]:
    engine = engine or SearchIndexEngine()
    out: Dict[str, List[str]] = {}
    for field, value in raw.items():
        policy = policies.get(field)
        key = keys.get(field)
        if policy is None or not policy.searchable or not key:
            continue
        tokens = engine.generate_search_tokens(field, value, policy, key).values()
        if tokens:
            out[field] = tokens
    return out


def _as_value(value: Union[EncryptedValue, Mapping[str, Any]]) -> EncryptedValue:
    if isinstance(value, EncryptedValue):
        return value
    return EncryptedValue.model_validate(value)


def _hash_source(value: Union[EncryptedValue, Mapping[str, Any]]) -> str:
    """Canonical ciphertext string: packed iv || ciphertext for cipher values, else data."""
    value = _as_value(value)
    if value.algorithm == Algorithm.CIPHER:
        return cipher.pack_iv_prefixed(value)
    return value.data


def _field_hash(value: Any, key: str) -> FieldHash:
    if isinstance(value, (list, tuple)):
        return [keyed_hash.create_searchable_hash(_hash_source(v), key) for v in value]
    return keyed_hash.create_searchable_hash(_hash_source(value), key)


def build_record_hashes(record: Mapping[str, Any], keys: Keys) -> Dict[str, FieldHash]:
    out: Dict[str, FieldHash] = {}
    for field, value in record.items():
        key = keys.get(field)
        if not key:
            continue
        out[field] = _field_hash(value, key)
    return out


def build_total_record_hash(record_hashes: Mapping[str, FieldHash], keys: Keys) -> str:
    """
    HMAC over "field=hash" pairs in field-name order joined by "|" (list hashes are
    comma-joined), keyed by SHA-256 of the same fields' keys joined by "|".
    """
    fields = sorted(record_hashes)
    canonical = "|".join(
        f"{f}={','.join(h) if isinstance(h, (list, tuple)) else h}"
        for f, h in ((f, record_hashes[f]) for f in fields)
    )
    composite_key = hashlib.sha256("|".join(keys.get(f, "") for f in fields).encode("utf-8")).hexdigest()
    return keyed_hash.create_searchable_hash(canonical, composite_key)


def build_encrypted_payload(
    raw: Mapping[str, Any],
    policies: Policies,
    keys: Keys,
    pack_cipher: bool = False,
    engine: Optional[SearchIndexEngine] = None,
) -> EncryptedPayload:
    record = build_encrypted_record(raw, policies, keys, pack_cipher=pack_cipher)
    record_hashes = build_record_hashes(record, keys)
    return EncryptedPayload(
        record=record,
        hashed_keywords=build_hashed_keywords(raw, policies, keys, engine),
        record_hashes=record_hashes,
        record_hash=build_total_record_hash(record_hashes, keys),
    )


def _hashes_equal(a: Optional[FieldHash], b: Optional[FieldHash]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        if not (isinstance(a, (list, tuple)) and isinstance(b, (list, tuple))) or len(a) != len(b):
            return False
        # evaluate every pair so timing does not reveal the first differing element
        return all([compare(str(x), str(y)) for x, y in zip(a, b)])
    return compare(str(a), str(b))


def verify_record_integrity(
    record: Mapping[str, Any],
    stored_hashes: Mapping[str, FieldHash],
    keys: Keys,
    expected_total_hash: Optional[str] = None,
) -> IntegrityReport:
    """
    Recompute per-field and total hashes and compare them with the stored ones.

    A field is reported when its recomputed hash differs from the stored one (or either is
    missing). "total" is reported when the recomputed total differs from expected_total_hash,
    or, without one, from the total of the stored hashes; with an expected total the stored
    hashes are also checked against it. Never raises.
    """
    keyed = [f for f in set(record) | set(stored_hashes) if keys.get(f)]
    recomputed: Dict[str, FieldHash] = {}
    mismatches: List[str] = []
    for field in sorted(keyed):
        if field in record:
            try:
                recomputed[field] = _field_hash(record[field], keys[field])
            except (FieldVaultError, ValidationError, ValueError, TypeError) as e:
                logger.warning("Field %s: cannot recompute record hash: %s", field, e)
        if not _hashes_equal(recomputed.get(field), stored_hashes.get(field)):
            mismatches.append(field)

    stored = {f: h for f, h in stored_hashes.items() if keys.get(f)}
    try:
        total = build_total_record_hash(recomputed, keys)
        stored_total = build_total_record_hash(stored, keys)
        reference = expected_total_hash if expected_total_hash is not None else stored_total
        total_ok = compare(total, reference)
        if expected_total_hash is not None:
            total_ok = compare(stored_total, expected_total_hash) and total_ok
    except (FieldVaultError, ValueError, TypeError) as e:
        logger.warning("Cannot recompute total record hash: %s", e)
        total_ok = False
    if not total_ok:
        mismatches.append(TOTAL)
    return IntegrityReport(ok=not mismatches, mismatches=mismatches)


def _resolve_options(values: Sequence[EncryptedValue], options: Sequence[Any], key: str, boolean: bool = False) -> List[Any]:
    canonical = keyed_hash.canonical_checkbox if boolean else keyed_hash.canonical_option
    lookup = {keyed_hash.hash_value(canonical(o), key).data: o for o in options}
    return [lookup.get(v.data) for v in values]


def decrypt_record(
    record: Mapping[str, Any],
    policies: Policies,
    keys: Keys,
    options: Optional[Mapping[str, Sequence[Any]]] = None,
) -> Dict[str, Any]:
    """
    Plaintext view of an encrypted record.

    - Cipher fields are decrypted; a field that fails is logged and returned as "".
    - Keyed-hash fields are matched against options[field] (the field's option list) and
      resolved to the option values, None where no option matches; without options the
      digest is returned.
    - OPE fields are not invertible and are returned as their tokens.
    """
    options = options or {}
    out: Dict[str, Any] = {}
    for field, raw_value in record.items():
        policy = policies.get(field)
        key = keys.get(field)
        if policy is None or not key:
            continue
        is_list = isinstance(raw_value, (list, tuple))
        try:
            values = [_as_value(v) for v in (raw_value if is_list else [raw_value])]
        except ValidationError as e:
            logger.warning("Field %s: malformed encrypted value: %s", field, e)
            out[field] = [] if is_list else ""
            continue

        if policy.algorithm == Algorithm.CIPHER:
            plain = []
            for v in values:
                try:
                    plain.append(cipher.decrypt(v, key))
                except (DecryptionError, InvalidKeyError) as e:
                    logger.warning("Failed to decrypt field %s: %s", field, e)
                    plain.append("")
            out[field] = plain if is_list else plain[0]
        elif policy.algorithm == Algorithm.KEYED_HASH:
            if field in options:
                resolved = _resolve_options(values, options[field], key, is_boolean_type(policy.field_type))
            else:
                resolved = [v.data for v in values]
            out[field] = resolved if is_list else resolved[0]
        elif policy.algorithm == Algorithm.ORDER_PRESERVING:
            tokens = [v.data for v in values]
            out[field] = tokens if is_list else tokens[0]
    return out
