"""
Keyed hashing (HMAC-SHA256) for deterministic tokens.

- Same (value, key) -> same digest; used for categorical fields, search tokens and
  per-field tamper evidence.
- Canonicalization happens before hashing so equal logical values hash equally
  (True / "yes" / "1" are the same checkbox; list order does not matter).
- Case-folded, prefix, word and phonetic tokens are domain-separated from exact tokens so
  an index can tell a whole-value match from a partial or case-insensitive one.
"""

import hashlib
import hmac
import re
from typing import Iterable, List, Optional, Sequence

from . import config, kdf
from .cipher import generate_key, require_key
from .errors import DecryptionError
from .models import Algorithm, EncryptedValue
from .phonetic import phonetic_fold, strip_accents

ALGORITHM = Algorithm.KEYED_HASH

PREFIX_LABEL = "prefix:"
WORD_LABEL = "word:"
PHONETIC_LABEL = "phonetic:"
RANGE_LABEL = "range:"
FOLD_LABEL = "fold:"

TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on", "checked"})
FALSE_VALUES = frozenset({"false", "0", "no", "n", "off", "unchecked"})
_WORD_SPLIT_RE = re.compile(r"\W+")


def _hmac_hex(data: str, raw_key: bytes) -> str:
    return hmac.new(raw_key, data.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_value(data: str, key: Optional[str] = None) -> EncryptedValue:
    """HMAC-SHA256 digest of data. A generated key is returned as `generated_key`."""
    generated = None
    if key is None:
        key = generated = generate_key()
    return EncryptedValue(
        data=_hmac_hex(str(data), require_key(key)),
        algorithm=ALGORITHM,
        generated_key=generated,
    )


def verify(original: str, value: EncryptedValue, key: str) -> bool:
    """Recompute the digest of original and compare in constant time."""
    if value.algorithm != ALGORITHM:
        raise DecryptionError(f"Expected {ALGORITHM.value} value, got {value.algorithm.value}")
    expected = _hmac_hex(str(original), require_key(key))
    return compare(expected, value.data)


def compare(a: str, b: str) -> bool:
    """
    Constant-time equality. Both inputs are digested to 32 bytes first, so timing does
    not depend on where they differ or on their lengths.
    """
    da = hashlib.sha256(a.encode("utf-8")).digest()
    db = hashlib.sha256(b.encode("utf-8")).digest()
    return hmac.compare_digest(da, db)


# --- canonical forms -------------------------------------------------------

def canonical_checkbox(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "true" if str(value).strip().lower() in TRUE_VALUES else "false"


def canonical_option(value: object) -> str:
    if isinstance(value, bool):
        return canonical_checkbox(value)
    return str(value).strip()


def canonical_option_list(values: Iterable[object]) -> List[str]:
    """Stripped, de-duplicated, sorted: the same selection always hashes the same."""
    return sorted({canonical_option(v) for v in values if canonical_option(v)})


def hash_checkbox(value: object, key: str) -> EncryptedValue:
    return hash_value(canonical_checkbox(value), key)


def hash_select_one(value: object, key: str) -> EncryptedValue:
    return hash_value(canonical_option(value), key)


def hash_select_list(values: Sequence[object], key: str) -> List[EncryptedValue]:
    return [hash_value(v, key) for v in canonical_option_list(values)]


def hash_checkbox_list(values: Sequence[object], key: str) -> List[EncryptedValue]:
    return hash_select_list(values, key)


# --- search tokens -----------------------------------------------------------

def create_searchable_hash(value: str, key: str) -> str:
    """Canonical exact-match token: HMAC of the trimmed value, case preserved."""
    return _hmac_hex(str(value).strip(), require_key(key))


def create_search_hashes(
    value: str,
    key: str,
    case_sensitive: bool = False,
    include_exact: bool = True,
    include_lowercase: bool = True,
    include_uppercase: bool = False,
) -> List[str]:
    """Exact token plus case variants. case_sensitive=True returns the exact token only."""
    value = str(value).strip()
    variants: List[str] = []
    if include_exact or case_sensitive:
        variants.append(value)
    if not case_sensitive:
        if include_lowercase:
            variants.append(value.lower())
        if include_uppercase:
            variants.append(value.upper())
    return [create_searchable_hash(v, key) for v in dict.fromkeys(variants)]


def folded_token(value: str, key: str) -> str:
    """Case-insensitive exact-match token, kept apart from the case-preserving one."""
    return create_searchable_hash(FOLD_LABEL + str(value).strip().lower(), key)


def prefix_token(prefix: str, key: str) -> str:
    return create_searchable_hash(PREFIX_LABEL + prefix, key)


def word_token(word: str, key: str) -> str:
    return create_searchable_hash(WORD_LABEL + word, key)


def phonetic_token(code: str, key: str) -> str:
    return create_searchable_hash(PHONETIC_LABEL + code, key)


def range_token(window: str, key: str) -> str:
    return create_searchable_hash(RANGE_LABEL + window, key)


def prefixes(value: str, min_length: Optional[int] = None) -> List[str]:
    """Lowercased prefixes from min_length up to and including the full value."""
    if min_length is None:
        min_length = config.SEARCH_MIN_PREFIX
    normalized = str(value).strip().lower()
    return [normalized[:i] for i in range(max(1, min_length), len(normalized) + 1)]


def generate_search_tokens(
    value: str,
    key: str,
    include_partial: bool = True,
    include_phonetic: bool = False,
    min_length: Optional[int] = None,
) -> List[str]:
    """Exact token, then an incremental prefix ladder, then one phonetic token per word."""
    tokens = [create_searchable_hash(value, key)]
    if include_partial:
        tokens.extend(prefix_token(p, key) for p in prefixes(value, min_length))
    if include_phonetic:
        tokens.extend(phonetic_token(c, key) for c in phonetic_fold(str(value)))
    return list(dict.fromkeys(tokens))


def tokenize(text: str) -> List[str]:
    """Accent-insensitive word split used for full-text keywords."""
    return [w for w in _WORD_SPLIT_RE.split(strip_accents(str(text)).lower()) if w]


def hash_keywords(text: str, key: str) -> List[str]:
    """One HMAC token per word of text (accent and case folded)."""
    raw_key = require_key(key)
    return [_hmac_hex(w, raw_key) for w in tokenize(text)]


def derive_key_from_password(password: str, salt: Optional[str] = None, iterations: int = 100_000) -> kdf.DerivedKey:
    return kdf.derive_key_from_password(password, salt=salt, iterations=iterations)
