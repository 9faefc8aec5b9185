"""
Inverted index over keyed search tokens: field -> token -> record ids.

The index only ever holds HMAC digests; queries are turned into the same digests with the
field key, so matching never needs plaintext.

Tokens per field algorithm:
- AES-256-CBC text: EXACT (case-preserving and case-folded), PREFIX ladder, WORD (>= 3 chars),
  PHONETIC (Soundex per word, used by fuzzy queries).
- OPE numbers/dates/times: EXACT (digest of the OPE token) and RANGE (digest of the
  tolerance window the value falls in, used by fuzzy queries).
- HMAC-SHA256 selections: EXACT per canonical option.

Removal scans the whole field index, which is fine for bounded client-side indexes only.
"""

import logging
import math
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Set

from pydantic import BaseModel, Field

from . import config, keyed_hash, ope
from .field_types import is_boolean_type
from .models import Algorithm, FieldEncryptionPolicy
from .phonetic import phonetic_fold

logger = logging.getLogger(__name__)


class TokenType(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    WORD = "word"
    RANGE = "range"
    PHONETIC = "phonetic"


TOKEN_WEIGHTS = {
    TokenType.EXACT: 1.0,
    TokenType.PREFIX: 0.8,
    TokenType.RANGE: 0.7,
    TokenType.WORD: 0.6,
    TokenType.PHONETIC: 0.5,
}


class SearchTokenData(NamedTuple):
    type: TokenType
    token: str
    weight: float


class SearchTokens(NamedTuple):
    field: str
    algorithm: Algorithm
    tokens: List[SearchTokenData]

    def values(self) -> List[str]:
        """Token digests in generation order, without duplicates."""
        return list(dict.fromkeys(t.token for t in self.tokens))


class FieldMatch(BaseModel):
    field: str
    match_types: List[TokenType] = Field(default_factory=list)
    hits: int = 0


class SearchResult(BaseModel):
    record_id: str
    score: int = 0
    relevance: float = 0.0
    matches: List[FieldMatch] = Field(default_factory=list)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _ope_value(value: Any) -> Any:
    """Numeric strings become floats; other encodable values pass through; None otherwise."""
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            pass
        else:
            if math.isfinite(number):
                return number
    return value if ope.can_encrypt(value) else None


def _words(text: str) -> List[str]:
    return [w for w in keyed_hash.tokenize(text) if len(w) >= config.SEARCH_MIN_WORD]


def _canonical_selection(value: Any, policy: FieldEncryptionPolicy) -> str:
    if isinstance(value, bool) or is_boolean_type(policy.field_type):
        return keyed_hash.canonical_checkbox(value)
    return keyed_hash.canonical_option(value)


def _selection_query(term: str, policy: FieldEncryptionPolicy) -> str:
    """Only recognised yes/no words are folded for boolean fields, so free text never matches "false"."""
    if is_boolean_type(policy.field_type):
        word = term.strip().lower()
        if word in keyed_hash.TRUE_VALUES or word in keyed_hash.FALSE_VALUES:
            return keyed_hash.canonical_checkbox(word)
    return keyed_hash.canonical_option(term)


class SearchIndexEngine:
    def __init__(self, min_prefix: Optional[int] = None, tolerance: Optional[float] = None):
        self._min_prefix = min_prefix or config.SEARCH_MIN_PREFIX
        self._tolerance = tolerance or config.OPE_TOLERANCE
        self._indexes: Dict[str, Dict[str, Set[str]]] = {}
        self._lock = threading.RLock()

    # --- token generation ----------------------------------------------------

    def generate_search_tokens(self, field: str, value: Any, policy: FieldEncryptionPolicy, key: str) -> SearchTokens:
        """Tokens for one field value. Disabled, non-searchable and empty values give none."""
        tokens: List[SearchTokenData] = []
        if policy.enabled and policy.searchable and not _is_empty(value):
            if policy.algorithm == Algorithm.CIPHER:
                tokens = self._text_tokens(str(value), key)
            elif policy.algorithm == Algorithm.ORDER_PRESERVING:
                tokens = self._ope_tokens(field, value, policy, key)
            elif policy.algorithm == Algorithm.KEYED_HASH:
                tokens = self._selection_tokens(value, policy, key)
        return SearchTokens(field=field, algorithm=policy.algorithm, tokens=tokens)

    def _token(self, kind: TokenType, token: str) -> SearchTokenData:
        return SearchTokenData(type=kind, token=token, weight=TOKEN_WEIGHTS[kind])

    def _exact_tokens(self, value: str, key: str) -> List[SearchTokenData]:
        return [
            self._token(TokenType.EXACT, keyed_hash.create_searchable_hash(value, key)),
            self._token(TokenType.EXACT, keyed_hash.folded_token(value, key)),
        ]

    def _text_tokens(self, value: str, key: str) -> List[SearchTokenData]:
        out = self._exact_tokens(value, key)
        out += [self._token(TokenType.PREFIX, keyed_hash.prefix_token(p, key))
                for p in keyed_hash.prefixes(value, self._min_prefix)]
        out += [self._token(TokenType.WORD, keyed_hash.word_token(w, key)) for w in dict.fromkeys(_words(value))]
        out += [self._token(TokenType.PHONETIC, keyed_hash.phonetic_token(c, key)) for c in phonetic_fold(value)]
        return out

    def _ope_tokens(self, field: str, value: Any, policy: FieldEncryptionPolicy, key: str) -> List[SearchTokenData]:
        v = _ope_value(value)
        if v is None:
            logger.warning("Field %s: value of type %s cannot be order-preserving indexed", field, type(value).__name__)
            return []
        return [
            self._token(TokenType.EXACT, self._ope_exact(v, policy, key)),
            self._token(TokenType.RANGE, self._ope_window(v, policy, key)),
        ]

    def _ope_exact(self, value: Any, policy: FieldEncryptionPolicy, key: str) -> str:
        return keyed_hash.create_searchable_hash(ope.encode(value, key, policy.value_range).data, key)

    def _ope_window(self, value: Any, policy: FieldEncryptionPolicy, key: str) -> str:
        window = ope.generate_search_tokens(value, key, policy.value_range, self._tolerance).range
        return keyed_hash.range_token(f"{window.min.data}-{window.max.data}", key)

    def _selection_tokens(self, value: Any, policy: FieldEncryptionPolicy, key: str) -> List[SearchTokenData]:
        if isinstance(value, (list, tuple, set)):
            options = keyed_hash.canonical_option_list(value)
        else:
            options = [_canonical_selection(value, policy)]
        out: List[SearchTokenData] = []
        for option in options:
            out += self._exact_tokens(option, key)
        return out

    # --- index maintenance ---------------------------------------------------

    def add_to_index(self, record_id: str, field: str, value: Any, policy: FieldEncryptionPolicy, key: str) -> None:
        tokens = self.generate_search_tokens(field, value, policy, key)
        if not tokens.tokens:
            return
        with self._lock:
            field_index = self._indexes.setdefault(field, {})
            for token in tokens.values():
                field_index.setdefault(token, set()).add(record_id)

    def remove_from_index(self, record_id: str, field: Optional[str] = None) -> None:
        """Drop record_id from one field, or from every field when field is None."""
        with self._lock:
            fields = [field] if field is not None else list(self._indexes)
            for name in fields:
                field_index = self._indexes.get(name)
                if not field_index:
                    continue
                for token in list(field_index):
                    record_ids = field_index[token]
                    record_ids.discard(record_id)
                    if not record_ids:
                        del field_index[token]

    def update_index(self, record_id: str, field: str, value: Any, policy: FieldEncryptionPolicy, key: str) -> None:
        with self._lock:
            self.remove_from_index(record_id, field)
            self.add_to_index(record_id, field, value, policy, key)

    # --- search --------------------------------------------------------------

    def search(
        self,
        query: str,
        policies: Mapping[str, FieldEncryptionPolicy],
        keys: Mapping[str, str],
        fuzzy: bool = False,
        case_sensitive: bool = False,
        include_partial: bool = True,
    ) -> List[SearchResult]:
        """
        Match query terms against every searchable, keyed field.

        - include_partial: each whitespace-separated term is matched on its own, by exact
          value, prefix or word; otherwise only the whole query is matched exactly.
        - case_sensitive: exact matches keep the query's case; prefix and word matches are
          always case-folded.
        - fuzzy: also match Soundex codes of text terms and the tolerance window of
          numeric/date terms.

        Score is the number of (field, term) pairs a record matched; results are sorted by
        score, then summed token weight, then record id.
        """
        raw_terms = query.split() if include_partial else [query.strip()]
        raw_terms = [t for t in raw_terms if t]
        if not raw_terms:
            return []

        results: Dict[str, SearchResult] = {}
        with self._lock:
            for field, field_index in self._indexes.items():
                policy = policies.get(field)
                key = keys.get(field)
                if policy is None or not policy.enabled or not policy.searchable or not key:
                    continue
                for term in raw_terms:
                    lookups = self._query_tokens(term, policy, key, fuzzy, case_sensitive, include_partial)
                    self._collect(field, field_index, lookups, results)

        return sorted(results.values(), key=lambda r: (-r.score, -r.relevance, r.record_id))

    def _query_tokens(
        self,
        term: str,
        policy: FieldEncryptionPolicy,
        key: str,
        fuzzy: bool,
        case_sensitive: bool,
        include_partial: bool,
    ) -> List[SearchTokenData]:
        if policy.algorithm == Algorithm.CIPHER:
            lookups = [self._exact_query(term, key, case_sensitive)]
            if include_partial:
                if len(term) >= self._min_prefix:
                    lookups.append(self._token(TokenType.PREFIX, keyed_hash.prefix_token(term.lower(), key)))
                lookups += [self._token(TokenType.WORD, keyed_hash.word_token(w, key)) for w in _words(term)]
            if fuzzy:
                lookups += [self._token(TokenType.PHONETIC, keyed_hash.phonetic_token(c, key))
                            for c in phonetic_fold(term)]
            return lookups
        if policy.algorithm == Algorithm.ORDER_PRESERVING:
            v = _ope_value(term)
            if v is None:
                return []
            lookups = [self._token(TokenType.EXACT, self._ope_exact(v, policy, key))]
            if fuzzy:
                lookups.append(self._token(TokenType.RANGE, self._ope_window(v, policy, key)))
            return lookups
        if policy.algorithm == Algorithm.KEYED_HASH:
            return [self._exact_query(_selection_query(term, policy), key, case_sensitive)]
        return []

    def _exact_query(self, term: str, key: str, case_sensitive: bool) -> SearchTokenData:
        if case_sensitive:
            return self._token(TokenType.EXACT, keyed_hash.create_searchable_hash(term, key))
        return self._token(TokenType.EXACT, keyed_hash.folded_token(term, key))

    @staticmethod
    def _collect(
        field: str,
        field_index: Dict[str, Set[str]],
        lookups: Iterable[SearchTokenData],
        results: Dict[str, SearchResult],
    ) -> None:
        """Credit each record at most once per term, with the best matching token type."""
        best: Dict[str, SearchTokenData] = {}
        for lookup in lookups:
            for record_id in field_index.get(lookup.token, ()):
                if record_id not in best or lookup.weight > best[record_id].weight:
                    best[record_id] = lookup
        for record_id, lookup in best.items():
            result = results.setdefault(record_id, SearchResult(record_id=record_id))
            result.score += 1
            result.relevance += lookup.weight
            match = next((m for m in result.matches if m.field == field), None)
            if match is None:
                match = FieldMatch(field=field)
                result.matches.append(match)
            match.hits += 1
            if lookup.type not in match.match_types:
                match.match_types.append(lookup.type)

    # --- stats & persistence -------------------------------------------------

    def get_search_stats(self) -> Dict[str, Any]:
        with self._lock:
            field_stats = []
            for field, field_index in self._indexes.items():
                records: Set[str] = set()
                for record_ids in field_index.values():
                    records.update(record_ids)
                field_stats.append({"field": field, "token_count": len(field_index), "record_count": len(records)})
        return {
            "total_tokens": sum(s["token_count"] for s in field_stats),
            "total_fields": len(field_stats),
            "field_stats": field_stats,
        }

    def clear_index(self, field: Optional[str] = None) -> None:
        with self._lock:
            if field is None:
                self._indexes.clear()
            else:
                self._indexes.pop(field, None)

    def export_index(self) -> Dict[str, Dict[str, List[str]]]:
        """JSON-ready copy: field -> token -> sorted record ids."""
        with self._lock:
            return {
                field: {token: sorted(ids) for token, ids in field_index.items()}
                for field, field_index in self._indexes.items()
            }

    def load_index(self, data: Mapping[str, Mapping[str, Iterable[str]]], replace: bool = True) -> None:
        """Load an exported index. With replace=False, merge into the current one."""
        with self._lock:
            if replace:
                self._indexes.clear()
            for field, tokens in data.items():
                field_index = self._indexes.setdefault(field, {})
                for token, ids in tokens.items():
                    field_index.setdefault(token, set()).update(ids)

    def save(self, storage, table_id: str) -> None:
        """Persist the index as a table's search indexes (StorageManager)."""
        storage.store_search_indexes(table_id, self.export_index())

    def restore(self, storage, table_id: str) -> bool:
        data = storage.get_search_indexes(table_id)
        if data is None:
            return False
        self.load_index(data)
        return True

