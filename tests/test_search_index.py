"""
Search index tests: token families per algorithm, add/remove/update, query options,
scoring, stats and persistence.
"""

import pytest

import sys
from pathlib import Path
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fieldvault.backends import MemoryBackend
from fieldvault.cipher import generate_key
from fieldvault.field_types import default_policy
from fieldvault.models import Algorithm, FieldEncryptionPolicy
from fieldvault.search_index import SearchIndexEngine, TokenType
from fieldvault.secure_store import SecureStore
from fieldvault.storage_manager import StorageManager

TEXT = FieldEncryptionPolicy(algorithm=Algorithm.CIPHER, searchable=True)
AGE = FieldEncryptionPolicy(algorithm=Algorithm.ORDER_PRESERVING, searchable=True, order_preserving=True,
                            value_range=(0, 120))
STATUS = FieldEncryptionPolicy(algorithm=Algorithm.KEYED_HASH, searchable=True)
POLICIES = {"name": TEXT, "age": AGE, "status": STATUS}


@pytest.fixture
def keys():
    return {"name": generate_key(), "age": generate_key(), "status": generate_key()}


@pytest.fixture
def engine(keys):
    e = SearchIndexEngine()
    rows = {
        "r1": {"name": "Alice Smith", "age": 30, "status": "Open"},
        "r2": {"name": "Bob Smyth", "age": 31, "status": "Closed"},
        "r3": {"name": "Alicia Keys", "age": 75, "status": "Open"},
    }
    for record_id, row in rows.items():
        for field, value in row.items():
            e.add_to_index(record_id, field, value, POLICIES[field], keys[field])
    return e


def _ids(results):
    return [r.record_id for r in results]


def test_text_token_families(keys):
    tokens = SearchIndexEngine(min_prefix=2).generate_search_tokens("name", "Alice Smith", TEXT, keys["name"])
    types = {t.type for t in tokens.tokens}
    assert types == {TokenType.EXACT, TokenType.PREFIX, TokenType.WORD, TokenType.PHONETIC}
    weights = {t.type: t.weight for t in tokens.tokens}
    assert weights[TokenType.EXACT] == 1.0
    assert weights[TokenType.PREFIX] == 0.8
    assert weights[TokenType.WORD] == 0.6
    # "alice smith" -> prefixes of length 2..11
    assert sum(1 for t in tokens.tokens if t.type == TokenType.PREFIX) == 10
    assert tokens.algorithm == Algorithm.CIPHER


def test_ope_and_selection_tokens(keys):
    e = SearchIndexEngine()
    ope_tokens = e.generate_search_tokens("age", 30, AGE, keys["age"])
    assert [t.type for t in ope_tokens.tokens] == [TokenType.EXACT, TokenType.RANGE]
    sel = e.generate_search_tokens("status", "Open", STATUS, keys["status"])
    assert {t.type for t in sel.tokens} == {TokenType.EXACT}
    multi = e.generate_search_tokens("status", ["b", "a"], STATUS, keys["status"])
    # case-preserving and case-folded token per option
    assert len(multi.values()) == 4


def test_no_tokens_for_unsearchable_or_empty(keys):
    e = SearchIndexEngine()
    hidden = FieldEncryptionPolicy(algorithm=Algorithm.CIPHER, searchable=False)
    assert e.generate_search_tokens("name", "Alice", hidden, keys["name"]).tokens == []
    assert e.generate_search_tokens("name", "", TEXT, keys["name"]).tokens == []
    assert e.generate_search_tokens("name", None, TEXT, keys["name"]).tokens == []
    assert e.generate_search_tokens("age", "not a number", AGE, keys["age"]).tokens == []


def test_tokens_are_deterministic(keys):
    e = SearchIndexEngine()
    a = e.generate_search_tokens("name", "Alice", TEXT, keys["name"])
    b = e.generate_search_tokens("name", "Alice", TEXT, keys["name"])
    assert a == b


def test_exact_case_insensitive_search(engine, keys):
    assert _ids(engine.search("alice smith", POLICIES, keys, include_partial=False)) == ["r1"]
    assert _ids(engine.search("ALICE SMITH", POLICIES, keys, include_partial=False)) == ["r1"]


def test_case_sensitive_exact_search(engine, keys):
    assert _ids(engine.search("Alice Smith", POLICIES, keys, case_sensitive=True, include_partial=False)) == ["r1"]
    assert engine.search("alice smith", POLICIES, keys, case_sensitive=True, include_partial=False) == []


def test_partial_prefix_and_word_search(engine, keys):
    # "ali" is a prefix of r1 and r3; "smith" is a word of r1
    assert sorted(_ids(engine.search("ali", POLICIES, keys))) == ["r1", "r3"]
    results = engine.search("ali smith", POLICIES, keys)
    assert results[0].record_id == "r1"
    assert results[0].score == 2


def test_partial_disabled_requires_whole_value(engine, keys):
    assert engine.search("ali", POLICIES, keys, include_partial=False) == []


def test_fuzzy_phonetic_search(engine, keys):
    assert engine.search("smithe", POLICIES, keys) == []
    assert sorted(_ids(engine.search("smithe", POLICIES, keys, fuzzy=True))) == ["r1", "r2"]


def test_numeric_exact_and_fuzzy_search(engine, keys):
    assert _ids(engine.search("30", POLICIES, keys)) == ["r1"]
    # 30 and 31 share the 24..36 tolerance window of the 0..120 range
    assert sorted(_ids(engine.search("33", POLICIES, keys, fuzzy=True))) == ["r1", "r2"]
    assert engine.search("33", POLICIES, keys) == []


def test_selection_search(engine, keys):
    assert sorted(_ids(engine.search("open", POLICIES, keys))) == ["r1", "r3"]
    assert _ids(engine.search("Closed", POLICIES, keys, case_sensitive=True)) == ["r2"]


def test_results_sorted_by_score_and_merged_across_fields(engine, keys):
    results = engine.search("alice open", POLICIES, keys)
    assert results[0].record_id == "r1"
    assert results[0].score == 2
    assert {m.field for m in results[0].matches} == {"name", "status"}
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)


def test_fields_without_policy_or_key_are_ignored(engine, keys):
    assert engine.search("open", {"name": TEXT}, keys) == []
    assert engine.search("open", POLICIES, {"name": keys["name"]}) == []


def test_empty_query(engine, keys):
    assert engine.search("   ", POLICIES, keys) == []


def test_remove_and_update(engine, keys):
    engine.remove_from_index("r1", "name")
    assert _ids(engine.search("alice smith", POLICIES, keys, include_partial=False)) == []
    assert "r1" in _ids(engine.search("open", POLICIES, keys))
    engine.remove_from_index("r1")
    assert "r1" not in _ids(engine.search("open", POLICIES, keys))
    engine.update_index("r2", "name", "Carol Jones", TEXT, keys["name"])
    assert _ids(engine.search("carol", POLICIES, keys)) == ["r2"]
    assert engine.search("bob", POLICIES, keys) == []


def test_stats_and_clear(engine):
    stats = engine.get_search_stats()
    assert stats["total_fields"] == 3
    by_field = {s["field"]: s for s in stats["field_stats"]}
    assert by_field["name"]["record_count"] == 3
    assert by_field["status"]["record_count"] == 3
    engine.clear_index("name")
    assert engine.get_search_stats()["total_fields"] == 2
    engine.clear_index()
    assert engine.get_search_stats()["total_tokens"] == 0


def test_export_load_and_storage_roundtrip(engine, keys):
    exported = engine.export_index()
    copy = SearchIndexEngine()
    copy.load_index(exported)
    assert copy.export_index() == exported

    storage = StorageManager(SecureStore(MemoryBackend(), prefix="si_", iterations=1000))
    storage.initialize("pw")
    engine.save(storage, "t1")
    restored = SearchIndexEngine()
    assert restored.restore(storage, "t1")
    assert _ids(restored.search("alice smith", POLICIES, keys, include_partial=False)) == ["r1"]
    assert not restored.restore(storage, "other")


def test_boolean_field_search(keys):
    done = default_policy("boolean")
    e = SearchIndexEngine()
    e.add_to_index("r1", "done", "yes", done, keys["status"])
    e.add_to_index("r2", "done", False, done, keys["status"])
    policies = {"done": done}
    k = {"done": keys["status"]}
    assert _ids(e.search("true", policies, k)) == ["r1"]
    assert _ids(e.search("no", policies, k)) == ["r2"]
    assert e.search("alice", policies, k) == []
