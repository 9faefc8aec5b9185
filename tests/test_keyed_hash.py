"""
Keyed hash tests: determinism, canonicalization, search token families, constant-time compare.
"""

import hashlib
import hmac

import pytest

import sys
from pathlib import Path
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fieldvault import keyed_hash
from fieldvault.cipher import generate_key
from fieldvault.errors import DecryptionError, InvalidKeyError
from fieldvault.models import Algorithm


@pytest.fixture
def key():
    return generate_key()


def test_hash_is_deterministic(key):
    a = keyed_hash.hash_value("hello", key)
    b = keyed_hash.hash_value("hello", key)
    assert a.data == b.data
    assert a.algorithm == Algorithm.KEYED_HASH
    assert len(a.data) == 64


def test_hash_differs_by_key_and_value(key):
    assert keyed_hash.hash_value("hello", key).data != keyed_hash.hash_value("hello", generate_key()).data
    assert keyed_hash.hash_value("hello", key).data != keyed_hash.hash_value("hellp", key).data


def test_generated_key_when_omitted():
    h = keyed_hash.hash_value("x")
    assert h.generated_key is not None
    assert keyed_hash.verify("x", h, h.generated_key)


def test_verify(key):
    h = keyed_hash.hash_value("value", key)
    assert keyed_hash.verify("value", h, key)
    assert not keyed_hash.verify("other", h, key)
    with pytest.raises(DecryptionError):
        keyed_hash.verify("value", h.model_copy(update={"algorithm": Algorithm.CIPHER}), key)


def test_invalid_key_rejected():
    with pytest.raises(InvalidKeyError):
        keyed_hash.hash_value("x", "short")


def test_checkbox_canonicalization(key):
    t = keyed_hash.hash_checkbox(True, key).data
    assert keyed_hash.hash_checkbox("yes", key).data == t
    assert keyed_hash.hash_checkbox("1", key).data == t
    assert keyed_hash.hash_checkbox(" TRUE ", key).data == t
    assert keyed_hash.hash_checkbox(False, key).data != t
    assert keyed_hash.hash_checkbox("no", key).data == keyed_hash.hash_checkbox(False, key).data


def test_select_one_strips(key):
    assert keyed_hash.hash_select_one(" open ", key).data == keyed_hash.hash_select_one("open", key).data


def test_select_list_order_and_duplicates_do_not_matter(key):
    a = [h.data for h in keyed_hash.hash_select_list(["b", "a", "a"], key)]
    b = [h.data for h in keyed_hash.hash_select_list(["a", "b"], key)]
    assert a == b
    assert len(a) == 2
    assert [h.data for h in keyed_hash.hash_checkbox_list(["a", "b"], key)] == b


def test_searchable_hash_trims_but_keeps_case(key):
    assert keyed_hash.create_searchable_hash(" Alice ", key) == keyed_hash.create_searchable_hash("Alice", key)
    assert keyed_hash.create_searchable_hash("Alice", key) != keyed_hash.create_searchable_hash("alice", key)


def test_search_hashes_case_variants(key):
    hashes = keyed_hash.create_search_hashes("Alice", key)
    assert hashes == [
        keyed_hash.create_searchable_hash("Alice", key),
        keyed_hash.create_searchable_hash("alice", key),
    ]
    assert keyed_hash.create_search_hashes("Alice", key, case_sensitive=True) == [
        keyed_hash.create_searchable_hash("Alice", key)
    ]
    upper = keyed_hash.create_search_hashes("Alice", key, include_uppercase=True)
    assert keyed_hash.create_searchable_hash("ALICE", key) in upper
    # already lowercase: variants collapse
    assert len(keyed_hash.create_search_hashes("bob", key)) == 1


def test_prefixes_ladder():
    assert keyed_hash.prefixes("Alice", 2) == ["al", "ali", "alic", "alice"]
    assert keyed_hash.prefixes("a", 2) == []


def test_generate_search_tokens(key):
    plain = keyed_hash.generate_search_tokens("Alice", key, include_partial=False)
    assert plain == [keyed_hash.create_searchable_hash("Alice", key)]
    partial = keyed_hash.generate_search_tokens("Alice", key, min_length=2)
    assert len(partial) == 1 + 4
    assert keyed_hash.prefix_token("al", key) in partial
    phonetic = keyed_hash.generate_search_tokens("Alice", key, include_partial=False, include_phonetic=True)
    assert keyed_hash.phonetic_token("A420", key) in phonetic
    assert keyed_hash.generate_search_tokens("Alice", key) == keyed_hash.generate_search_tokens("Alice", key)


def test_token_families_are_domain_separated(key):
    exact = keyed_hash.create_searchable_hash("smith", key)
    assert keyed_hash.prefix_token("smith", key) != exact
    assert keyed_hash.word_token("smith", key) != exact
    assert keyed_hash.word_token("smith", key) != keyed_hash.prefix_token("smith", key)


def test_compare_constant_time_semantics():
    assert keyed_hash.compare("abc", "abc")
    assert not keyed_hash.compare("abc", "abd")
    assert not keyed_hash.compare("abc", "abcd")
    assert not keyed_hash.compare("", "a")


def test_tokenize_and_hash_keywords(key):
    assert keyed_hash.tokenize("Crème Brûlée, café!") == ["creme", "brulee", "cafe"]
    tokens = keyed_hash.hash_keywords("Café au lait", key)
    assert len(tokens) == 3
    assert tokens[0] == keyed_hash.hash_keywords("CAFE", key)[0]


def test_folded_token_is_case_insensitive_and_separate(key):
    assert keyed_hash.folded_token("Alice", key) == keyed_hash.folded_token(" ALICE ", key)
    assert keyed_hash.folded_token("alice", key) != keyed_hash.create_searchable_hash("alice", key)


def test_digest_is_standard_hmac_sha256(key):
    expected = hmac.new(bytes.fromhex(key), b"hello", hashlib.sha256).hexdigest()
    assert keyed_hash.hash_value("hello", key).data == expected
