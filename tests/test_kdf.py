"""
Key derivation tests: PBKDF2 contract, HKDF determinism and context separation,
hierarchy, time-based keys, strength scoring.
"""

from datetime import datetime, timezone

import pytest

import sys
from pathlib import Path
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fieldvault import kdf

MASTER = "ab" * 32


def test_password_derivation_consistent():
    salt = kdf.generate_salt()
    d1 = kdf.derive_key_from_password("test_password_123", salt=salt, iterations=1000)
    d2 = kdf.derive_key_from_password("test_password_123", salt=salt, iterations=1000)
    assert d1.key == d2.key
    assert len(d1.key) == 64
    assert d1.iterations == 1000


def test_password_derivation_different_salt():
    d1 = kdf.derive_key_from_password("pw", iterations=1000)
    d2 = kdf.derive_key_from_password("pw", iterations=1000)
    assert d1.salt != d2.salt
    assert d1.key != d2.key


def test_password_derivation_rejects_zero_iterations():
    with pytest.raises(ValueError):
        kdf.derive_key_from_password("pw", iterations=0)


def test_derive_key_deterministic_and_separated():
    assert kdf.derive_key(MASTER, "table:1") == kdf.derive_key(MASTER, "table:1")
    assert kdf.derive_key(MASTER, "table:1") != kdf.derive_key(MASTER, "table:2")
    assert kdf.derive_key("cd" * 32, "table:1") != kdf.derive_key(MASTER, "table:1")
    assert len(kdf.derive_key(MASTER, "x", length=16)) == 32
    assert len(kdf.derive_key(MASTER, "x", length=64)) == 128


def test_derive_key_validates_context():
    with pytest.raises(ValueError):
        kdf.derive_key(MASTER, "has space")
    with pytest.raises(ValueError):
        kdf.derive_key(MASTER, "")
    with pytest.raises(ValueError):
        kdf.derive_key("", "ctx")


def test_validate_context():
    assert kdf.validate_context("workspace_1:field-name")
    assert not kdf.validate_context("a" * 257)
    assert not kdf.validate_context("slash/not/allowed")


def test_derive_multiple_keys():
    keys = kdf.derive_multiple_keys(MASTER, ["a", "b", "c"])
    assert set(keys) == {"a", "b", "c"}
    assert len(set(keys.values())) == 3
    assert keys["a"] == kdf.derive_key(MASTER, "a")


def test_key_hierarchy_distinct_and_workspace_scoped():
    h1 = kdf.derive_key_hierarchy(MASTER, "ws1")
    h2 = kdf.derive_key_hierarchy(MASTER, "ws2")
    assert len(set(h1)) == 5
    assert h1.workspace_key != h2.workspace_key
    assert h1 == kdf.derive_key_hierarchy(MASTER, "ws1")


def test_time_based_key_periods():
    t1 = datetime(2024, 5, 6, 10, 15, tzinfo=timezone.utc)
    t2 = datetime(2024, 5, 6, 11, 45, tzinfo=timezone.utc)
    assert kdf.derive_time_based_key(MASTER, "audit", t1, "day") == kdf.derive_time_based_key(MASTER, "audit", t2, "day")
    assert kdf.derive_time_based_key(MASTER, "audit", t1, "hour") != kdf.derive_time_based_key(MASTER, "audit", t2, "hour")
    assert kdf.derive_time_based_key(MASTER, "audit", t1, "month") == kdf.derive_time_based_key(
        MASTER, "audit", datetime(2024, 5, 30, tzinfo=timezone.utc), "month"
    )
    with pytest.raises(ValueError):
        kdf.derive_time_based_key(MASTER, "audit", t1, "year")


def test_key_strength_scoring():
    strong = kdf.validate_key_strength(kdf.generate_random_key())
    assert strong.is_valid
    assert strong.score >= 75
    weak = kdf.validate_key_strength("aaaaaa")
    assert not weak.is_valid
    assert weak.score == 25  # only hex-format points
    assert len(weak.suggestions) == 3


def test_generators():
    assert len(kdf.generate_salt()) == 32
    assert len(kdf.generate_random_key()) == 64
    assert len(kdf.generate_random_key(16)) == 32


def test_create_derivation_info():
    info = kdf.create_derivation_info("mk-1", "table:1", datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert info["algorithm"] == "HKDF-SHA256"
    assert info["context"] == "table:1"
    assert info["timestamp"].startswith("2024-01-01")
