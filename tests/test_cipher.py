"""
Cipher tests: AES-256-CBC round trip, key validation, IV handling, packed wire form,
batch helpers that degrade instead of raising.
"""

import base64

import pytest

import sys
from pathlib import Path
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fieldvault import cipher
from fieldvault.errors import DecryptionError, InvalidKeyError
from fieldvault.models import Algorithm, EncryptedValue

ZERO_KEY = "0" * 64


def test_hello_world_roundtrip_with_zero_key():
    enc = cipher.encrypt("hello world", ZERO_KEY)
    assert enc.algorithm == Algorithm.CIPHER
    assert cipher.decrypt(enc, ZERO_KEY) == "hello world"


def test_roundtrip_unicode():
    key = cipher.generate_key()
    text = "Nguyễn Văn A, 東京 ✓"
    assert cipher.decrypt(cipher.encrypt(text, key), key) == text


def test_fresh_iv_per_encryption():
    key = cipher.generate_key()
    a = cipher.encrypt("same", key)
    b = cipher.encrypt("same", key)
    assert a.iv != b.iv
    assert a.data != b.data
    assert len(a.iv) == 32


def test_generated_key_is_returned_but_not_serialized():
    enc = cipher.encrypt("secret")
    assert cipher.is_valid_key(enc.generated_key)
    assert cipher.decrypt(enc, enc.generated_key) == "secret"
    assert "generated_key" not in enc.model_dump()


def test_generate_key_and_iv_lengths():
    assert len(cipher.generate_key()) == 64
    assert len(cipher.generate_iv()) == 32
    assert cipher.generate_key() != cipher.generate_key()


def test_invalid_keys_rejected():
    for bad in ["", "abc", "g" * 64, "0" * 63, "0" * 65, None]:
        assert not cipher.is_valid_key(bad)
    with pytest.raises(InvalidKeyError):
        cipher.encrypt("x", "not-a-key")
    assert cipher.is_valid_key("A" * 64)


def test_algorithm_mismatch_raises():
    enc = cipher.encrypt("x", ZERO_KEY)
    wrong = enc.model_copy(update={"algorithm": Algorithm.KEYED_HASH})
    with pytest.raises(DecryptionError):
        cipher.decrypt(wrong, ZERO_KEY)


def test_missing_iv_raises():
    enc = cipher.encrypt("x", ZERO_KEY)
    with pytest.raises(DecryptionError):
        cipher.decrypt(enc.model_copy(update={"iv": None}), ZERO_KEY)


def test_wrong_key_fails():
    enc = cipher.encrypt("attack at dawn, bring snacks", cipher.generate_key())
    # wrong key either breaks padding/utf-8 or yields garbage; garbage must not equal plaintext
    try:
        out = cipher.decrypt(enc, cipher.generate_key())
    except DecryptionError:
        return
    assert out != "attack at dawn, bring snacks"


def test_empty_plaintext_is_reported_as_failure():
    enc = cipher.encrypt("", ZERO_KEY)
    with pytest.raises(DecryptionError):
        cipher.decrypt(enc, ZERO_KEY)


def test_pack_unpack_roundtrip():
    enc = cipher.encrypt("packed", ZERO_KEY)
    packed = cipher.pack_iv_prefixed(enc)
    raw = base64.b64decode(packed)
    assert raw[:16].hex() == enc.iv
    assert cipher.unpack_iv_prefixed(packed) == {"iv": enc.iv, "data": enc.data}


def test_pack_without_iv_raises():
    with pytest.raises(ValueError):
        cipher.pack_iv_prefixed(EncryptedValue(data="abcd", algorithm=Algorithm.CIPHER))


def test_unpack_rejects_short_or_invalid():
    with pytest.raises(ValueError):
        cipher.unpack_iv_prefixed(base64.b64encode(b"short").decode())
    with pytest.raises(ValueError):
        cipher.unpack_iv_prefixed("***")


def test_wire_form_decrypts():
    wire = cipher.to_wire(cipher.encrypt("on the wire", ZERO_KEY))
    assert wire.metadata["iv_prefixed"] is True
    assert cipher.decrypt(wire, ZERO_KEY) == "on the wire"
    assert cipher.pack_iv_prefixed(wire) == wire.data


def test_batch_encrypt_decrypt_skips_and_degrades():
    k1, k2 = cipher.generate_key(), cipher.generate_key()
    enc = cipher.encrypt_fields({"a": "alpha", "b": "beta", "c": "gamma"}, {"a": k1, "b": k2})
    assert set(enc) == {"a", "b"}
    # b decrypted with the wrong key degrades to "" (or garbage), a still decrypts
    out = cipher.decrypt_fields(enc, {"a": k1, "b": k1})
    assert out["a"] == "alpha"
    assert out["b"] != "beta"


def test_batch_decrypt_failure_substitutes_empty():
    enc = {"a": cipher.encrypt("alpha", ZERO_KEY).model_copy(update={"iv": None})}
    assert cipher.decrypt_fields(enc, {"a": ZERO_KEY}) == {"a": ""}


def test_derive_key_from_password_contract():
    d1 = cipher.derive_key_from_password("pw", iterations=1000)
    d2 = cipher.derive_key_from_password("pw", salt=d1.salt, iterations=1000)
    assert d1.key == d2.key
    assert cipher.is_valid_key(d1.key)
    assert cipher.derive_key_from_password("pw", iterations=1000).key != d1.key
