"""
Symmetric field cipher: AES-256-CBC with PKCS7 padding.

- Keys are 256-bit, carried as 64 hex characters; rejected before use if malformed.
- Random 128-bit IV per encryption (Crypto.Random); IVs are never derived or reused.
- Split form: EncryptedValue(data=b64(ciphertext), iv=hex(iv)).
- Wire form expected by the persistence boundary: b64(iv || ciphertext), see pack_iv_prefixed.
"""

import base64
import binascii
import logging
import re
from typing import Dict, Mapping, Optional

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

from . import kdf
from .errors import DecryptionError, InvalidKeyError
from .models import Algorithm, EncryptedValue

logger = logging.getLogger(__name__)

KEY_SIZE = 32
IV_SIZE = 16
ALGORITHM = Algorithm.CIPHER

_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def generate_key() -> str:
    """Random 256-bit key as 64 hex characters."""
    return get_random_bytes(KEY_SIZE).hex()


def generate_iv() -> str:
    """Random 128-bit IV as 32 hex characters."""
    return get_random_bytes(IV_SIZE).hex()


def is_valid_key(key: object) -> bool:
    return isinstance(key, str) and bool(_KEY_RE.match(key))


def require_key(key: object) -> bytes:
    """Return raw key bytes or raise InvalidKeyError. Shared by every primitive."""
    if not is_valid_key(key):
        raise InvalidKeyError("Key must be 64 hexadecimal characters (256 bits)")
    return bytes.fromhex(key)  # type: ignore[arg-type]


def encrypt(plaintext: str, key: Optional[str] = None) -> EncryptedValue:
    """
    Encrypt a string with a fresh IV. If key is None a new key is generated and returned
    on the value as `generated_key`; the caller must keep it or the data is unrecoverable.
    """
    generated = None
    if key is None:
        key = generated = generate_key()
    raw_key = require_key(key)
    iv = get_random_bytes(IV_SIZE)
    cipher = AES.new(raw_key, AES.MODE_CBC, iv=iv)
    ciphertext = cipher.encrypt(pad(plaintext.encode("utf-8"), AES.block_size))
    return EncryptedValue(
        data=base64.b64encode(ciphertext).decode("ascii"),
        iv=iv.hex(),
        algorithm=ALGORITHM,
        generated_key=generated,
    )


def decrypt(value: EncryptedValue, key: str) -> str:
    """
    Decrypt a Cipher value. Raises DecryptionError on algorithm mismatch, missing IV,
    bad padding or an empty result.

    An empty result is treated as a wrong key; this also rejects values that really
    encrypted "", which cannot be told apart without an authentication tag.
    """
    if value.algorithm != ALGORITHM:
        raise DecryptionError(f"Expected {ALGORITHM.value} value, got {value.algorithm.value}")
    raw_key = require_key(key)
    data = value.data
    iv_hex = value.iv
    if value.metadata and value.metadata.get("iv_prefixed"):
        split = unpack_iv_prefixed(data)
        iv_hex, data = split["iv"], split["data"]
    if not iv_hex:
        raise DecryptionError("IV is missing")
    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = base64.b64decode(data, validate=True)
        cipher = AES.new(raw_key, AES.MODE_CBC, iv=iv)
        plaintext = unpad(cipher.decrypt(ciphertext), AES.block_size).decode("utf-8")
    except (ValueError, binascii.Error) as e:
        # unpad, fromhex, b64decode and utf-8 decode all raise ValueError subclasses
        raise DecryptionError("Decryption failed: wrong key or corrupted data") from e
    if not plaintext:
        raise DecryptionError("Decryption produced empty output: wrong key or corrupted data")
    return plaintext


def encrypt_fields(values: Mapping[str, str], keys: Mapping[str, str]) -> Dict[str, EncryptedValue]:
    """Encrypt each field that has a key; fields without a key are skipped."""
    out: Dict[str, EncryptedValue] = {}
    for field, plaintext in values.items():
        key = keys.get(field)
        if not key:
            continue
        out[field] = encrypt(str(plaintext), key)
    return out


def decrypt_fields(values: Mapping[str, EncryptedValue], keys: Mapping[str, str]) -> Dict[str, str]:
    """
    Decrypt each field that has a key. A field that fails is logged and returned as ""
    so one bad field does not abort the whole record.
    """
    out: Dict[str, str] = {}
    for field, value in values.items():
        key = keys.get(field)
        if not key:
            continue
        try:
            out[field] = decrypt(value, key)
        except (DecryptionError, InvalidKeyError) as e:
            logger.warning("Failed to decrypt field %s: %s", field, e)
            out[field] = ""
    return out


def pack_iv_prefixed(value: EncryptedValue) -> str:
    """Split form -> b64(iv || ciphertext)."""
    if value.metadata and value.metadata.get("iv_prefixed"):
        return value.data
    if not value.iv:
        raise ValueError("Cannot pack a value without an IV")
    blob = bytes.fromhex(value.iv) + base64.b64decode(value.data)
    return base64.b64encode(blob).decode("ascii")


def unpack_iv_prefixed(packed: str) -> Dict[str, str]:
    """b64(iv || ciphertext) -> {"iv": hex, "data": b64(ciphertext)}."""
    try:
        blob = base64.b64decode(packed, validate=True)
    except binascii.Error as e:
        raise ValueError("Packed value is not valid base64") from e
    if len(blob) <= IV_SIZE:
        raise ValueError("Packed value too short")
    return {
        "iv": blob[:IV_SIZE].hex(),
        "data": base64.b64encode(blob[IV_SIZE:]).decode("ascii"),
    }


def to_wire(value: EncryptedValue) -> EncryptedValue:
    """Copy of a Cipher value with data replaced by the packed wire form."""
    metadata = dict(value.metadata or {})
    metadata["iv_prefixed"] = True
    return value.model_copy(update={"data": pack_iv_prefixed(value), "metadata": metadata})


def derive_key_from_password(password: str, salt: Optional[str] = None, iterations: int = 100_000) -> kdf.DerivedKey:
    """PBKDF2-HMAC-SHA256 -> 256-bit key. Salt is generated when omitted."""
    return kdf.derive_key_from_password(password, salt=salt, iterations=iterations)
