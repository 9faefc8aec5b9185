"""
End-to-end encryption key handshake.

The raw table key is entered by the user and never leaves the client. Only the auth key,
SHA-256 applied three times to the raw key, may be persisted or sent to a server, which
can then confirm key possession without learning the key.

This is a UX gate, not a password-authenticated key exchange: anyone who obtains the auth
key can test guesses offline, so it must not be treated as a security boundary.
"""

import hashlib

from .keyed_hash import compare

AUTH_ROUNDS = 3


def compute_encryption_auth_key(raw_key: str) -> str:
    digest = raw_key
    for _ in range(AUTH_ROUNDS):
        digest = hashlib.sha256(digest.encode("utf-8")).hexdigest()
    return digest


def verify_encryption_key(raw_key: str, stored_auth_key: str) -> bool:
    """Recompute the auth key and compare in constant time."""
    if not raw_key or not stored_auth_key:
        return False
    return compare(compute_encryption_auth_key(raw_key), stored_auth_key.strip().lower())
