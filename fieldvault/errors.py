"""Exception hierarchy. Hard failures raise one of these; soft failures are logged."""


class FieldVaultError(Exception):
    """Base class for all fieldvault errors."""


class InvalidKeyError(FieldVaultError, ValueError):
    """Key is not a 256-bit key in 64-character hex form."""


class DecryptionError(FieldVaultError):
    """Ciphertext could not be decrypted or verified (tag mismatch, missing IV, wrong key)."""


class KeyManagerError(FieldVaultError):
    pass


class NotInitializedError(KeyManagerError, RuntimeError):
    """KeyManager used before initialize()."""


class KeyNotFoundError(KeyManagerError, LookupError):
    """A prerequisite workspace or table key does not exist."""


class InvalidPasswordError(FieldVaultError, ValueError):
    pass


class StoreError(FieldVaultError):
    pass


class StoreNotInitializedError(StoreError, RuntimeError):
    pass


class StoreLockedError(StoreError):
    """Store resumed from an existing session without key material; writes are refused."""
