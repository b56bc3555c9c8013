"""
Error types raised by the envelope, wrapping and access-condition layers
"""


class SealdocError(Exception):
    pass


# Symmetric layer
class InvalidKeyFormatError(SealdocError):
    """Content key is not exactly 64 hex characters."""


class InvalidKeyError(SealdocError):
    """Content key does not decode to 32 bytes."""


class MalformedInputError(SealdocError):
    """Encrypted payload is too short to hold a nonce."""


class IntegrityError(SealdocError):
    """Authentication failed: tampered ciphertext or wrong key."""


class FingerprintMismatchError(IntegrityError):
    pass


# Asymmetric layer
class InvalidPublicKeyError(SealdocError):
    pass


class DecryptionError(SealdocError):
    pass


# Access conditions
class EmptyConditionError(SealdocError):
    pass


class MalformedConditionError(SealdocError):
    pass


# Coordinator
class AccessDeniedError(SealdocError, PermissionError):
    pass


class NotFoundError(SealdocError, LookupError):
    pass


class InvalidIdentityError(SealdocError, ValueError):
    """Identity cannot name anything in the store."""


class InvalidStatusTransitionError(SealdocError):
    pass


class EnvelopeCreationError(SealdocError):
    """Envelope creation aborted; nothing was wrapped or persisted."""
