"""
AEAD primitives: AES-GCM encrypt/decrypt for document payloads, and the
random content key that drives them
"""

import os
import re
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import (
    InvalidKeyFormatError,
    InvalidKeyError,
    MalformedInputError,
    IntegrityError,
)

logger = logging.getLogger(__name__)

# 12 byte (96 bit) nonce
NONCE_LENGTH = 12
KEY_LENGTH = 32
HEX_KEY_LENGTH = KEY_LENGTH * 2

_HEX_KEY_RE = re.compile(r"[0-9a-fA-F]{%d}" % HEX_KEY_LENGTH)


# Makes a random content key (256 bits), hex encoded
def generate_content_key():
    return os.urandom(KEY_LENGTH).hex()


def parse_content_key(key_hex):
    """Validate a hex content key and return its raw bytes."""
    if not isinstance(key_hex, str) or not _HEX_KEY_RE.fullmatch(key_hex):
        raise InvalidKeyFormatError(
            f"Invalid key format: expected {HEX_KEY_LENGTH} hex characters")
    return _check_key(bytes.fromhex(key_hex))


def _check_key(key):
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise InvalidKeyError(f"Content key must be exactly {KEY_LENGTH} bytes")
    return bytes(key)


def _as_key_bytes(key):
    # Hex strings are the transport form, raw bytes are accepted for local use
    if isinstance(key, str):
        return parse_content_key(key)
    return _check_key(key)


# Encrypt raw bytes via AES-GCM, framed as nonce || ciphertext-and-tag
def encrypt_bytes(key, plaintext, aad=None):
    if aad is None:
        aad = b""
    key = _as_key_bytes(key)

    # Fresh nonce per call, never reused under the same key
    nonce = os.urandom(NONCE_LENGTH)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, aad)

    return nonce + ciphertext


# Decrypt a nonce-prefixed AES-GCM payload
def decrypt_bytes(key, payload, aad=None):
    if aad is None:
        aad = b""
    key = _as_key_bytes(key)

    nonce, ciphertext = split_payload(payload)

    aesgcm = AESGCM(key)
    try:
        plaintext = aesgcm.decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        logger.debug("AES-GCM authentication failed for %d byte payload", len(payload))
        raise IntegrityError(
            "Decryption failed: ciphertext was tampered with or the key is wrong") from e

    return plaintext


def split_payload(payload):
    """Return the (nonce, ciphertext_with_tag) halves of a payload."""
    if len(payload) < NONCE_LENGTH:
        raise MalformedInputError(
            "Invalid encrypted data: too short (missing nonce)")
    return bytes(payload[:NONCE_LENGTH]), bytes(payload[NONCE_LENGTH:])
