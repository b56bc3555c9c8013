"""
Wraps short secrets (content keys) for a recipient's secp256k1 public key
with Umbral, and unwraps them with the matching private key.

Wrapped form, hex encoded:  capsule length (2 bytes, big endian) || capsule || ciphertext
"""

import struct
import logging

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

# Umbral PRE primitives
from umbral_pre import SecretKey, PublicKey, Capsule
from umbral_pre import encrypt, decrypt_original

from digest import keccak256
from errors import InvalidPublicKeyError, DecryptionError

logger = logging.getLogger(__name__)

COMPRESSED_KEY_LENGTH = 33
UNCOMPRESSED_KEY_LENGTH = 65
# Ethereum style public keys drop the 0x04 point prefix
RAW_KEY_LENGTH = 64
PRIVATE_KEY_LENGTH = 32

_CAPSULE_LEN = struct.Struct(">H")


def _strip_0x(value):
    return value[2:] if value.startswith(("0x", "0X")) else value


def _public_key_bytes(public_key):
    if isinstance(public_key, str):
        try:
            raw = bytes.fromhex(_strip_0x(public_key.strip()))
        except ValueError as e:
            raise InvalidPublicKeyError("Public key is not valid hex") from e
    elif isinstance(public_key, (bytes, bytearray)):
        raw = bytes(public_key)
    else:
        raise InvalidPublicKeyError(
            f"Unsupported public key type: {type(public_key).__name__}")

    if len(raw) == RAW_KEY_LENGTH:
        raw = b"\x04" + raw
    if len(raw) not in (COMPRESSED_KEY_LENGTH, UNCOMPRESSED_KEY_LENGTH):
        raise InvalidPublicKeyError(
            f"Public key has {len(raw)} bytes, expected "
            f"{COMPRESSED_KEY_LENGTH}, {RAW_KEY_LENGTH} or {UNCOMPRESSED_KEY_LENGTH}")
    return raw


def public_key_hex(public_key):
    """Canonical hex form (33 or 65 bytes, no 0x) of any accepted public key encoding."""
    return _public_key_bytes(public_key).hex()


def load_ec_public_key(public_key):
    """Parse a secp256k1 point (compressed, uncompressed or raw), bytes or hex."""
    raw = _public_key_bytes(public_key)
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
    except ValueError as e:
        raise InvalidPublicKeyError("Public key is not a point on secp256k1") from e


def compress_public_key(public_key):
    point = load_ec_public_key(public_key)
    return point.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def public_key_address(public_key):
    """Ethereum style address of a public key: last 20 bytes of its Keccak-256."""
    point = load_ec_public_key(public_key)
    uncompressed = point.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return "0x" + keccak256(uncompressed[1:])[-20:].hex()


# Makes a fresh secp256k1 pair, private key as 32 byte hex and
# public key as 65 byte uncompressed hex
def generate_keypair():
    private_key = ec.generate_private_key(ec.SECP256K1())
    sk_hex = private_key.private_numbers().private_value.to_bytes(
        PRIVATE_KEY_LENGTH, "big").hex()
    pk_hex = private_key.public_key().public_bytes(
        Encoding.X962, PublicFormat.UncompressedPoint).hex()
    return sk_hex, pk_hex


def _umbral_pk(public_key):
    compressed = compress_public_key(public_key)
    try:
        return PublicKey.from_compressed_bytes(compressed)
    except ValueError as e:
        raise InvalidPublicKeyError("Public key rejected by Umbral") from e


def _umbral_sk(private_key_hex):
    if not isinstance(private_key_hex, str):
        raise DecryptionError("Private key must be a hex string")
    try:
        raw = bytes.fromhex(_strip_0x(private_key_hex.strip()))
    except ValueError as e:
        raise DecryptionError("Private key is not valid hex") from e
    if len(raw) != PRIVATE_KEY_LENGTH:
        raise DecryptionError(
            f"Private key must be {PRIVATE_KEY_LENGTH} bytes, got {len(raw)}")
    try:
        return SecretKey.from_be_bytes(raw)
    except Exception as e:
        # Zero or out of range scalars
        raise DecryptionError("Private key is not a valid secp256k1 scalar") from e


def wrap(public_key, secret):
    """Encrypt a utf-8 secret for the holder of public_key; returns hex."""
    if not isinstance(secret, str):
        raise TypeError("secret must be a str")
    recipient_pk = _umbral_pk(public_key)

    capsule, ciphertext = encrypt(recipient_pk, secret.encode("utf-8"))
    capsule_bytes = bytes(capsule)

    return (_CAPSULE_LEN.pack(len(capsule_bytes)) + capsule_bytes + ciphertext).hex()


def unwrap(private_key, wrapped_hex):
    """Recover the utf-8 secret from a hex blob produced by wrap()."""
    recipient_sk = _umbral_sk(private_key)

    try:
        blob = bytes.fromhex(_strip_0x(wrapped_hex.strip()))
    except (AttributeError, ValueError) as e:
        raise DecryptionError("Wrapped key is not valid hex") from e

    if len(blob) < _CAPSULE_LEN.size:
        raise DecryptionError("Wrapped key is truncated")
    (capsule_len,) = _CAPSULE_LEN.unpack_from(blob)
    body = blob[_CAPSULE_LEN.size:]
    if len(body) <= capsule_len:
        raise DecryptionError("Wrapped key is truncated")

    try:
        capsule = Capsule.from_bytes(body[:capsule_len])
        secret = decrypt_original(recipient_sk, capsule, body[capsule_len:])
    except Exception as e:
        # Umbral reports a wrong key and a corrupted capsule alike
        logger.debug("Umbral rejected wrapped key: %s", e)
        raise DecryptionError("Could not unwrap key: wrong private key or corrupted data") from e

    try:
        return secret.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Unwrapped secret is not valid utf-8") from e
