"""
Document fingerprints: Keccak-256 over exact byte content, rendered the way
Ethereum tooling renders a bytes32 (0x-prefixed lowercase hex)
"""

import hmac

from Crypto.Hash import keccak

from errors import FingerprintMismatchError


def keccak256(data):
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


def fingerprint(data):
    return "0x" + keccak256(data).hex()


def _normalise(fp):
    fp = fp.strip().lower()
    if fp.startswith("0x"):
        fp = fp[2:]
    return fp


def matches_fingerprint(data, expected):
    # Constant time compare
    return hmac.compare_digest(_normalise(fingerprint(data)), _normalise(expected))


def verify_fingerprint(data, expected):
    if not matches_fingerprint(data, expected):
        raise FingerprintMismatchError(
            f"Content does not match fingerprint {expected}")
