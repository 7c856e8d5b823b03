"""Ed25519 signing helpers backed by PyNaCl (libsodium).

Keys and signatures travel as lowercase hex strings: a 32-byte public key is
64 hex characters, a detached signature is 128.  ``verify_data`` fails closed:
malformed keys or signatures verify as ``False``, never as an exception.
"""

from __future__ import annotations

import hashlib
import logging

import nacl.signing
from nacl.exceptions import BadSignatureError, CryptoError

logger = logging.getLogger(__name__)

PUBLIC_KEY_BYTES = 32
SIGNATURE_BYTES = 64


def generate_keypair() -> tuple[str, str]:
    """Generate a signing key-pair.

    Returns
    -------
    tuple[str, str]
        ``(private_key_hex, public_key_hex)``; the private key is the seed.
    """
    sk = nacl.signing.SigningKey.generate()
    return (sk.encode().hex(), sk.verify_key.encode().hex())


def sign_data(data: bytes, private_key: str) -> str:
    """Sign *data* with the hex seed *private_key*; return the hex signature."""
    sk = nacl.signing.SigningKey(bytes.fromhex(private_key))
    return sk.sign(data).signature.hex()


def is_valid_public_key(public_key: str) -> bool:
    """True if *public_key* is hex encoding exactly 32 bytes."""
    try:
        raw = bytes.fromhex(public_key)
    except ValueError:
        return False
    return len(raw) == PUBLIC_KEY_BYTES


def verify_data(data: bytes, signature: str, public_key: str) -> bool:
    """Verify that *signature* is valid for *data* under *public_key*.

    Returns ``False`` if the signature is empty or malformed, the key is
    malformed, or the signature does not match.
    """
    if not signature or not public_key:
        return False
    try:
        sig_bytes = bytes.fromhex(signature)
        pub_bytes = bytes.fromhex(public_key)
    except ValueError:
        logger.debug("verify_data: signature or key is not valid hex")
        return False
    if len(sig_bytes) != SIGNATURE_BYTES or len(pub_bytes) != PUBLIC_KEY_BYTES:
        return False
    try:
        nacl.signing.VerifyKey(pub_bytes).verify(data, sig_bytes)
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False
    return True


def key_fingerprint(public_key: str) -> str:
    """First 16 hex chars of SHA-256 over the key text; ``""`` for no key.

    Used in logs so the full key never needs to be printed.
    """
    if not public_key:
        return ""
    return hashlib.sha256(public_key.encode("utf-8")).hexdigest()[:16]
