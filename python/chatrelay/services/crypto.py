"""Encryption of stored provider keys.

XSalsa20-Poly1305 authenticated encryption (PyNaCl SecretBox). The master key
is CHATRELAY_KEY_ENCRYPTION_KEY, base64 of 32 bytes. Ciphertext and nonce are
stored in separate columns together with a master key version; only the last
four characters of a key (its fingerprint) are ever shown or logged.
"""

import base64
import binascii
from functools import lru_cache

from nacl.exceptions import CryptoError as NaclCryptoError
from nacl.secret import SecretBox
from nacl.utils import random as random_bytes

from chatrelay.config import get_settings
from chatrelay.logging import get_logger

logger = get_logger(__name__)

NONCE_SIZE = SecretBox.NONCE_SIZE
MASTER_KEY_SIZE = SecretBox.KEY_SIZE

# No rotation yet; rows carry the version so one can be added
CURRENT_MASTER_KEY_VERSION = 1


class CryptoError(Exception):
    """Raised when cryptographic operations fail."""

    pass


@lru_cache(maxsize=1)
def _get_master_key() -> bytes:
    key_b64 = get_settings().chatrelay_key_encryption_key
    if not key_b64:
        raise CryptoError("CHATRELAY_KEY_ENCRYPTION_KEY is not set")

    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"CHATRELAY_KEY_ENCRYPTION_KEY is not valid base64: {e}") from e

    if len(key) != MASTER_KEY_SIZE:
        raise CryptoError(
            f"CHATRELAY_KEY_ENCRYPTION_KEY must be {MASTER_KEY_SIZE} bytes, got {len(key)} bytes"
        )

    return key


def require_master_key() -> bytes:
    """Load and validate the master encryption key.

    Raises:
        CryptoError: If the key is missing or invalid.
    """
    return _get_master_key()


def clear_master_key_cache() -> None:
    _get_master_key.cache_clear()


def generate_nonce() -> bytes:
    return random_bytes(NONCE_SIZE)


def encrypt_secretbox(plaintext: bytes, nonce: bytes) -> bytes:
    """Encrypt with the master key. Returns ciphertext without the nonce prefix."""
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")

    box = SecretBox(require_master_key())
    return box.encrypt(plaintext, nonce=nonce).ciphertext


def decrypt_secretbox(ciphertext: bytes, nonce: bytes) -> bytes:
    """Decrypt with the master key.

    Raises:
        CryptoError: Wrong key, wrong nonce, or tampered data.
    """
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")

    box = SecretBox(require_master_key())
    try:
        return box.decrypt(ciphertext, nonce=nonce)
    except NaclCryptoError as e:
        logger.error("decryption_failed", error=str(e))
        raise CryptoError(f"Decryption failed: {e}") from e


def compute_key_fingerprint(api_key: str) -> str:
    """Last 4 characters of the key; safe to display and log."""
    return api_key[-4:] if len(api_key) >= 4 else api_key


def encrypt_api_key(plaintext: str) -> tuple[bytes, bytes, int, str]:
    """Encrypt an API key for storage.

    Returns:
        Tuple of (ciphertext, nonce, master_key_version, fingerprint)
    """
    nonce = generate_nonce()
    ciphertext = encrypt_secretbox(plaintext.encode("utf-8"), nonce)
    return ciphertext, nonce, CURRENT_MASTER_KEY_VERSION, compute_key_fingerprint(plaintext)


def decrypt_api_key(ciphertext: bytes, nonce: bytes, version: int) -> str:
    """Decrypt an API key from storage.

    Raises:
        CryptoError: If version is unknown or decryption fails.
    """
    if version != CURRENT_MASTER_KEY_VERSION:
        raise CryptoError(f"Unknown key version: {version}")

    return decrypt_secretbox(ciphertext, nonce).decode("utf-8")
