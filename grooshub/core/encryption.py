"""
Encryption at rest for chat messages, summaries and memory.

AES-256-GCM with a key derived per organization:
    key = PBKDF2-HMAC-SHA256(master_key + org_id, salt, 100_000 iterations, 32 bytes)

Every call draws a fresh salt and IV, so the same plaintext never encrypts twice
to the same value. Ciphertext is stored as four hex fields:

    salt:iv:ciphertext:tag

The *_for_storage helpers are what the stores use. They degrade to plaintext when
ENCRYPTION_MASTER_KEY is unset, and return a flag the caller persists next to the
blob. Reading a flagged blob without the master key raises; it never passes the
ciphertext through.
"""

import binascii
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import get_settings

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
SALT_LENGTH = 32
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


class EncryptionError(Exception):
    """Base class for encryption failures."""


class EncryptionNotConfiguredError(EncryptionError):
    """ENCRYPTION_MASTER_KEY is not set."""


class InvalidCiphertextError(EncryptionError):
    """Stored value is not in salt:iv:ciphertext:tag format."""


class DecryptionError(EncryptionError):
    """Authentication failed: tampered data, wrong organization or wrong master key."""


def _master_key() -> str:
    key = get_settings().encryption_master_key
    if not key:
        raise EncryptionNotConfiguredError("ENCRYPTION_MASTER_KEY not configured in environment")
    return key


def _derive_key(master_key: str, org_id: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive((master_key + org_id).encode("utf-8"))


def is_encryption_configured() -> bool:
    """True when ENCRYPTION_MASTER_KEY is set."""
    return bool(get_settings().encryption_master_key)


def encrypt_message(plaintext: str, org_id: str) -> str:
    """Encrypt text for an organization. Returns salt:iv:ciphertext:tag (hex)."""
    master_key = _master_key()

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(master_key, org_id, salt)

    # AESGCM appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    encrypted, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return ":".join([salt.hex(), iv.hex(), encrypted.hex(), tag.hex()])


def decrypt_message(ciphertext: str, org_id: str) -> str:
    """Decrypt a salt:iv:ciphertext:tag value produced by encrypt_message."""
    master_key = _master_key()

    parts = ciphertext.split(":")
    if len(parts) != 4:
        raise InvalidCiphertextError("Invalid ciphertext format - expected salt:iv:encrypted:tag")

    try:
        salt, iv, encrypted, tag = (bytes.fromhex(p) for p in parts)
    except (ValueError, binascii.Error) as e:
        raise InvalidCiphertextError(f"Invalid ciphertext encoding: {e}") from e

    if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise InvalidCiphertextError("Invalid ciphertext format - bad salt, iv or tag length")

    key = _derive_key(master_key, org_id, salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, encrypted + tag, None)
    except InvalidTag as e:
        raise DecryptionError("Decryption failed - data tampered or wrong organization key") from e

    return plaintext.decode("utf-8")


def encrypt_json(data: Any, org_id: str) -> str:
    return encrypt_message(json.dumps(data), org_id)


def decrypt_json(ciphertext: str, org_id: str) -> Any:
    return json.loads(decrypt_message(ciphertext, org_id))


# ── Storage helpers ──────────────────────────────────────────────────

def encrypt_for_storage(text: str, org_id: str) -> tuple[str, bool]:
    """
    Encrypt if a master key is configured, otherwise pass through.
    Returns (value_to_store, is_encrypted).
    """
    if not is_encryption_configured():
        return text, False
    return encrypt_message(text, org_id), True


def encrypt_json_for_storage(data: Any, org_id: str) -> tuple[str, bool]:
    """Like encrypt_for_storage, but serializes to JSON first."""
    if not is_encryption_configured():
        return json.dumps(data), False
    return encrypt_json(data, org_id), True


def decrypt_from_storage(value: str, is_encrypted: bool, org_id: str) -> str:
    """
    Inverse of encrypt_for_storage. Unflagged values are returned unchanged.
    A flagged value with no master key raises EncryptionNotConfiguredError.
    """
    if not is_encrypted:
        return value
    return decrypt_message(value, org_id)


def decrypt_json_from_storage(value: str, is_encrypted: bool, org_id: str) -> Any:
    if not is_encrypted:
        return json.loads(value) if value else None
    return decrypt_json(value, org_id)
