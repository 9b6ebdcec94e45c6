"""Key material gate: at-rest private key decryption for a single signing call.

Uses AES-256-GCM with a key derived once per process from ENCRYPTION_KEY
via PBKDF2-HMAC-SHA512.

Envelope format: ``hex(iv):hex(auth_tag):hex(ciphertext)``

The decrypted key is handed out as a bytearray that is overwritten with
zeros when the scope exits, whether it exits normally or by exception.
Python may still hold transient immutable copies (e.g. inside the cipher or
a signing library); the gate bounds the lifetime of the buffer it owns.
"""

import hashlib
import logging
import os
from contextlib import contextmanager
from enum import Enum
from functools import lru_cache
from typing import Callable, Iterator, Optional, TypeVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chainrail.errors import KeyDecryptionFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 16  # 128 bits
AUTH_TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000


class KeyMode(str, Enum):
    """How to interpret key material passed to the gate."""
    AUTO = "auto"             # Encrypted if it contains the ':' delimiter
    ENCRYPTED = "encrypted"   # Always decrypt
    PLAINTEXT = "plaintext"   # Externally supplied raw key, never decrypt


def derive_key(secret: str, salt: str) -> bytes:
    """Derive the AES-256 key from the process secret with PBKDF2."""
    return hashlib.pbkdf2_hmac(
        "sha512",
        secret.encode(),
        salt.encode(),
        PBKDF2_ITERATIONS,
        dklen=KEY_LENGTH,
    )


@lru_cache(maxsize=1)
def _cached_key() -> bytes:
    from chainrail.config import get_settings

    settings = get_settings()
    if not settings.encryption_key:
        raise KeyDecryptionFailed("ENCRYPTION_KEY is not configured")
    logger.info("Deriving key-at-rest cipher key")
    return derive_key(settings.encryption_key, settings.encryption_salt)


def warm_key_cache() -> None:
    """Derive and cache the cipher key (call at startup)."""
    _cached_key()


def reset_key_cache() -> None:
    """Forget the cached cipher key (useful for testing)."""
    _cached_key.cache_clear()


def encrypt_private_key(plaintext: str, key: Optional[bytes] = None) -> str:
    """Encrypt a hex private key into the ``iv:tag:ciphertext`` envelope."""
    key = key or _cached_key()
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode(), None)
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def is_encrypted(material: str) -> bool:
    """Dual-mode detection: the envelope delimiter marks encrypted input."""
    return ":" in material


def _decrypt_envelope(envelope: str, key: bytes) -> bytearray:
    parts = envelope.split(":")
    if len(parts) != 3:
        raise KeyDecryptionFailed("Invalid ciphertext format")
    try:
        iv = bytes.fromhex(parts[0])
        tag = bytes.fromhex(parts[1])
        ciphertext = bytes.fromhex(parts[2])
    except ValueError:
        raise KeyDecryptionFailed("Invalid ciphertext encoding") from None
    if len(tag) != AUTH_TAG_LENGTH or len(iv) < 8:
        raise KeyDecryptionFailed("Invalid ciphertext format")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise KeyDecryptionFailed("Key decryption failed") from None
    return bytearray(plaintext)


def _hex_to_buffer(text: bytearray) -> bytearray:
    """Decode hex key text into raw bytes, zeroing the text buffer."""
    try:
        body = text[2:] if text[:2] in (b"0x", b"0X") else text
        return bytearray.fromhex(body.decode("ascii").strip())
    except (UnicodeDecodeError, ValueError):
        raise KeyDecryptionFailed("Key material is not valid hex") from None
    finally:
        _zero(text)


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


@contextmanager
def decrypted_key(material: str, mode: KeyMode = KeyMode.AUTO) -> Iterator[bytearray]:
    """Yield raw private key bytes, zeroed when the block exits.

    Args:
        material: Encrypted envelope or hex private key
        mode: Whether to decrypt, skip decryption, or detect

    Raises:
        KeyDecryptionFailed: On malformed input, wrong secret or tampering
    """
    mode = KeyMode(mode)
    if mode == KeyMode.ENCRYPTED or (mode == KeyMode.AUTO and is_encrypted(material)):
        text = _decrypt_envelope(material, _cached_key())
    else:
        text = bytearray(material.encode())

    buffer = _hex_to_buffer(text)
    try:
        yield buffer
    finally:
        _zero(buffer)


def with_decrypted_key(
    material: str,
    fn: Callable[[bytearray], T],
    mode: KeyMode = KeyMode.AUTO,
) -> T:
    """Call ``fn`` with the decrypted key; the buffer is zeroed afterwards."""
    with decrypted_key(material, mode) as key:
        return fn(key)
