"""Cipher primitives for wallet key custody.

Wire formats (colon-separated lowercase hex, must stay byte-compatible with
previously persisted data):

- legacy:   ``ivHex:ciphertextHex``                 AES-256-CBC, server key, decrypt-only
- password: ``saltHex:ivHex:tagHex:ciphertextHex``  AES-256-GCM, PBKDF2-derived key
- session:  ``ivHex:tagHex:ciphertextHex``          AES-256-GCM, random per-session key

Security:
- Never log passwords, plaintext secrets or derived keys
- Every decrypt path fails closed and returns None
- Password hashes are compared in constant time
"""

from __future__ import annotations

import hmac
import os
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.config import PBKDF2_ITERATIONS_DEFAULT

KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 32
IV_LENGTH = 12  # GCM nonce
TAG_LENGTH = 16
LEGACY_IV_LENGTH = 16  # CBC block size

_DECRYPT_ERRORS = (InvalidTag, ValueError, TypeError, OverflowError)


class BlobFormat(str, Enum):
    """Persisted wallet blob formats, discriminated by field count."""

    LEGACY = "legacy"
    PASSWORD = "password"


@dataclass(frozen=True)
class LegacyBlob:
    iv: bytes
    ciphertext: bytes

    format = BlobFormat.LEGACY


@dataclass(frozen=True)
class PasswordBlob:
    salt: bytes
    iv: bytes
    tag: bytes
    ciphertext: bytes

    format = BlobFormat.PASSWORD


WalletBlob = Union[LegacyBlob, PasswordBlob]


def parse_blob(text: str) -> Optional[WalletBlob]:
    """Parse a persisted wallet blob into its tagged form.

    Two fields are legacy, four are password-encrypted. Anything else (or
    non-hex content) is rejected rather than guessed.
    """
    if not isinstance(text, str):
        return None
    parts = text.split(":")
    try:
        if len(parts) == 2:
            iv, ciphertext = (bytes.fromhex(p) for p in parts)
            if len(iv) != LEGACY_IV_LENGTH or not ciphertext:
                return None
            return LegacyBlob(iv=iv, ciphertext=ciphertext)
        if len(parts) == 4:
            salt, iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            if not salt or not iv or len(tag) != TAG_LENGTH:
                return None
            return PasswordBlob(salt=salt, iv=iv, tag=tag, ciphertext=ciphertext)
    except ValueError:
        return None
    return None


def is_legacy_format(text: str) -> bool:
    return isinstance(parse_blob(text), LegacyBlob)


# ========== Key derivation / password hashing ==========


def derive_key(
    password: str,
    user_id: int,
    salt: bytes,
    *,
    iterations: int = PBKDF2_ITERATIONS_DEFAULT,
) -> bytes:
    """Derive a 256-bit key with PBKDF2-HMAC-SHA256.

    The user id is mixed into the key material so identical passwords held by
    different users derive different keys.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(f"{user_id}:{password}".encode("utf-8"))


def hash_password(
    password: str,
    user_id: int,
    *,
    iterations: int = PBKDF2_ITERATIONS_DEFAULT,
) -> str:
    """Return a fresh `saltHex:hashHex` password hash."""
    salt = os.urandom(SALT_LENGTH)
    digest = derive_key(password, user_id, salt, iterations=iterations)
    return f"{salt.hex()}:{digest.hex()}"


def verify_password(
    password: str,
    user_id: int,
    stored_hash: str,
    *,
    iterations: int = PBKDF2_ITERATIONS_DEFAULT,
) -> bool:
    parts = stored_hash.split(":") if isinstance(stored_hash, str) else []
    if len(parts) != 2:
        return False
    try:
        salt = bytes.fromhex(parts[0])
        expected = bytes.fromhex(parts[1])
    except ValueError:
        return False
    if not salt or not expected:
        return False
    candidate = derive_key(password, user_id, salt, iterations=iterations)
    return hmac.compare_digest(candidate, expected)


# ========== Password-keyed encryption ==========


def _split_tag(sealed: bytes) -> tuple[bytes, bytes]:
    # AESGCM appends the tag to the ciphertext.
    return sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]


def encrypt_with_password(
    plaintext: str,
    password: str,
    user_id: int,
    *,
    iterations: int = PBKDF2_ITERATIONS_DEFAULT,
) -> str:
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(password, user_id, salt, iterations=iterations)
    ciphertext, tag = _split_tag(AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None))
    return f"{salt.hex()}:{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_password_blob(
    blob: PasswordBlob,
    password: str,
    user_id: int,
    *,
    iterations: int = PBKDF2_ITERATIONS_DEFAULT,
) -> Optional[str]:
    try:
        key = derive_key(password, user_id, blob.salt, iterations=iterations)
        plaintext = AESGCM(key).decrypt(blob.iv, blob.ciphertext + blob.tag, None)
        return plaintext.decode("utf-8")
    except _DECRYPT_ERRORS:
        return None


def decrypt_with_password(
    text: str,
    password: str,
    user_id: int,
    *,
    iterations: int = PBKDF2_ITERATIONS_DEFAULT,
) -> Optional[str]:
    blob = parse_blob(text)
    if not isinstance(blob, PasswordBlob):
        return None
    return decrypt_password_blob(blob, password, user_id, iterations=iterations)


# ========== Legacy (decrypt-only) ==========


def decrypt_legacy_blob(blob: LegacyBlob, key_hex: Optional[str]) -> Optional[str]:
    """Decrypt an AES-256-CBC blob written with the process-wide server key.

    There is intentionally no legacy encrypt counterpart.
    """
    if not key_hex:
        return None
    try:
        key = bytes.fromhex(key_hex)
        if len(key) != KEY_LENGTH:
            return None
        decryptor = Cipher(algorithms.AES(key), modes.CBC(blob.iv)).decryptor()
        padded = decryptor.update(blob.ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except _DECRYPT_ERRORS:
        return None


def decrypt_legacy(text: str, key_hex: Optional[str]) -> Optional[str]:
    blob = parse_blob(text)
    if not isinstance(blob, LegacyBlob):
        return None
    return decrypt_legacy_blob(blob, key_hex)


# ========== Session (ephemeral) encryption ==========


class SessionCipher:
    """AES-256-GCM under a random key that only lives in this process.

    Used to keep decrypted secrets encrypted in memory while a session is
    unlocked. Blobs are `ivHex:tagHex:ciphertextHex`.
    """

    __slots__ = ("_aead",)

    def __init__(self) -> None:
        self._aead = AESGCM(AESGCM.generate_key(bit_length=256))

    def __repr__(self) -> str:
        return "SessionCipher(<ephemeral>)"

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        ciphertext, tag = _split_tag(self._aead.encrypt(iv, plaintext.encode("utf-8"), None))
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, text: str) -> Optional[str]:
        parts = text.split(":") if isinstance(text, str) else []
        if len(parts) != 3:
            return None
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            if not iv or len(tag) != TAG_LENGTH:
                return None
            return self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except _DECRYPT_ERRORS:
            return None


# ========== Utilities ==========

_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


def generate_secure_password(length: int = 16) -> str:
    if length < 8:
        raise ValueError("length must be at least 8")
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def generate_encryption_key() -> str:
    """Random 32-byte hex key, e.g. for WALLET_ENCRYPTION_KEY in existing deployments."""
    return secrets.token_bytes(KEY_LENGTH).hex()
