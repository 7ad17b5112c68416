"""Symmetric encryption of env payloads.

Env files are encrypted with AES-256 in CFB mode (128-bit segments) under a
key derived from the project KeyRecord:

    aes_key = sha256(material).hexdigest()[:32]   (32 ASCII bytes)
    data    = urlsafe_b64(iv || cfb(plaintext))   (iv = 16 random bytes)

Every client that reads or writes the env store derives the key this way,
so the derivation must not change.

CFB is unauthenticated: decrypting under the wrong key "succeeds" and yields
noise. Callers detect that with envsync.services.envfile.is_well_formed.

This module uses the `cryptography` library (pyca/cryptography).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os

from cryptography.hazmat.decrepit.ciphers.modes import CFB
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

from envsync.core.errors import CipherError, CipherErrorKind
from envsync.models import KeyRecord

logger = logging.getLogger(__name__)

IV_SIZE_BYTES = 16
AES_KEY_SIZE = 32


def derive_aes_key(key: KeyRecord) -> bytes:
    """Derive the 32-byte AES key from a key record's base64 material."""
    digest = hashlib.sha256(key.material.encode("ascii")).hexdigest()
    return digest[:AES_KEY_SIZE].encode("ascii")


def _new_iv() -> bytes:
    try:
        return os.urandom(IV_SIZE_BYTES)
    except (OSError, NotImplementedError) as e:
        raise CipherError("cannot generate IV", kind=CipherErrorKind.ENTROPY) from e


def encrypt(plaintext: str | bytes, key: KeyRecord) -> str:
    """Encrypt plaintext under a key record.

    Args:
        plaintext: Text (encoded as UTF-8) or raw bytes.
        key: Project key record.

    Returns:
        URL-safe base64 of IV followed by the ciphertext.

    Raises:
        CipherError: If no IV can be drawn from the entropy source.
    """
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    iv = _new_iv()
    encryptor = Cipher(algorithms.AES(derive_aes_key(key)), CFB(iv)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return base64.urlsafe_b64encode(iv + ciphertext).decode("ascii")


def decrypt(ciphertext_b64: str, key: KeyRecord) -> bytes:
    """Decrypt a payload produced by encrypt().

    A wrong key is not detected here; the result is then random bytes.

    Args:
        ciphertext_b64: URL-safe base64 of IV and ciphertext.
        key: Key record the payload claims to be encrypted with.

    Returns:
        The raw plaintext bytes.

    Raises:
        CipherError: If the input is not valid base64 or shorter than an IV.
    """
    try:
        raw = base64.b64decode(ciphertext_b64.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise CipherError("ciphertext is not valid base64", kind=CipherErrorKind.MALFORMED) from e

    if len(raw) < IV_SIZE_BYTES:
        msg = f"ciphertext too short: {len(raw)} bytes, need at least {IV_SIZE_BYTES}"
        raise CipherError(msg, kind=CipherErrorKind.MALFORMED)

    iv, body = raw[:IV_SIZE_BYTES], raw[IV_SIZE_BYTES:]
    decryptor = Cipher(algorithms.AES(derive_aes_key(key)), CFB(iv)).decryptor()
    return decryptor.update(body) + decryptor.finalize()
