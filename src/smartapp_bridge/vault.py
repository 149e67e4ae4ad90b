"""AES-256-GCM sealing for durable documents that hold tokens.

Sealed format::

    [8 bytes:  magic "STBVAULT"]
    [1 byte:   version = 0x01]
    [16 bytes: salt]             ← used as associated data
    [12 bytes: nonce]
    [N bytes:  ciphertext]
    [16 bytes: GCM auth tag]     ← appended by AESGCM automatically

Keys are raw 32-byte files created with :func:`generate_key`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"STBVAULT"
VERSION = 0x01
SALT_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


def load_key(key_file: str | Path) -> bytes:
    """Read a 32-byte key from *key_file*."""
    kf = Path(key_file)
    if not kf.exists():
        raise FileNotFoundError(f"Key file not found: {key_file}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise ValueError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def generate_key(key_file: str | Path, overwrite: bool = False) -> Path:
    """Write a fresh random key to *key_file* with ``0600`` permissions."""
    kf = Path(key_file)
    if kf.exists() and not overwrite:
        raise FileExistsError(f"Key file already exists: {key_file}")
    kf.parent.mkdir(parents=True, exist_ok=True)
    kf.write_bytes(os.urandom(KEY_LEN))
    os.chmod(kf, 0o600)
    return kf


def seal(document: Any, key: bytes) -> bytes:
    """Serialize *document* with orjson and encrypt it under *key*."""
    salt = os.urandom(SALT_LEN)
    nonce = os.urandom(NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(document), salt)
    return MAGIC + bytes([VERSION]) + salt + nonce + ciphertext


def unseal(blob: bytes, key: bytes) -> Any:
    """Decrypt a blob produced by :func:`seal` and return the document.

    Raises
    ------
    ValueError
        On a bad header, an unknown version, or a failed authentication tag.
    """
    if len(blob) < _HEADER_LEN or blob[: len(MAGIC)] != MAGIC:
        raise ValueError("Invalid sealed document (bad magic)")
    if blob[len(MAGIC)] != VERSION:
        raise ValueError(f"Unsupported sealed document version: {blob[len(MAGIC)]}")

    start = len(MAGIC) + 1
    salt = blob[start:start + SALT_LEN]
    nonce = blob[start + SALT_LEN:_HEADER_LEN]
    try:
        plaintext = AESGCM(key).decrypt(nonce, blob[_HEADER_LEN:], salt)
    except InvalidTag as exc:
        raise ValueError("Sealed document failed authentication") from exc
    return orjson.loads(plaintext)
