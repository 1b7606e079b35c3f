"""AES-256-GCM envelope for custodial private keys.

Stored format is ``iv:authTag:ciphertext``, each part hex encoded.
"""

from __future__ import annotations

import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 16
TAG_LENGTH = 16


def load_key(hex_key: str) -> bytes:
    key = bytes.fromhex(hex_key.strip().removeprefix("0x"))
    if len(key) != 32:
        raise ValueError("Wallet encryption key must be 32 bytes")
    return key


def encrypt_private_key(plaintext: str, key: bytes) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_private_key(envelope: str, key: bytes) -> str:
    parts = envelope.split(":")
    if len(parts) != 3:
        raise ValueError("Invalid encrypted data format")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise ValueError("Invalid encrypted data format") from exc
    if len(tag) != TAG_LENGTH:
        raise ValueError("Invalid encrypted data format")
    return AESGCM(key).decrypt(iv, ciphertext + tag, None).decode("utf-8")


__all__ = ["decrypt_private_key", "encrypt_private_key", "load_key"]
