"""
Code cipher.

Encrypts and decrypts single redeemable codes with AES-GCM. Every encryption
uses a fresh random 96-bit nonce; ciphertext and nonce are stored base64-encoded
next to the id of the key that produced them.

The cipher holds a key ring: new codes are encrypted with the active key, while
codes written under older keys keep decrypting as long as their key id stays in
the ring. There is no fallback key.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import config
from domain.errors import DecryptionError

_NONCE_BYTES = 12
_VALID_KEY_BYTES = (16, 24, 32)


@dataclass(frozen=True, slots=True)
class EncryptedCode:
    ciphertext: str
    nonce: str
    key_id: str


def parse_key_ring(raw: str) -> Dict[str, bytes]:
    """
    Parse `key_id:base64key,key_id:base64key` into a key ring.

    Raises:
        ValueError: malformed entry, duplicate key id or wrong key length
    """

    ring: Dict[str, bytes] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key_id, sep, encoded = entry.partition(":")
        key_id = key_id.strip()
        if not sep or not key_id:
            raise ValueError("encryption keys must be formatted as key_id:base64key")
        if key_id in ring:
            raise ValueError(f"duplicate encryption key id {key_id!r}")
        try:
            key = base64.b64decode(encoded.strip(), validate=True)
        except binascii.Error:
            raise ValueError(f"encryption key {key_id!r} is not valid base64") from None
        if len(key) not in _VALID_KEY_BYTES:
            raise ValueError(f"encryption key {key_id!r} must be 16, 24 or 32 bytes")
        ring[key_id] = key
    if not ring:
        raise ValueError("no encryption keys configured")
    return ring


class CodeCipher:
    def __init__(self, keys: Mapping[str, bytes], active_key_id: Optional[str] = None):
        if not keys:
            raise ValueError("CodeCipher needs at least one key")
        self._keys = {key_id: AESGCM(key) for key_id, key in keys.items()}
        self._active_key_id = active_key_id or next(iter(keys))
        if self._active_key_id not in self._keys:
            raise ValueError(f"active key id {self._active_key_id!r} is not in the key ring")

    @property
    def active_key_id(self) -> str:
        return self._active_key_id

    @classmethod
    def from_settings(cls) -> "CodeCipher":
        """Build the cipher from CODE_ENCRYPTION_KEYS / CODE_ENCRYPTION_ACTIVE_KEY_ID."""

        if not config.CODE_ENCRYPTION_KEYS:
            raise RuntimeError(
                "Missing environment variable: CODE_ENCRYPTION_KEYS. "
                "Set it to comma-separated key_id:base64key pairs."
            )
        try:
            ring = parse_key_ring(config.CODE_ENCRYPTION_KEYS)
            return cls(ring, config.CODE_ENCRYPTION_ACTIVE_KEY_ID)
        except ValueError as e:
            raise RuntimeError(f"Invalid code encryption settings: {e}") from None

    def encrypt(self, plaintext: str) -> EncryptedCode:
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._keys[self._active_key_id].encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedCode(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
            key_id=self._active_key_id,
        )

    def decrypt(
        self,
        ciphertext: str,
        nonce: str,
        key_id: str,
        *,
        code_id: Optional[UUID] = None,
    ) -> str:
        """
        Decrypt one code.

        Raises:
            DecryptionError: unknown key id, corrupt ciphertext/nonce or failed authentication
        """

        aead = self._keys.get(key_id)
        if aead is None:
            raise DecryptionError(code_id, f"unknown key id {key_id!r}")
        try:
            raw_nonce = base64.b64decode(nonce, validate=True)
            raw_ciphertext = base64.b64decode(ciphertext, validate=True)
            if len(raw_nonce) != _NONCE_BYTES:
                raise ValueError(f"nonce must be {_NONCE_BYTES} bytes")
            plaintext = aead.decrypt(raw_nonce, raw_ciphertext, None)
            return plaintext.decode("utf-8")
        except InvalidTag:
            raise DecryptionError(code_id, "authentication failed") from None
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(code_id, str(e)) from None


__all__ = ["CodeCipher", "EncryptedCode", "parse_key_ring"]
