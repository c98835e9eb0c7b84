"""
Code fingerprints.

A fingerprint is the SHA-256 hex digest of the trimmed plaintext code. It is
computed once when a code is written and indexed, so duplicate detection never
needs to decrypt stored inventory.
"""

from __future__ import annotations

import hashlib


def normalize_code(plaintext: str) -> str:
    return plaintext.strip()


def fingerprint_code(plaintext: str) -> str:
    return hashlib.sha256(normalize_code(plaintext).encode("utf-8")).hexdigest()


def mask_code(plaintext: str) -> str:
    """
    Mask a code for error reports: first three and last two characters around a
    fixed run of asterisks, so the masked length does not reveal the code length.
    Codes of five characters or fewer are fully masked.
    """

    value = normalize_code(plaintext)
    if len(value) <= 5:
        return "*" * len(value)
    return f"{value[:3]}{'*' * 10}{value[-2:]}"


__all__ = ["fingerprint_code", "mask_code", "normalize_code"]
