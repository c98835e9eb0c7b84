"""
Environment-driven settings.

Values are read once from the process environment (and `.env` in the project
root, via python-dotenv). Nothing here talks to the database or builds keys;
consumers validate the values they need when they first use them.

Environment variables:
- SUPABASE_URL / SUPABASE_KEY: Supabase project URL and server-side API key
- CODE_ENCRYPTION_KEYS: comma-separated `key_id:base64key` pairs
- CODE_ENCRYPTION_ACTIVE_KEY_ID: key id used for new encryptions (default: first key)
- DEFAULT_CURRENCY: ISO currency for checkouts (default: USD)
- DUPLICATE_CHECK_CHUNK_SIZE: fingerprints per duplicate-index query (default: 100)
- ALLOCATION_MAX_ATTEMPTS: retries when a concurrent buyer takes selected codes (default: 3)
- LISTING_SAVE_MAX_ATTEMPTS: retries on listing version conflicts (default: 3)
- LOG_LEVEL: logging level for scripts (default: INFO)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise RuntimeError(f"Environment variable {name} must be > 0, got {value}")
    return value


SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
SUPABASE_KEY: str | None = os.getenv("SUPABASE_KEY")

CODE_ENCRYPTION_KEYS: str | None = os.getenv("CODE_ENCRYPTION_KEYS")
CODE_ENCRYPTION_ACTIVE_KEY_ID: str | None = os.getenv("CODE_ENCRYPTION_ACTIVE_KEY_ID")

DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "USD")
DUPLICATE_CHECK_CHUNK_SIZE: int = _int_env("DUPLICATE_CHECK_CHUNK_SIZE", 100)
ALLOCATION_MAX_ATTEMPTS: int = _int_env("ALLOCATION_MAX_ATTEMPTS", 3)
LISTING_SAVE_MAX_ATTEMPTS: int = _int_env("LISTING_SAVE_MAX_ATTEMPTS", 3)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: Optional[str] = None) -> None:
    """Basic console logging for scripts and one-off jobs."""

    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "ALLOCATION_MAX_ATTEMPTS",
    "CODE_ENCRYPTION_ACTIVE_KEY_ID",
    "CODE_ENCRYPTION_KEYS",
    "DEFAULT_CURRENCY",
    "DUPLICATE_CHECK_CHUNK_SIZE",
    "LISTING_SAVE_MAX_ATTEMPTS",
    "LOG_LEVEL",
    "SUPABASE_KEY",
    "SUPABASE_URL",
    "configure_logging",
]
