"""
Supabase client initialization.

This module contains *only* the database connection setup. The shared client is
created on first use so that importing a repository never requires credentials;
`set_supabase()` injects a client (tests, scripts pointing at another project).

Environment variables required:
- SUPABASE_URL: Your Supabase project URL
- SUPABASE_KEY: Your Supabase API key (use a server-side key only on the backend)
"""

from __future__ import annotations

import threading
from typing import Any, Optional

from supabase import create_client  # type: ignore[import-not-found]

import config

_client: Optional[Any] = None
_lock = threading.Lock()


def get_supabase() -> Any:
    """Return the shared Supabase client, creating it from the environment on first call."""

    global _client
    if _client is not None:
        return _client

    with _lock:
        if _client is None:
            if not config.SUPABASE_URL:
                raise RuntimeError(
                    "Missing environment variable: SUPABASE_URL. "
                    "Set SUPABASE_URL to your Supabase project URL."
                )
            if not config.SUPABASE_KEY:
                raise RuntimeError(
                    "Missing environment variable: SUPABASE_KEY. "
                    "Set SUPABASE_KEY to your Supabase API key."
                )
            _client = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
    return _client


def set_supabase(client: Optional[Any]) -> None:
    """Replace the shared client. Passing None resets to lazy creation."""

    global _client
    with _lock:
        _client = client


__all__ = ["get_supabase", "set_supabase"]
