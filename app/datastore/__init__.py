# ============================================================================
# SLP SAFETY - Data Store
# ============================================================================
# Access to the hosted safety tables, view tokens, report recipients
# and sign-in.  get_store() returns the process-wide store; tests swap
# in an InMemoryRecordStore with set_store().
# ============================================================================

import logging
from typing import Optional

from .base import (
    CATEGORIES,
    EXCLUDE,
    INCLUDE,
    AuthenticationError,
    DataStoreError,
    RecordCategory,
    RecordStore,
    TokenNotFound,
    ViewToken,
)
from .memory import InMemoryRecordStore
from .supabase import SupabaseRecordStore

logger = logging.getLogger("datastore")

_store: Optional[RecordStore] = None


def get_store() -> RecordStore:
    global _store
    if _store is None:
        from app.reporting.config import get_config

        url = get_config("supabase_url")
        if not url:
            logger.warning("supabase_url is not configured; data queries will fail")
        _store = SupabaseRecordStore(
            url=url,
            api_key=get_config("supabase_key"),
            timeout=get_config("fetch_timeout_seconds", 30),
        )
    return _store


def set_store(store: Optional[RecordStore]) -> None:
    global _store
    _store = store


__all__ = [
    "CATEGORIES",
    "EXCLUDE",
    "INCLUDE",
    "AuthenticationError",
    "DataStoreError",
    "InMemoryRecordStore",
    "RecordCategory",
    "RecordStore",
    "SupabaseRecordStore",
    "TokenNotFound",
    "ViewToken",
    "get_store",
    "set_store",
]
