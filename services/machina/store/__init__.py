"""
Record store access for Machina.

Provides init_record_store() for app lifespan and get_record_store() for
services and FastAPI dependencies.
"""

from __future__ import annotations

from machina.logging_config import get_logger
from machina.store.protocol import RecordStore

logger = get_logger(__name__)

# Module-level store instance
_store: RecordStore | None = None


def init_record_store(store: RecordStore | None = None) -> RecordStore:
    """Install the record store. Defaults to the PostgreSQL implementation."""
    global _store  # noqa: PLW0603
    if store is None:
        from machina.store.sql import SqlRecordStore

        store = SqlRecordStore()
    _store = store
    logger.info("Record store initialized", backend=type(store).__name__)
    return store


def get_record_store() -> RecordStore:
    """Return the record store. Raises if not initialized."""
    if _store is None:
        raise RuntimeError("Record store not initialized; call init_record_store() first")
    return _store
