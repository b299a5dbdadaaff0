"""
Storage abstraction layer for the rating engine.

This package provides a pluggable storage backend system for accepted
ratings and subject registrations:

- Memory (default; testing and development)
- JSON file (single-node persistence)
- PostgreSQL (for production scalability)

Usage:
    from storage import get_storage_backend

    # Get configured backend (based on environment)
    store = get_storage_backend()

    store.insert(record)
    existing = store.find_active(identity, subject_id)
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    RatingStore,
    StorageConnectionError,
    StorageError,
    StorageIntegrityError,
    StorageReadError,
    StorageWriteError,
)
from storage.json_file import JSONFileRatingStore
from storage.memory import MemoryRatingStore

# Lazy import for PostgreSQL to avoid requiring psycopg2
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLRatingStore

__all__ = [
    "JSONFileRatingStore",
    "MemoryRatingStore",
    "RatingStore",
    "StorageConnectionError",
    "StorageError",
    "StorageIntegrityError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend() -> RatingStore:
    """
    Get the configured storage backend based on environment variables.

    Environment variables:
        STORAGE_BACKEND: Backend type ("memory", "json", "postgresql")
        RATINGS_DATA_FILE: Path for JSON file storage (default: ratings_data.json)
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Configured RatingStore instance
    """
    backend_type = os.getenv("STORAGE_BACKEND", "memory").lower()

    if backend_type == "json":
        data_file = os.getenv("RATINGS_DATA_FILE", "ratings_data.json")
        return JSONFileRatingStore(data_file)

    elif backend_type == "postgresql" or backend_type == "postgres":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLRatingStore

        return PostgreSQLRatingStore(database_url)

    elif backend_type == "memory":
        return MemoryRatingStore()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
