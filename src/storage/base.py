"""
Abstract base class for rating storage backends.

This module defines the interface that all storage backends must implement.
Records are the source of truth; statistics are always derivable from them.
"""

from abc import ABC, abstractmethod
from typing import Any

from rating_models import RatingRecord


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class StorageIntegrityError(StorageWriteError):
    """Raised when a write would create a second active rating for one (identity, subject) pair."""
    pass


class RatingStore(ABC):
    """
    Abstract base class for rating storage backends.

    Every backend enforces uniqueness of active records per
    (identity, subject_id) and returns a subject's records in commit
    order: creation order, with an updated record moving to the end.
    """

    @abstractmethod
    def find_active(self, identity: str, subject_id: str) -> RatingRecord | None:
        """
        Look up the active record for an (identity, subject) pair.

        Raises:
            StorageReadError: If reading fails
        """

    @abstractmethod
    def insert(self, record: RatingRecord) -> None:
        """
        Persist a new record.

        Raises:
            StorageIntegrityError: If an active record already exists for the pair
            StorageWriteError: If writing fails
        """

    @abstractmethod
    def update(self, record: RatingRecord) -> None:
        """
        Replace an existing record (same id) in place.

        Raises:
            StorageWriteError: If the record does not exist or writing fails
        """

    @abstractmethod
    def get(self, record_id: str) -> RatingRecord | None:
        """Get a record by id."""

    @abstractmethod
    def list_for_subject(self, subject_id: str, active_only: bool = True) -> list[RatingRecord]:
        """Get a subject's records in commit order."""

    @abstractmethod
    def list_subjects(self) -> list[str]:
        """Get every subject id that has records or a registration."""

    @abstractmethod
    def register_subject(self, subject_id: str, created_at: float) -> None:
        """Record a subject's creation timestamp (first registration wins)."""

    @abstractmethod
    def subject_created_at(self, subject_id: str) -> float | None:
        """Get a subject's creation timestamp, if registered."""

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """

    def count(self) -> int:
        """Total number of active records."""
        return sum(len(self.list_for_subject(s)) for s in self.list_subjects())

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
