"""
In-memory storage backend.

This backend keeps ratings in memory only, useful for:
- Unit testing
- Development
- Single-process demos
"""

import copy
import threading
from collections import OrderedDict
from typing import Any

from rating_models import RatingRecord
from storage.base import RatingStore, StorageIntegrityError, StorageWriteError


class MemoryRatingStore(RatingStore):
    """
    In-memory storage backend.

    All data is lost when the process exits. Thread-safe operations.
    """

    def __init__(self):
        self._records: dict[str, RatingRecord] = {}
        self._active: dict[tuple[str, str], str] = {}
        self._by_subject: dict[str, OrderedDict[str, None]] = {}
        self._subjects: dict[str, float] = {}
        # RLock: get_info calls count, which lists subjects
        self._lock = threading.RLock()

    def find_active(self, identity: str, subject_id: str) -> RatingRecord | None:
        with self._lock:
            record_id = self._active.get((identity, subject_id))
            if record_id is None:
                return None
            return copy.deepcopy(self._records[record_id])

    def insert(self, record: RatingRecord) -> None:
        with self._lock:
            pair = (record.identity, record.subject_id)
            if record.active and pair in self._active:
                raise StorageIntegrityError(
                    f"Active rating already exists for subject {record.subject_id}"
                )
            if record.id in self._records:
                raise StorageIntegrityError(f"Duplicate record id {record.id}")

            self._records[record.id] = copy.deepcopy(record)
            if record.active:
                self._active[pair] = record.id
            self._by_subject.setdefault(record.subject_id, OrderedDict())[record.id] = None

    def update(self, record: RatingRecord) -> None:
        with self._lock:
            current = self._records.get(record.id)
            if current is None:
                raise StorageWriteError(f"Record not found: {record.id}")

            pair = (record.identity, record.subject_id)
            if not record.active and self._active.get(pair) == record.id:
                del self._active[pair]
            elif record.active:
                self._active[pair] = record.id

            self._records[record.id] = copy.deepcopy(record)
            order = self._by_subject.setdefault(record.subject_id, OrderedDict())
            order[record.id] = None
            order.move_to_end(record.id)

    def get(self, record_id: str) -> RatingRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def list_for_subject(self, subject_id: str, active_only: bool = True) -> list[RatingRecord]:
        with self._lock:
            ids = self._by_subject.get(subject_id, ())
            records = [self._records[i] for i in ids]
            if active_only:
                records = [r for r in records if r.active]
            return copy.deepcopy(records)

    def list_subjects(self) -> list[str]:
        with self._lock:
            return sorted(set(self._by_subject) | set(self._subjects))

    def register_subject(self, subject_id: str, created_at: float) -> None:
        with self._lock:
            self._subjects.setdefault(subject_id, created_at)

    def subject_created_at(self, subject_id: str) -> float | None:
        with self._lock:
            return self._subjects.get(subject_id)

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def count(self) -> int:
        with self._lock:
            return len(self._active)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info.update(
                {
                    "record_count": len(self._records),
                    "active_count": self.count(),
                    "subject_count": len(self.list_subjects()),
                }
            )
        return info

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._active.clear()
            self._by_subject.clear()
            self._subjects.clear()
