"""
JSON file storage backend.

Persists ratings and subject registrations to a local JSON file. The
whole dataset is held in memory and the file is rewritten atomically
after every mutation, which suits development and small deployments.

File format:
    {
        "version": 1,
        "subjects": {"<subject_id>": <created_at>},
        "records": [<RatingRecord.to_dict()>, ...]   # commit order
    }
"""

import json
import os
import shutil
import threading
from datetime import datetime
from typing import Any

from rating_models import RatingRecord
from storage.base import StorageError, StorageReadError, StorageWriteError
from storage.memory import MemoryRatingStore

FORMAT_VERSION = 1


class JSONFileRatingStore(MemoryRatingStore):
    """
    JSON file storage backend.

    Reads go to the in-memory indexes; writes update them and then flush
    the file (write to temp, then rename). A failed flush rolls the
    in-memory change back and raises StorageWriteError.
    """

    def __init__(self, file_path: str = "ratings_data.json"):
        super().__init__()
        self.file_path = file_path
        self._file_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        try:
            if not os.path.exists(self.file_path):
                return
            with open(self.file_path, encoding="utf-8") as f:
                raw_data = f.read()
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to read {self.file_path}: {e}") from e

        if not raw_data.strip():
            return

        try:
            data = json.loads(raw_data)
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e

        with self._lock:
            for subject_id, created_at in (data.get("subjects") or {}).items():
                MemoryRatingStore.register_subject(self, subject_id, float(created_at))
            for item in data.get("records") or []:
                try:
                    record = RatingRecord.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    raise StorageReadError(f"Malformed record in {self.file_path}: {e}") from e
                MemoryRatingStore.insert(self, record)

    def _snapshot(self) -> dict[str, Any]:
        with self._lock:
            records = []
            for subject_id in self._by_subject:
                records.extend(self.list_for_subject(subject_id, active_only=False))
            return {
                "version": FORMAT_VERSION,
                "subjects": dict(self._subjects),
                "records": [r.to_dict() for r in records],
            }

    def _flush(self) -> None:
        data = json.dumps(self._snapshot(), indent=2, ensure_ascii=False)
        temp_path = f"{self.file_path}.tmp"
        with self._file_lock:
            try:
                with open(temp_path, "w", encoding="utf-8") as f:
                    f.write(data)
                os.replace(temp_path, self.file_path)
            except PermissionError as e:
                raise StorageWriteError(f"Permission denied: {self.file_path}") from e
            except OSError as e:
                raise StorageWriteError(f"OS error: {e}") from e

    def insert(self, record: RatingRecord) -> None:
        with self._lock:
            super().insert(record)
            try:
                self._flush()
            except StorageWriteError:
                self._discard(record)
                raise

    def update(self, record: RatingRecord) -> None:
        with self._lock:
            previous = self.get(record.id)
            super().update(record)
            try:
                self._flush()
            except StorageWriteError:
                if previous is not None:
                    super().update(previous)
                raise

    def register_subject(self, subject_id: str, created_at: float) -> None:
        with self._lock:
            if subject_id in self._subjects:
                return
            super().register_subject(subject_id, created_at)
            try:
                self._flush()
            except StorageWriteError:
                self._subjects.pop(subject_id, None)
                raise

    def _discard(self, record: RatingRecord) -> None:
        self._records.pop(record.id, None)
        pair = (record.identity, record.subject_id)
        if self._active.get(pair) == record.id:
            del self._active[pair]
        order = self._by_subject.get(record.subject_id)
        if order is not None:
            order.pop(record.id, None)
            if not order:
                del self._by_subject[record.subject_id]

    def is_available(self) -> bool:
        """True if the file's directory exists and is writable."""
        directory = os.path.dirname(self.file_path) or "."
        return os.path.isdir(directory) and os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
        })

        if os.path.exists(self.file_path):
            try:
                stat = os.stat(self.file_path)
                info["file_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass

        return info

    def backup(self, backup_path: str | None = None) -> str:
        """
        Create a backup of the storage file.

        Args:
            backup_path: Path for backup file (default: adds a timestamped .backup suffix)

        Returns:
            Path to the backup file

        Raises:
            StorageError: If backup fails
        """
        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = f"{self.file_path}.{timestamp}.backup"

        with self._file_lock:
            if not os.path.exists(self.file_path):
                raise StorageError("No file to backup")
            try:
                shutil.copy2(self.file_path, backup_path)
            except OSError as e:
                raise StorageError(f"Backup failed: {e}") from e
        return backup_path
