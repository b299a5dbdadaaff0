"""
Tests for rating storage backends.
"""

import json
import os
import sys
import tempfile
import threading
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest

from rating_models import RatingRecord
from storage import StorageError, get_storage_backend
from storage.base import StorageIntegrityError, StorageReadError, StorageWriteError
from storage.json_file import JSONFileRatingStore
from storage.memory import MemoryRatingStore


def make_record(identity="a" * 64, subject_id="cafe-1", score=4, accepted_at=100.0, **kwargs):
    return RatingRecord(
        subject_id=subject_id,
        identity=identity,
        score=score,
        submitted_at=accepted_at,
        accepted_at=accepted_at,
        **kwargs,
    )


class TestMemoryRatingStore:
    """Tests for MemoryRatingStore backend."""

    def test_insert_and_find_active(self):
        store = MemoryRatingStore()
        record = make_record()
        store.insert(record)

        found = store.find_active(record.identity, record.subject_id)
        assert found == record
        assert store.find_active("b" * 64, record.subject_id) is None

    def test_second_active_record_for_pair_rejected(self):
        store = MemoryRatingStore()
        store.insert(make_record())
        with pytest.raises(StorageIntegrityError):
            store.insert(make_record())
        assert store.count() == 1

    def test_integrity_error_is_write_error(self):
        assert issubclass(StorageIntegrityError, StorageWriteError)
        assert issubclass(StorageWriteError, StorageError)

    def test_update_in_place(self):
        store = MemoryRatingStore()
        record = make_record(score=5)
        store.insert(record)

        record.score = 2
        record.revision = 1
        store.update(record)

        found = store.find_active(record.identity, record.subject_id)
        assert found.score == 2
        assert found.revision == 1
        assert store.count() == 1

    def test_update_missing_record(self):
        with pytest.raises(StorageWriteError):
            MemoryRatingStore().update(make_record())

    def test_list_for_subject_in_commit_order(self):
        store = MemoryRatingStore()
        first = make_record(identity="a" * 64, score=1)
        second = make_record(identity="b" * 64, score=2)
        store.insert(first)
        store.insert(second)

        first.score = 5
        store.update(first)

        ids = [r.id for r in store.list_for_subject("cafe-1")]
        assert ids == [second.id, first.id]

    def test_deep_copy_isolation(self):
        store = MemoryRatingStore()
        record = make_record()
        store.insert(record)

        record.score = 1
        assert store.get(record.id).score == 4

        fetched = store.get(record.id)
        fetched.score = 2
        assert store.get(record.id).score == 4

    def test_subject_registration_first_wins(self):
        store = MemoryRatingStore()
        store.register_subject("cafe-1", 10.0)
        store.register_subject("cafe-1", 20.0)
        assert store.subject_created_at("cafe-1") == 10.0
        assert store.subject_created_at("unknown") is None

    def test_list_subjects(self):
        store = MemoryRatingStore()
        store.register_subject("registered", 1.0)
        store.insert(make_record(subject_id="rated"))
        assert store.list_subjects() == ["rated", "registered"]

    def test_get_info(self):
        store = MemoryRatingStore()
        store.insert(make_record())
        info = store.get_info()
        assert info["backend_type"] == "MemoryRatingStore"
        assert info["available"] is True
        assert info["active_count"] == 1

    def test_concurrent_inserts_keep_one_active(self):
        store = MemoryRatingStore()
        outcomes = []

        def insert():
            try:
                store.insert(make_record())
                outcomes.append("ok")
            except StorageIntegrityError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=insert) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert store.count() == 1


class TestJSONFileRatingStore:
    """Tests for JSONFileRatingStore backend."""

    def test_nonexistent_file_starts_empty(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = JSONFileRatingStore(os.path.join(tmpdir, "missing.json"))
            assert store.count() == 0

    def test_persistence_across_instances(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "ratings.json")
            store = JSONFileRatingStore(path)
            record = make_record(comment="Great", photo_refs=("p1",), aspects={"quality": 4})
            store.insert(record)
            store.register_subject("cafe-1", 50.0)

            reloaded = JSONFileRatingStore(path)
            assert reloaded.find_active(record.identity, "cafe-1") == record
            assert reloaded.subject_created_at("cafe-1") == 50.0

    def test_commit_order_survives_reload(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "ratings.json")
            store = JSONFileRatingStore(path)
            first = make_record(identity="a" * 64)
            second = make_record(identity="b" * 64)
            store.insert(first)
            store.insert(second)
            first.score = 1
            first.revision = 1
            store.update(first)

            reloaded = JSONFileRatingStore(path)
            assert [r.id for r in reloaded.list_for_subject("cafe-1")] == [second.id, first.id]

    def test_json_format(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "ratings.json")
            store = JSONFileRatingStore(path)
            store.insert(make_record())

            with open(path) as f:
                data = json.load(f)
            assert data["version"] == 1
            assert len(data["records"]) == 1
            assert data["records"][0]["subject_id"] == "cafe-1"

    def test_invalid_json(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "ratings.json")
            with open(path, "w") as f:
                f.write("{not json")
            with pytest.raises(StorageReadError):
                JSONFileRatingStore(path)

    def test_failed_flush_rolls_back(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = JSONFileRatingStore(os.path.join(tmpdir, "ratings.json"))
            record = make_record()
            with patch("storage.json_file.os.replace", side_effect=OSError("disk full")):
                with pytest.raises(StorageWriteError):
                    store.insert(record)
            assert store.find_active(record.identity, record.subject_id) is None
            assert store.count() == 0

    def test_backup(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "ratings.json")
            store = JSONFileRatingStore(path)
            store.insert(make_record())
            backup_path = store.backup(os.path.join(tmpdir, "backup.json"))
            with open(backup_path) as f:
                assert len(json.load(f)["records"]) == 1


class TestGetStorageBackend:
    def test_default_memory(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        assert isinstance(get_storage_backend(), MemoryRatingStore)

    def test_json_backend(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        monkeypatch.setenv("RATINGS_DATA_FILE", str(tmp_path / "data.json"))
        store = get_storage_backend()
        assert isinstance(store, JSONFileRatingStore)
        assert store.file_path == str(tmp_path / "data.json")

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "cassandra")
        with pytest.raises(StorageError):
            get_storage_backend()

    def test_postgres_requires_database_url(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "postgresql")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(StorageError):
            get_storage_backend()


class TestPostgreSQLRatingStore:
    """PostgreSQL backend against a mocked connection pool."""

    @pytest.fixture
    def pg(self):
        psycopg2 = pytest.importorskip("psycopg2")
        conn = MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value
        pool = MagicMock()
        pool.getconn.return_value = conn
        with patch("psycopg2.pool.ThreadedConnectionPool", return_value=pool):
            from storage.postgresql import PostgreSQLRatingStore

            store = PostgreSQLRatingStore(
                "postgresql://user:pw@db.internal:5433/ratings", auto_create_tables=False
            )
        return store, conn, cursor, psycopg2

    def test_connection_info_parsed(self, pg):
        store, _, _, _ = pg
        assert store._host == "db.internal"
        assert store._port == 5433
        assert store._database == "ratings"

    def test_insert_commits(self, pg):
        store, conn, cursor, _ = pg
        store.insert(make_record())
        sql = cursor.execute.call_args[0][0]
        assert sql.startswith("INSERT INTO ratings")
        conn.commit.assert_called_once()

    def test_unique_violation_maps_to_integrity_error(self, pg):
        store, conn, cursor, psycopg2 = pg
        cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key")
        with pytest.raises(StorageIntegrityError):
            store.insert(make_record())
        conn.rollback.assert_called_once()

    def test_update_missing_row(self, pg):
        store, _, cursor, _ = pg
        cursor.rowcount = 0
        with pytest.raises(StorageWriteError):
            store.update(make_record())

    def test_find_active_decodes_row(self, pg):
        store, _, cursor, _ = pg
        record = make_record(aspects={"quality": 4}, photo_refs=("p1",))
        cursor.fetchall.return_value = [
            (
                record.id, record.subject_id, record.identity, record.score, None,
                ["p1"], {"quality": 4}, record.submitted_at, record.accepted_at,
                0, True, "approved",
            )
        ]
        found = store.find_active(record.identity, record.subject_id)
        assert found == record

    def test_read_failure_maps_to_read_error(self, pg):
        store, _, cursor, psycopg2 = pg
        cursor.execute.side_effect = psycopg2.OperationalError("gone")
        with pytest.raises(StorageReadError):
            store.get("missing")

    def test_unavailable_when_query_fails(self, pg):
        store, _, cursor, psycopg2 = pg
        cursor.execute.side_effect = psycopg2.OperationalError("gone")
        assert store.is_available() is False
