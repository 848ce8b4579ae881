"""
Tests for the persistence adapters (database.py).
Every test runs against both InMemoryAdapter and SQLiteAdapter.
"""
import pytest
import factories  # noqa: F401  (sys.path setup)

from onboarding_engine.database import InMemoryAdapter, SQLiteAdapter
from onboarding_engine.errors import NotFoundError, StorageError, ValidationError


@pytest.fixture(params=["memory", "sqlite"])
def adapter(request, tmp_path):
    if request.param == "memory":
        return InMemoryAdapter()
    return SQLiteAdapter(tmp_path / "records.db")


class TestUpsertAndGet:
    def test_get_returns_stored_record(self, adapter):
        adapter.upsert("sessions", ("s1",), {"session_id": "s1", "status": "active"})
        assert adapter.get("sessions", ("s1",)) == {"session_id": "s1", "status": "active"}

    def test_update_replaces(self, adapter):
        adapter.upsert("sessions", ("s1",), {"session_id": "s1", "status": "active"})
        stored = adapter.upsert("sessions", ("s1",), {"session_id": "s1", "status": "completed"})
        assert stored["status"] == "completed"
        assert len(adapter.query("sessions")) == 1

    def test_ignore_keeps_first_writer(self, adapter):
        first = adapter.upsert("achievements", ("s1", "graduate"), {"id": "a1"}, on_conflict="ignore")
        second = adapter.upsert("achievements", ("s1", "graduate"), {"id": "a2"}, on_conflict="ignore")
        assert first == second == {"id": "a1"}

    def test_missing_key(self, adapter):
        with pytest.raises(NotFoundError):
            adapter.get("sessions", ("nope",))

    def test_tables_are_separate(self, adapter):
        adapter.upsert("sessions", ("x",), {"v": 1})
        adapter.upsert("paths", ("x",), {"v": 2})
        assert adapter.get("sessions", ("x",)) == {"v": 1}
        assert adapter.get("paths", ("x",)) == {"v": 2}

    @pytest.mark.parametrize("key", ["s1", (), ("",), ("s1", 3)])
    def test_bad_key_rejected(self, adapter, key):
        with pytest.raises(ValidationError):
            adapter.upsert("sessions", key, {})

    def test_bad_conflict_mode(self, adapter):
        with pytest.raises(ValidationError):
            adapter.upsert("sessions", ("s1",), {}, on_conflict="merge")


class TestQuery:
    def test_insertion_order_and_filter(self, adapter):
        for i, path in enumerate(["p1", "p2", "p1"]):
            adapter.upsert("sessions", (f"s{i}",), {"session_id": f"s{i}", "path_id": path})
        rows = adapter.query("sessions", {"path_id": "p1"})
        assert [r["session_id"] for r in rows] == ["s0", "s2"]

    def test_none_filter_matches_null(self, adapter):
        adapter.upsert("paths", ("a",), {"path_id": "a", "organization_id": None})
        adapter.upsert("paths", ("b",), {"path_id": "b", "organization_id": "org_1"})
        rows = adapter.query("paths", {"organization_id": None})
        assert [r["path_id"] for r in rows] == ["a"]

    def test_unknown_table_is_empty(self, adapter):
        assert adapter.query("nothing_here") == []


class TestSQLiteFaults:
    def test_directory_as_database(self, tmp_path):
        with pytest.raises(StorageError):
            SQLiteAdapter(tmp_path)

    def test_data_survives_reopen(self, tmp_path):
        db = tmp_path / "shared.db"
        SQLiteAdapter(db).upsert("sessions", ("s1",), {"session_id": "s1"})
        assert SQLiteAdapter(db).get("sessions", ("s1",)) == {"session_id": "s1"}
