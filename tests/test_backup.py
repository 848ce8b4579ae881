"""
Tests for LocalBackup (backup.py).
Validates cache writes, restore fallbacks, corrupt-file handling and sync.
"""
import logging

import pytest
from factories import make_engine, make_path

from datetime import timedelta

from onboarding_engine.backup import (
    SOURCE_CACHE,
    SOURCE_REMOTE,
    BackupPayload,
    LocalBackup,
)
from onboarding_engine.errors import NotFoundError
from onboarding_engine.models import StepStatus


def _edit_cache(backup, session_id, step_id, **changes):
    """Rewrite one cached record in place."""
    target = backup.cache_file(session_id)
    payload = BackupPayload.model_validate_json(target.read_text(encoding="utf-8"))
    payload.records = [
        r.model_copy(update=changes) if r.step_id == step_id else r for r in payload.records
    ]
    target.write_text(payload.model_dump_json(), encoding="utf-8")


@pytest.fixture
def started(engine, session):
    engine.store.start_step(session.session_id, "A")
    return session


class TestBackupAndRestore:
    def test_backup_writes_file(self, engine, started):
        payload = engine.backup.backup(started.session_id)
        target = engine.backup.cache_file(started.session_id)
        assert target.exists()
        assert target.name == f"onboarding_backup_{started.session_id}.json"
        assert [r.step_id for r in payload.records] == ["A"]

    def test_restore_prefers_cache(self, engine, started):
        engine.backup.backup(started.session_id)
        restored = engine.backup.restore(started.session_id)
        assert restored.source == SOURCE_CACHE
        assert restored.last_backup is not None
        assert restored.records[0].status == StepStatus.IN_PROGRESS

    def test_restore_without_cache_uses_store(self, engine, started):
        restored = engine.backup.restore(started.session_id)
        assert restored.source == SOURCE_REMOTE
        assert [r.step_id for r in restored.records] == ["A"]

    def test_corrupt_cache_is_discarded(self, engine, started, caplog):
        engine.backup.backup(started.session_id)
        target = engine.backup.cache_file(started.session_id)
        target.write_text("{not json", encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="onboarding_engine.backup"):
            restored = engine.backup.restore(started.session_id)
        assert restored.source == SOURCE_REMOTE
        assert not target.exists()
        assert "corrupt" in caplog.text

    def test_cache_of_other_session_is_corrupt(self, engine, started, abc_path):
        other = engine.store.start_session("user_2", abc_path.path_id)
        engine.backup.backup(other.session_id)
        engine.backup.cache_file(other.session_id).rename(engine.backup.cache_file(started.session_id))
        assert engine.backup.restore(started.session_id).source == SOURCE_REMOTE

    def test_backup_of_unknown_session(self, engine, abc_path):
        with pytest.raises(NotFoundError):
            engine.backup.backup("sess_missing")

    def test_clear(self, engine, started):
        engine.backup.backup(started.session_id)
        assert engine.backup.clear(started.session_id) is True
        assert engine.backup.clear(started.session_id) is False


class TestSync:
    def test_without_cache_snapshots_store(self, engine, started):
        result = engine.backup.sync(started.session_id)
        assert result.synchronized
        assert result.conflicts == []
        assert engine.backup.cache_file(started.session_id).exists()

    def test_newer_store_wins(self, engine, started, clock):
        sid = started.session_id
        engine.backup.backup(sid)
        clock.advance(minutes=5)
        engine.store.update_step_time(sid, "A", 4)

        result = engine.backup.sync(sid)
        assert result.written_back == []
        assert len(result.conflicts) == 1
        assert result.conflicts[0].resolution == SOURCE_REMOTE
        assert result.records[0].time_spent == 4

    def test_newer_cache_is_written_back(self, engine, started, clock):
        sid = started.session_id
        engine.backup.backup(sid)
        _edit_cache(engine.backup, sid, "A", time_spent=7.0,
                    updated_at=clock() + timedelta(minutes=10))

        result = engine.backup.sync(sid)
        assert result.written_back == ["A"]
        assert result.conflicts[0].resolution == SOURCE_CACHE
        assert engine.store.get_progress_record(sid, "A").time_spent == 7.0

    def test_tie_goes_to_store(self, engine, started):
        sid = started.session_id
        engine.backup.backup(sid)
        _edit_cache(engine.backup, sid, "A", time_spent=99.0)

        result = engine.backup.sync(sid)
        assert result.conflicts[0].resolution == SOURCE_REMOTE
        assert engine.store.get_progress_record(sid, "A").time_spent == 0.0
        restored = engine.backup.restore(sid)
        assert restored.records[0].time_spent == 0.0, "cache refreshed with the merged view"

    def test_identical_copies_have_no_conflicts(self, engine, started):
        engine.backup.backup(started.session_id)
        assert engine.backup.sync(started.session_id).conflicts == []

    def test_finished_session_not_written_back(self, engine, started, clock):
        sid = started.session_id
        engine.backup.backup(sid)
        _edit_cache(engine.backup, sid, "A", time_spent=7.0,
                    updated_at=clock() + timedelta(minutes=10))
        engine.store.abandon_session(sid)

        result = engine.backup.sync(sid)
        assert not result.synchronized
        assert result.written_back == []
        assert engine.store.get_progress_record(sid, "A").time_spent == 0.0
        assert result.records[0].time_spent == 0.0
        cached = engine.backup.restore(sid)
        assert cached.source == SOURCE_CACHE
        assert cached.records[0].time_spent == 0.0, "cache drops the rejected local edit"


def test_cache_dir_created_on_demand(tmp_path, clock):
    eng = make_engine(tmp_path, clock=clock)
    eng.paths.publish_path(make_path())
    s = eng.store.start_session("user_1", "path_abc")
    backup = LocalBackup(eng.store, tmp_path / "deep" / "cache")
    backup.backup(s.session_id)
    assert backup.cache_file(s.session_id).exists()
