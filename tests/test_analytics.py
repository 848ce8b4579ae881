"""
Tests for the analytics sinks (analytics.py).
"""
import logging

from factories import FailingSink, RecordingSink, make_engine

from onboarding_engine.analytics import (
    LoggingAnalyticsSink,
    NullAnalyticsSink,
    StoreAnalyticsSink,
    emit_safely,
)
from onboarding_engine.database import InMemoryAdapter


class TestEmitSafely:
    def test_failing_sink_is_logged_not_raised(self, caplog):
        with caplog.at_level(logging.WARNING, logger="onboarding_engine.analytics"):
            emit_safely(FailingSink(), "step_progress", {"step_id": "A"})
        assert "step_progress" in caplog.text

    def test_none_sink_is_noop(self):
        emit_safely(None, "anything", {})

    def test_payload_forwarded(self):
        sink = RecordingSink()
        emit_safely(sink, "path_generated", {"path_id": "p"})
        assert sink.events == [("path_generated", {"path_id": "p"})]


class TestStoreAnalyticsSink:
    def test_events_written_to_table(self, clock):
        adapter = InMemoryAdapter()
        StoreAnalyticsSink(adapter, clock).emit("step_progress", {"session_id": "s1", "step_id": "A"})
        rows = adapter.query("analytics_events")
        assert len(rows) == 1
        assert rows[0]["event_type"] == "step_progress"
        assert rows[0]["session_id"] == "s1"
        assert rows[0]["timestamp"] == clock().isoformat()


class TestEngineWiring:
    def test_default_sink_persists_events(self, tmp_path, clock):
        eng = make_engine(tmp_path, clock=clock)
        assert isinstance(eng.analytics, StoreAnalyticsSink)
        eng.seed_default_paths()
        eng.start_onboarding("user_1", {"role": "developer"})
        types = [r["event_type"] for r in eng.adapter.query("analytics_events")]
        assert "session_started" in types
        assert "path_generated" in types

    def test_disabled_analytics(self, tmp_path, clock):
        eng = make_engine(tmp_path, clock=clock, analytics_enabled=False)
        assert isinstance(eng.analytics, NullAnalyticsSink)


class TestLoggingAnalyticsSink:
    def test_event_logged_at_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="onboarding_engine.analytics"):
            LoggingAnalyticsSink().emit("milestone_reached", {"milestone_key": "graduate"})
        assert "milestone_reached" in caplog.text
        assert "graduate" in caplog.text
