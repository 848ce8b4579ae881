"""
Tests for BlockerAnalyzer and classify_history (blockers.py).
Validates the four classification rules, severity assignment and ordering.
"""
import pytest
from factories import T0, make_path, technical_error, validation_error

from datetime import timedelta

from onboarding_engine.blockers import classify_history, sort_blockers
from onboarding_engine.config import BlockerConfig
from onboarding_engine.models import (
    BlockerCategory,
    ErrorKind,
    ProgressEvent,
    ProgressRecord,
    Severity,
    StepError,
    StepStatus,
)


def _categories(blockers):
    return [b.category for b in blockers]


def _assert_sorted(blockers):
    keys = [(b.severity.rank, b.detected_at) for b in blockers]
    assert keys == sorted(keys, reverse=True), f"Blockers not sorted: {keys}"


# ─── Validation rule ──────────────────────────────────────────────────────────

class TestValidationBlockers:
    def test_three_validation_failures(self, engine, session):
        sid = session.session_id
        for i in range(3):
            engine.store.fail_step(sid, "A", validation_error(f"bad input {i}"))
        blockers = engine.blockers.identify_blockers(sid)

        validation = [b for b in blockers if b.category == BlockerCategory.VALIDATION]
        assert len(validation) == 1
        assert validation[0].related_step_id == "A"
        assert validation[0].evidence["consecutive_failures"] == 3
        assert validation[0].suggested_resolution

    def test_two_failures_not_enough(self, engine, session):
        sid = session.session_id
        for _ in range(2):
            engine.store.fail_step(sid, "A", validation_error())
        assert engine.blockers.identify_blockers(sid) == []

    def test_retries_between_failures_keep_streak(self, engine, session):
        sid = session.session_id
        for _ in range(3):
            engine.store.start_step(sid, "A")
            engine.store.fail_step(sid, "A", validation_error())
        assert BlockerCategory.VALIDATION in _categories(engine.blockers.identify_blockers(sid))

    def test_other_failure_breaks_streak(self, engine, session):
        sid = session.session_id
        engine.store.fail_step(sid, "A", validation_error())
        engine.store.fail_step(sid, "A", validation_error())
        engine.store.fail_step(sid, "A", technical_error())
        engine.store.fail_step(sid, "A", validation_error())
        cats = _categories(engine.blockers.identify_blockers(sid))
        assert BlockerCategory.VALIDATION not in cats
        assert BlockerCategory.TECHNICAL in cats

    def test_completed_step_is_not_blocking(self, engine, session):
        sid = session.session_id
        for _ in range(3):
            engine.store.fail_step(sid, "A", validation_error())
        engine.store.start_step(sid, "A")
        engine.store.track_step_progress(sid, "A", {"status": "completed"})
        assert engine.blockers.identify_blockers(sid) == []


# ─── Technical / engagement rules ─────────────────────────────────────────────

class TestTechnicalAndEngagement:
    def test_single_technical_failure(self, engine, session):
        engine.store.fail_step(session.session_id, "A", technical_error())
        blockers = engine.blockers.identify_blockers(session.session_id)
        assert _categories(blockers) == [BlockerCategory.TECHNICAL]
        assert blockers[0].severity == Severity.CRITICAL, "high + recency bump"

    def test_old_blocker_keeps_base_severity(self, engine, session, clock):
        engine.store.fail_step(session.session_id, "A", technical_error())
        clock.advance(hours=48)
        blockers = engine.blockers.identify_blockers(session.session_id)
        assert blockers[0].severity == Severity.HIGH

    @pytest.mark.parametrize("kind", [ErrorKind.SYSTEM, ErrorKind.TIMEOUT, ErrorKind.NETWORK])
    def test_infrastructure_kinds_are_technical(self, engine, session, kind):
        engine.store.fail_step(session.session_id, "A", {"kind": kind.value, "message": "x"})
        assert _categories(engine.blockers.identify_blockers(session.session_id)) == [
            BlockerCategory.TECHNICAL
        ]

    def test_unknown_error_kind_is_not_a_blocker(self, engine, session):
        engine.store.fail_step(session.session_id, "A", {"kind": "unknown", "message": "?"})
        assert engine.blockers.identify_blockers(session.session_id) == []

    def test_overrun_in_progress_step(self, engine, session):
        sid = session.session_id
        engine.store.start_step(sid, "A")
        engine.store.update_step_time(sid, "A", 31)     # estimated 10 min, multiple 3
        blockers = engine.blockers.identify_blockers(sid)
        assert _categories(blockers) == [BlockerCategory.ENGAGEMENT]
        assert blockers[0].severity == Severity.MEDIUM, "low + recency bump"
        assert blockers[0].evidence["overrun_ratio"] == pytest.approx(3.1)

    def test_exactly_at_limit_is_fine(self, engine, session):
        sid = session.session_id
        engine.store.start_step(sid, "A")
        engine.store.update_step_time(sid, "A", 30)
        assert engine.blockers.identify_blockers(sid) == []


# ─── Pattern rule & ordering ──────────────────────────────────────────────────

class TestPatternAndOrdering:
    def test_same_category_on_two_steps_is_a_pattern(self, engine, session, clock):
        sid = session.session_id
        engine.store.fail_step(sid, "A", technical_error())
        clock.advance(minutes=5)
        engine.store.fail_step(sid, "B", technical_error())
        blockers = engine.blockers.identify_blockers(sid)

        patterns = [b for b in blockers if b.category == BlockerCategory.PATTERN]
        assert len(patterns) == 1
        assert patterns[0].related_step_id is None
        assert patterns[0].evidence == {"category": "technical", "step_ids": ["A", "B"]}
        assert patterns[0].severity == Severity.CRITICAL
        _assert_sorted(blockers)

    def test_ties_broken_by_recency(self, engine, session, clock):
        sid = session.session_id
        engine.store.fail_step(sid, "A", technical_error())
        clock.advance(minutes=10)
        engine.store.fail_step(sid, "B", technical_error())
        technical = [b for b in engine.blockers.identify_blockers(sid)
                     if b.category == BlockerCategory.TECHNICAL]
        assert [b.related_step_id for b in technical] == ["B", "A"]

    def test_clean_session_has_no_blockers(self, engine, session):
        sid = session.session_id
        engine.store.start_step(sid, "A")
        engine.store.track_step_progress(sid, "A", {"status": "completed"})
        assert engine.blockers.identify_blockers(sid) == []

    def test_sort_blockers_mixed(self, engine, session, clock):
        sid = session.session_id
        for _ in range(3):
            engine.store.fail_step(sid, "A", validation_error())
        clock.advance(hours=30)
        engine.store.start_step(sid, "B")
        engine.store.update_step_time(sid, "B", 45)
        engine.store.fail_step(sid, "C", technical_error())
        blockers = engine.blockers.identify_blockers(sid)
        _assert_sorted(blockers)
        assert blockers[0].category == BlockerCategory.TECHNICAL


# ─── Pure classification ──────────────────────────────────────────────────────

def _event(step_id, status, minutes, kind=None):
    return ProgressEvent(
        event_id    = f"evt_{step_id}_{minutes}",
        session_id  = "sess_pure",
        step_id     = step_id,
        status      = status,
        last_error  = StepError(kind=kind, message="x") if kind else None,
        recorded_at = T0 + timedelta(minutes=minutes),
    )


class TestClassifyHistory:
    def test_threshold_is_configurable(self):
        history = [
            _event("A", StepStatus.FAILED, 1, ErrorKind.INPUT),
            _event("A", StepStatus.FAILED, 2, ErrorKind.INPUT),
        ]
        records = [ProgressRecord(session_id="sess_pure", step_id="A",
                                  status=StepStatus.FAILED, updated_at=T0)]
        config = BlockerConfig(validation_threshold=2)
        blockers = classify_history(history, records, make_path(), config, T0 + timedelta(hours=1))
        assert _categories(blockers) == [BlockerCategory.VALIDATION]

    def test_custom_category_severity(self):
        history = [_event("A", StepStatus.FAILED, 1, ErrorKind.NETWORK)]
        config = BlockerConfig(
            recency_window_hours=0,
            category_severity={BlockerCategory.TECHNICAL: Severity.LOW},
        )
        blockers = classify_history(history, [], make_path(), config, T0 + timedelta(days=1))
        assert blockers[0].severity == Severity.LOW

    def test_empty_history(self):
        assert classify_history([], [], make_path(), BlockerConfig(), T0) == []

    def test_sort_blockers_is_stable_on_empty(self):
        assert sort_blockers([]) == []
