"""
Tests for MilestoneEngine (milestones.py) and the milestone catalog.
Validates idempotent awards, criteria evaluation and badge progress.
"""
import pytest
from factories import FailingSink, make_engine, make_path

from concurrent.futures import ThreadPoolExecutor

from onboarding_engine.catalog import BadgeDefinition, MilestoneCatalog, MilestoneDefinition
from onboarding_engine.errors import NotFoundError, ValidationError


def _badges(engine, session_id):
    return {b.badge_id: b for b in engine.milestones.get_available_badges(session_id)}


# ─── award_milestone ──────────────────────────────────────────────────────────

class TestAwardMilestone:
    def test_repeated_awards_return_same_achievement(self, engine, session, sink):
        sid = session.session_id
        first = engine.milestones.award_milestone(sid, "first_agent")
        again = [engine.milestones.award_milestone(sid, "first_agent") for _ in range(3)]

        assert all(a == first for a in again)
        assert len(engine.milestones.get_achievements(sid)) == 1
        assert sink.names().count("milestone_reached") == 1, "event only for the creating call"

    def test_concurrent_awards_produce_one_record(self, engine, session, sink):
        sid = session.session_id
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: engine.milestones.award_milestone(sid, "team_player"), range(16)
            ))
        assert len({r.achievement_id for r in results}) == 1
        assert len(engine.milestones.get_achievements(sid)) == 1
        assert sink.names().count("milestone_reached") == 1

    def test_unknown_key_rejected(self, engine, session):
        with pytest.raises(ValidationError):
            engine.milestones.award_milestone(session.session_id, "moon_landing")

    def test_missing_session(self, engine, abc_path):
        with pytest.raises(NotFoundError):
            engine.milestones.award_milestone("sess_missing", "first_steps")

    def test_award_records_user_and_points(self, engine, session):
        ach = engine.milestones.award_milestone(session.session_id, "first_agent", {"agent": "bot"})
        assert ach.user_id == "user_1"
        assert ach.data["points"] == 50
        assert ach.data["agent"] == "bot"

    def test_analytics_failure_does_not_fail_award(self, tmp_path, clock):
        eng = make_engine(tmp_path, clock=clock, analytics=FailingSink())
        eng.paths.publish_path(make_path())
        s = eng.store.start_session("user_1", "path_abc")
        ach = eng.milestones.award_milestone(s.session_id, "first_steps")
        assert ach.milestone_key == "first_steps"

    def test_user_achievements_span_sessions(self, engine, abc_path):
        s1 = engine.store.start_session("user_9", abc_path.path_id)
        s2 = engine.store.start_session("user_9", abc_path.path_id)
        engine.milestones.award_milestone(s1.session_id, "first_steps")
        engine.milestones.award_milestone(s2.session_id, "first_steps")
        assert len(engine.milestones.get_user_achievements("user_9")) == 2


# ─── check_and_award ──────────────────────────────────────────────────────────

class TestCheckAndAward:
    def test_full_completion_awards_graduate(self, engine, session):
        sid = session.session_id
        engine.store.record_step_completion(sid, "A", {"status": "completed", "time_spent": 10})
        result = engine.store.record_step_completion(sid, "B", {"status": "completed", "time_spent": 10})
        keys = {a.milestone_key for a in result.awarded}
        assert keys == {"graduate", "speed_runner"}
        all_keys = {a.milestone_key for a in engine.milestones.get_achievements(sid)}
        assert all_keys == {"first_steps", "halfway", "graduate", "speed_runner"}

    def test_slow_completion_misses_speed_runner(self, engine, session):
        sid = session.session_id
        engine.store.record_step_completion(sid, "A", {"status": "completed", "time_spent": 25})
        engine.store.record_step_completion(sid, "B", {"status": "completed", "time_spent": 25})
        keys = {a.milestone_key for a in engine.milestones.get_achievements(sid)}
        assert "speed_runner" not in keys
        assert "graduate" in keys

    def test_external_milestones_never_auto_awarded(self, engine, session):
        sid = session.session_id
        engine.store.record_step_completion(sid, "A", {"status": "completed"})
        engine.store.record_step_completion(sid, "B", {"status": "completed"})
        keys = {a.milestone_key for a in engine.milestones.get_achievements(sid)}
        assert not keys & {"profile_complete", "first_agent", "team_player"}


# ─── get_available_badges ─────────────────────────────────────────────────────

class TestBadges:
    def test_zero_criteria_badge_always_earned(self, engine, session):
        welcome = _badges(engine, session.session_id)["welcome"]
        assert welcome.earned
        assert welcome.progress == 100.0

    def test_fresh_session_progress(self, engine, session):
        badges = _badges(engine, session.session_id)
        assert not badges["getting_started"].earned
        assert badges["getting_started"].progress == 0.0
        assert all(0.0 <= b.progress <= 100.0 for b in badges.values())

    def test_progress_after_first_step(self, engine, session):
        sid = session.session_id
        engine.store.record_step_completion(sid, "A", {"status": "completed"})
        badges = _badges(engine, sid)
        assert badges["getting_started"].earned
        assert badges["momentum"].earned
        # speed_runner: time criterion met, completion criterion not yet
        assert badges["quick_learner"].progress == 50.0
        assert not badges["graduate"].earned

    def test_awarded_milestone_counts_all_criteria(self, engine, session):
        engine.milestones.award_milestone(session.session_id, "first_agent")
        builder = _badges(engine, session.session_id)["builder"]
        assert not builder.earned
        assert builder.progress == pytest.approx(66.67)
        assert builder.awarded_keys == ["first_agent"]

    def test_custom_catalog(self, tmp_path, clock):
        catalog = MilestoneCatalog.from_definitions(
            [MilestoneDefinition("kickoff", "Kickoff", "Open the app", "progress", {})],
            [
                BadgeDefinition("empty", "Empty", "No milestones"),
                BadgeDefinition("kick", "Kick", "Kickoff badge", ("kickoff",)),
            ],
        )
        eng = make_engine(tmp_path, clock=clock, catalog=catalog)
        eng.paths.publish_path(make_path())
        s = eng.store.start_session("user_1", "path_abc")
        badges = _badges(eng, s.session_id)
        assert badges["empty"].earned
        assert not badges["kick"].earned and badges["kick"].progress == 0.0
        eng.milestones.award_milestone(s.session_id, "kickoff")
        assert _badges(eng, s.session_id)["kick"].earned
