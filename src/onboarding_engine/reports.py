"""
reports.py – Progress reports for one session or a whole path
==============================================================
``ReportGenerator.generate_progress_report(scope)`` builds a ProgressReport:

  • completion percentage (required steps, averaged over sessions for a
    path scope)
  • trend series: session starts and the event history are replayed in
    time order and the completion percentage over every session started so
    far is recorded at the end of each day (or ISO week) bucket; a scope
    with no history has an empty trend
  • step metrics: time spent, completion / failure rates and the derived
    engagement and difficulty scores
  • the most severe open blockers, the session achievements and
    human-readable recommendations

Scores
------
    engagement_score = max(0, 100 − 3 × failure_rate)
    difficulty_score = min(100, 2 × failure_rate + avg_min_per_step / 10 + 10 × blockers)
    time_efficiency  = max(0, 100 − avg_min_per_step / 15 × 100)   (100 when nothing completed)

Recommendations come from blocker guidance first (most severe blocker
first), then from the metric rules, capped at ``ReportConfig.max_recommendations``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from onboarding_engine.blockers import Blocker, sort_blockers
from onboarding_engine.config import REPORT_BUCKETS, ReportConfig
from onboarding_engine.errors import ValidationError
from onboarding_engine.models import Achievement, Path, Session, StepStatus, utcnow

logger = logging.getLogger(__name__)

ON_TRACK = "Progress is on track, continue with current approach"

TREND_INCREASING = "increasing"
TREND_DECREASING = "decreasing"
TREND_STABLE     = "stable"


# ─── Scope & output models ───────────────────────────────────────────────────

@dataclass(frozen=True)
class ReportScope:
    """Exactly one of ``session_id`` / ``path_id``."""
    session_id: Optional[str] = None
    path_id:    Optional[str] = None

    def __post_init__(self) -> None:
        if (self.session_id is None) == (self.path_id is None):
            raise ValidationError("ReportScope needs exactly one of session_id or path_id",
                                  "generate_progress_report")

    @property
    def label(self) -> str:
        return f"session {self.session_id}" if self.session_id else f"path {self.path_id}"


@dataclass
class TrendPoint:
    bucket:                date        # day, or Monday of the ISO week
    completion_percentage: float
    completed_steps:       int


@dataclass
class ReportMetrics:
    total_time_spent:      float = 0.0     # minutes
    average_time_per_step: float = 0.0     # minutes per completed step
    completion_rate:       float = 0.0     # % of touched steps completed
    failure_rate:          float = 0.0     # % of touched steps currently failed
    engagement_score:      float = 100.0
    difficulty_score:      float = 0.0
    time_efficiency:       float = 100.0


@dataclass
class ProgressReport:
    scope:                 ReportScope
    generated_at:          datetime
    session_ids:           list[str] = field(default_factory=list)
    completion_percentage: float = 0.0
    completed_steps:       int = 0
    total_steps:           int = 0
    trend:                 list[TrendPoint] = field(default_factory=list)
    trend_direction:       str = TREND_STABLE
    metrics:               ReportMetrics = field(default_factory=ReportMetrics)
    blockers:              list[Blocker] = field(default_factory=list)
    achievements:          list[Achievement] = field(default_factory=list)
    recommendations:       list[str] = field(default_factory=list)

    @property
    def session_count(self) -> int:
        return len(self.session_ids)


# ─── Pure helpers ────────────────────────────────────────────────────────────

def bucket_start(moment: datetime, bucket: str) -> date:
    day = moment.date()
    if bucket == "week":
        return day - timedelta(days=day.weekday())
    return day


def trend_direction(trend: list[TrendPoint]) -> str:
    if len(trend) < 2:
        return TREND_STABLE
    first, last = trend[0].completion_percentage, trend[-1].completion_percentage
    if last > first:
        return TREND_INCREASING
    if last < first:
        return TREND_DECREASING
    return TREND_STABLE


def compute_metrics(records: list, blocker_count: int) -> ReportMetrics:
    touched = len(records)
    completed = sum(1 for r in records if r.status == StepStatus.COMPLETED)
    failed = sum(1 for r in records if r.status == StepStatus.FAILED)
    total_time = round(sum(r.time_spent for r in records), 2)

    completion_rate = completed / touched * 100 if touched else 0.0
    failure_rate = failed / touched * 100 if touched else 0.0
    avg = total_time / completed if completed else 0.0

    return ReportMetrics(
        total_time_spent      = total_time,
        average_time_per_step = round(avg, 2),
        completion_rate       = round(completion_rate, 2),
        failure_rate          = round(failure_rate, 2),
        engagement_score      = round(max(0.0, 100 - failure_rate * 3), 2),
        difficulty_score      = round(min(100.0, failure_rate * 2 + avg / 10 + blocker_count * 10), 2),
        time_efficiency       = round(max(0.0, 100 - (avg / 15) * 100), 2) if avg > 0 else 100.0,
    )


def metric_recommendations(metrics: ReportMetrics, blocker_count: int) -> list[str]:
    recs: list[str] = []
    if metrics.completion_rate < 50:
        recs.append("Consider providing additional support or switching to an easier path")
    if metrics.failure_rate > 20:
        recs.append("Simplify step instructions and provide better examples")
    if metrics.engagement_score < 40:
        recs.append("Add interactive elements and gamification to increase engagement")
    if metrics.difficulty_score > 60:
        recs.append("Consider breaking down complex steps into smaller, manageable tasks")
    if metrics.average_time_per_step > 20:
        recs.append("Optimize step content for better time efficiency")
    if blocker_count > 3:
        recs.append("Address identified blockers with targeted interventions")
    return recs


def build_recommendations(
    blockers: list[Blocker],
    metrics: ReportMetrics,
    has_history: bool,
    limit: int,
) -> list[str]:
    recs: list[str] = []
    for b in sort_blockers(blockers):
        where = f" (step {b.related_step_id})" if b.related_step_id else ""
        recs.append(f"{b.suggested_resolution}{where}")
    if has_history:
        recs.extend(metric_recommendations(metrics, len(blockers)))
    recs = list(dict.fromkeys(recs))
    if not recs:
        recs = [ON_TRACK]
    return recs[:max(limit, 1)]


# ─── Generator ───────────────────────────────────────────────────────────────

class ReportGenerator:

    def __init__(
        self,
        store,
        blocker_analyzer=None,
        config: Optional[ReportConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store            = store
        self.blocker_analyzer = blocker_analyzer
        self.config           = config or ReportConfig()
        self.clock            = clock or store.clock or utcnow
        if self.config.bucket not in REPORT_BUCKETS:
            raise ValidationError(f"Unknown report bucket {self.config.bucket!r}", "ReportGenerator")

    def _sessions_for(self, scope: ReportScope) -> list[Session]:
        if scope.session_id is not None:
            return [self.store.get_session(scope.session_id)]
        self.store.get_path(scope.path_id)     # NotFoundError for an unknown path
        return self.store.list_sessions(path_id=scope.path_id)

    def _trend(self, sessions: list[Session], paths: dict[str, Path]) -> list[TrendPoint]:
        """
        Replay session starts and progress events in time order.  A session
        counts at 0 % from its start, so the last point equals the report's
        completion percentage.
        """
        events = []
        for session in sessions:
            events.extend(self.store.get_history(session.session_id))
        if not events:
            return []

        # (moment, 0 = session start / 1 = event, session_id, step_id, status)
        timeline = [(s.started_at, 0, s.session_id, None, None) for s in sessions]
        timeline.extend((e.recorded_at, 1, e.session_id, e.step_id, e.status) for e in events)
        timeline.sort(key=lambda t: (t[0], t[1]))

        path_of = {s.session_id: paths[s.path_id] for s in sessions}
        status: dict[str, dict[str, StepStatus]] = {}
        snapshots: dict[date, TrendPoint] = {}

        for moment, _kind, session_id, step_id, step_status in timeline:
            touched = status.setdefault(session_id, {})
            if step_id is not None:
                touched[step_id] = step_status
            pcts, completed = [], 0
            for sid, steps in status.items():
                required = path_of[sid].required_step_ids()
                done = {k for k, v in steps.items() if v == StepStatus.COMPLETED}
                completed += len(done)
                pcts.append(round(len(done & set(required)) / len(required) * 100, 2) if required else 100.0)
            key = bucket_start(moment, self.config.bucket)
            snapshots[key] = TrendPoint(
                bucket                = key,
                completion_percentage = round(sum(pcts) / len(pcts), 2),
                completed_steps       = completed,
            )
        return [snapshots[k] for k in sorted(snapshots)]

    def generate_progress_report(self, scope: ReportScope) -> ProgressReport:
        sessions = self._sessions_for(scope)
        paths = {s.path_id: self.store.get_path(s.path_id) for s in sessions}

        records, blockers, achievements, pcts = [], [], [], []
        completed_steps = total_steps = 0
        for session in sessions:
            progress = self.store.get_overall_progress(session.session_id)
            pcts.append(progress.completion_percentage)
            completed_steps += progress.completed_steps
            total_steps += progress.total_steps
            achievements.extend(progress.achievements)
            records.extend(self.store.get_progress_records(session.session_id))
            if self.blocker_analyzer is not None:
                blockers.extend(self.blocker_analyzer.identify_blockers(session.session_id))

        blockers = sort_blockers(blockers)
        metrics = compute_metrics(records, len(blockers))
        trend = self._trend(sessions, paths)

        report = ProgressReport(
            scope                 = scope,
            generated_at          = self.clock(),
            session_ids           = [s.session_id for s in sessions],
            completion_percentage = round(sum(pcts) / len(pcts), 2) if pcts else 0.0,
            completed_steps       = completed_steps,
            total_steps           = total_steps,
            trend                 = trend,
            trend_direction       = trend_direction(trend),
            metrics               = metrics,
            blockers              = blockers,
            achievements          = sorted(achievements, key=lambda a: a.awarded_at),
            recommendations       = build_recommendations(
                blockers, metrics, bool(records), self.config.max_recommendations,
            ),
        )
        logger.debug("Report for %s: %.1f%% over %d session(s), %d trend point(s)",
                     scope.label, report.completion_percentage, report.session_count, len(trend))
        return report
