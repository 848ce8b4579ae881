"""
progress_store.py – Session & step progress tracking
=====================================================
Owns Sessions and ProgressRecords and is the write entry point of the
engine.

  ProgressStore
    • track_step_progress(session_id, step_id, data)
        Idempotent upsert keyed on (session_id, step_id); validates the step
        state machine before anything is written and appends a
        ProgressEvent to the session history after every write.
    • record_step_completion(session_id, step_id, result)
        Writes the outcome, then runs three best-effort side effects
        (blocker re-evaluation, milestone check, session aggregate refresh).
        A side-effect fault is returned as a PartialFailure warning in the
        CompletionResult; it never rolls back the step write.
    • get_overall_progress(session_id)
        Required-step completion percentage plus raw counts.

Step state machine
------------------
    not_started → in_progress → completed | failed
    failed → in_progress (retry) | failed (retry that failed again)
    completed is terminal.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from onboarding_engine.analytics import emit_safely
from onboarding_engine.errors import (
    NotFoundError,
    OnboardingError,
    PartialFailure,
    ValidationError,
)
from onboarding_engine.models import (
    Achievement,
    OnboardingContext,
    Path,
    PathStep,
    ProgressEvent,
    ProgressRecord,
    Session,
    SessionStatus,
    StepError,
    StepProgressUpdate,
    StepResult,
    StepStatus,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]{0,127}$")

_ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.NOT_STARTED: frozenset(StepStatus),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.FAILED:      frozenset({StepStatus.IN_PROGRESS, StepStatus.FAILED}),
    StepStatus.COMPLETED:   frozenset(),
}


def validate_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _ID_PATTERN.match(value):
        raise ValidationError(f"Malformed {name}: {value!r}", "validate_id")
    return value


def coerce_model(model, data, operation: str):
    if isinstance(data, model):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(f"Expected a mapping or {model.__name__}", operation)
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__}: {exc.errors()[0]['msg']}",
                              operation, {"errors": exc.errors(include_url=False)}) from exc


# ─── Output models ───────────────────────────────────────────────────────────

@dataclass
class OverallProgress:
    """Aggregate view of one session against its path."""
    session_id:               str
    path_id:                  str
    completion_percentage:    float          # required steps only, 0–100
    completed_steps:          int            # required + optional
    total_steps:              int            # required + optional
    completed_required_steps: int
    total_required_steps:     int
    completed_step_ids:       list[str] = field(default_factory=list)
    failed_step_ids:          list[str] = field(default_factory=list)
    time_spent:               float = 0.0    # minutes, all steps
    current_step_index:       int = 0
    achievements:             list[Achievement] = field(default_factory=list)
    last_updated:             Optional[datetime] = None

    @property
    def all_required_completed(self) -> bool:
        return self.completed_required_steps == self.total_required_steps


@dataclass
class CompletionResult:
    """Primary result of record_step_completion plus side-effect outcomes."""
    record:   ProgressRecord
    blockers: list = field(default_factory=list)
    awarded:  list[Achievement] = field(default_factory=list)
    warnings: list[PartialFailure] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.warnings)

    def raise_for_warnings(self) -> None:
        if self.warnings:
            raise self.warnings[0]


# ─── Progress Store ──────────────────────────────────────────────────────────

class ProgressStore:

    def __init__(
        self,
        adapter,
        analytics=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.adapter   = adapter
        self.analytics = analytics
        self.clock     = clock or utcnow
        self.blocker_analyzer = None
        self.milestone_engine = None

    def bind(self, blocker_analyzer=None, milestone_engine=None) -> "ProgressStore":
        """Attach the collaborators used by record_step_completion's side effects."""
        if blocker_analyzer is not None:
            self.blocker_analyzer = blocker_analyzer
        if milestone_engine is not None:
            self.milestone_engine = milestone_engine
        return self

    # ── Sessions ──────────────────────────────────────────────────────────────

    def get_path(self, path_id: str) -> Path:
        validate_id(path_id, "path_id")
        return Path.model_validate(self.adapter.get("paths", (path_id,)))

    def get_session(self, session_id: str) -> Session:
        validate_id(session_id, "session_id")
        return Session.model_validate(self.adapter.get("sessions", (session_id,)))

    def list_sessions(self, path_id: Optional[str] = None, user_id: Optional[str] = None) -> list[Session]:
        flt: dict[str, Any] = {}
        if path_id is not None:
            flt["path_id"] = path_id
        if user_id is not None:
            flt["user_id"] = user_id
        return [Session.model_validate(r) for r in self.adapter.query("sessions", flt)]

    def start_session(
        self,
        user_id: str,
        path_id: str,
        context: Union[OnboardingContext, Mapping, None] = None,
    ) -> Session:
        validate_id(user_id, "user_id")
        path = self.get_path(path_id)
        ctx = coerce_model(OnboardingContext, context, "start_session") if context is not None else None
        now = self.clock()
        session = Session(
            session_id     = new_id("sess"),
            user_id        = user_id,
            path_id        = path.path_id,
            started_at     = now,
            last_active_at = now,
            context        = ctx.model_dump(mode="json") if ctx else {},
        )
        self._save_session(session)
        logger.info("Started session %s for user %s on path %s", session.session_id, user_id, path.path_id)
        emit_safely(self.analytics, "session_started", {
            "session_id": session.session_id, "user_id": user_id, "path_id": path.path_id,
        })
        return session

    def complete_session(self, session_id: str) -> Session:
        session = self._require_active(session_id, "complete_session")
        progress = self.get_overall_progress(session_id)
        if not progress.all_required_completed:
            path = self.get_path(session.path_id)
            missing = [s for s in path.required_step_ids() if s not in progress.completed_step_ids]
            raise ValidationError(
                f"Cannot complete session: {len(missing)} required step(s) outstanding",
                "complete_session", {"missing_steps": missing},
            )
        now = self.clock()
        session = session.model_copy(update={
            "status":              SessionStatus.COMPLETED,
            "completed_at":        now,
            "last_active_at":      now,
            "progress_percentage": progress.completion_percentage,
            "time_spent":          progress.time_spent,
            "current_step_index":  progress.current_step_index,
        })
        self._save_session(session)
        logger.info("Session %s completed", session_id)
        emit_safely(self.analytics, "session_completed", {
            "session_id": session_id, "user_id": session.user_id, "time_spent": progress.time_spent,
        })
        return session

    def abandon_session(self, session_id: str) -> Session:
        session = self._require_active(session_id, "abandon_session")
        session = session.model_copy(update={
            "status": SessionStatus.ABANDONED, "last_active_at": self.clock(),
        })
        self._save_session(session)
        logger.info("Session %s abandoned", session_id)
        return session

    def refresh_session_progress(self, session_id: str) -> OverallProgress:
        """Recompute the denormalised aggregate stored on the session row."""
        session = self.get_session(session_id)
        progress = self.get_overall_progress(session_id)
        self._save_session(session.model_copy(update={
            "progress_percentage": progress.completion_percentage,
            "time_spent":          progress.time_spent,
            "current_step_index":  progress.current_step_index,
            "last_active_at":      self.clock(),
        }))
        return progress

    def _require_active(self, session_id: str, operation: str) -> Session:
        session = self.get_session(session_id)
        if session.is_terminal:
            raise ValidationError(
                f"Session {session_id} is {session.status.value} and can no longer change",
                operation,
            )
        return session

    def _save_session(self, session: Session) -> None:
        self.adapter.upsert("sessions", (session.session_id,), session.model_dump(mode="json"))

    # ── Step progress ─────────────────────────────────────────────────────────

    def get_progress_record(self, session_id: str, step_id: str) -> Optional[ProgressRecord]:
        try:
            row = self.adapter.get("progress", (session_id, step_id))
        except NotFoundError:
            return None
        return ProgressRecord.model_validate(row)

    def get_progress_records(self, session_id: str) -> list[ProgressRecord]:
        validate_id(session_id, "session_id")
        rows = self.adapter.query("progress", {"session_id": session_id})
        return [ProgressRecord.model_validate(r) for r in rows]

    def get_history(self, session_id: str) -> list[ProgressEvent]:
        """Every write made to the session's records, oldest first."""
        validate_id(session_id, "session_id")
        events = [ProgressEvent.model_validate(r)
                  for r in self.adapter.query("progress_events", {"session_id": session_id})]
        return sorted(events, key=lambda e: e.recorded_at)

    def track_step_progress(
        self,
        session_id: str,
        step_id: str,
        data: Union[StepProgressUpdate, Mapping[str, Any]],
    ) -> ProgressRecord:
        record, _session, _step = self._track(session_id, step_id, data)
        return record

    def _track(self, session_id, step_id, data) -> tuple[ProgressRecord, Session, PathStep]:
        validate_id(session_id, "session_id")
        validate_id(step_id, "step_id")
        update = coerce_model(StepProgressUpdate, data, "track_step_progress")

        session = self._require_active(session_id, "track_step_progress")
        path = self.get_path(session.path_id)
        step = path.step_by_id(step_id)
        if step is None:
            raise NotFoundError(
                f"Step {step_id!r} is not part of path {path.path_id}", "track_step_progress",
            )

        existing = self.get_progress_record(session_id, step_id)
        record = self._apply_update(session_id, step_id, existing, update)

        # History first: a failed record write then leaves no state change behind
        self._append_event(record)
        self.adapter.upsert("progress", record.key, record.model_dump(mode="json"))
        logger.debug("Step %s/%s → %s (attempt %d)", session_id, step_id,
                     record.status.value, record.attempts)

        emit_safely(self.analytics, "step_progress", {
            "session_id": session_id,
            "user_id":    session.user_id,
            "step_id":    step_id,
            "status":     record.status.value,
            "time_spent": record.time_spent,
            "attempts":   record.attempts,
        })
        return record, session, step

    def _apply_update(
        self,
        session_id: str,
        step_id: str,
        existing: Optional[ProgressRecord],
        update: StepProgressUpdate,
    ) -> ProgressRecord:
        now = self.clock()
        new_status = update.status

        if existing is None:
            base = ProgressRecord(session_id=session_id, step_id=step_id, updated_at=now)
            attempts = 0 if new_status == StepStatus.NOT_STARTED else 1
        else:
            base = existing
            if base.status == StepStatus.COMPLETED:
                raise ValidationError("step already completed", "track_step_progress",
                                      {"session_id": session_id, "step_id": step_id})
            if new_status not in _ALLOWED_TRANSITIONS[base.status]:
                raise ValidationError(
                    f"Illegal step transition {base.status.value} → {new_status.value}",
                    "track_step_progress",
                )
            attempts = base.attempts
            if (new_status == StepStatus.IN_PROGRESS
                    and base.status in (StepStatus.NOT_STARTED, StepStatus.FAILED)):
                attempts += 1
            elif new_status == StepStatus.FAILED and base.status == StepStatus.FAILED:
                attempts += 1
            elif new_status in (StepStatus.COMPLETED, StepStatus.FAILED) and attempts == 0:
                attempts = 1

        if update.attempts is not None:
            attempts = update.attempts

        last_error = base.last_error
        if update.last_error is not None:
            last_error = update.last_error
        elif new_status == StepStatus.COMPLETED:
            last_error = None

        started_at = base.started_at
        if started_at is None and new_status != StepStatus.NOT_STARTED:
            started_at = now

        return base.model_copy(update={
            "status":       new_status,
            "time_spent":   update.time_spent if update.time_spent is not None else base.time_spent,
            "attempts":     attempts,
            "score":        update.score if update.score is not None else base.score,
            "last_error":   last_error,
            "user_actions": {**base.user_actions, **(update.user_actions or {})},
            "started_at":   started_at,
            "completed_at": now if new_status == StepStatus.COMPLETED else None,
            "updated_at":   now,
        })

    def _append_event(self, record: ProgressRecord) -> None:
        event = ProgressEvent.from_record(record)
        self.adapter.upsert("progress_events", (record.session_id, event.event_id),
                            event.model_dump(mode="json"))

    def write_record(self, record: ProgressRecord) -> ProgressRecord:
        """Store a record verbatim, keeping its updated_at (used by backup sync)."""
        validate_id(record.session_id, "session_id")
        validate_id(record.step_id, "step_id")
        self._append_event(record)
        self.adapter.upsert("progress", record.key, record.model_dump(mode="json"))
        return record

    # ── Convenience wrappers ──────────────────────────────────────────────────

    def start_step(self, session_id: str, step_id: str) -> ProgressRecord:
        return self.track_step_progress(session_id, step_id, {"status": StepStatus.IN_PROGRESS})

    def update_step_time(self, session_id: str, step_id: str, minutes: float,
                         user_actions: Optional[dict[str, Any]] = None) -> ProgressRecord:
        """Add ``minutes`` to the time spent on an in-progress step."""
        if minutes < 0:
            raise ValidationError("minutes must not be negative", "update_step_time")
        current = self.get_progress_record(session_id, step_id)
        total = (current.time_spent if current else 0.0) + minutes
        return self.track_step_progress(session_id, step_id, {
            "status": StepStatus.IN_PROGRESS, "time_spent": total, "user_actions": user_actions,
        })

    def fail_step(self, session_id: str, step_id: str,
                  error: Union[StepError, Mapping[str, Any]]) -> ProgressRecord:
        return self.track_step_progress(session_id, step_id, {
            "status": StepStatus.FAILED, "last_error": coerce_model(StepError, error, "fail_step"),
        })

    def record_step_completion(
        self,
        session_id: str,
        step_id: str,
        result: Union[StepResult, Mapping[str, Any]],
    ) -> CompletionResult:
        result = coerce_model(StepResult, result, "record_step_completion")
        if result.status not in (StepStatus.COMPLETED, StepStatus.FAILED):
            raise ValidationError("result.status must be 'completed' or 'failed'",
                                  "record_step_completion")

        record, _session, step = self._track(session_id, step_id, StepProgressUpdate(
            status       = result.status,
            time_spent   = result.time_spent,
            score        = result.score,
            last_error   = result.error if result.status == StepStatus.FAILED else None,
            user_actions = result.user_actions,
        ))
        outcome = CompletionResult(record=record)

        # (a) blockers only when something went wrong on this step
        if self.blocker_analyzer is not None and (
            record.status == StepStatus.FAILED or self._is_overrun(record, step)
        ):
            try:
                outcome.blockers = self.blocker_analyzer.identify_blockers(session_id)
            except Exception as exc:
                outcome.warnings.append(self._side_effect_failed("blocker_analysis", exc))

        # (b) milestones against the updated aggregate
        if self.milestone_engine is not None and record.status == StepStatus.COMPLETED:
            try:
                progress = self.get_overall_progress(session_id)
                outcome.awarded = self.milestone_engine.check_and_award(session_id, progress)
            except Exception as exc:
                outcome.warnings.append(self._side_effect_failed("milestone_check", exc))

        # (c) session aggregate
        try:
            self.refresh_session_progress(session_id)
        except Exception as exc:
            outcome.warnings.append(self._side_effect_failed("session_progress", exc))

        return outcome

    def _is_overrun(self, record: ProgressRecord, step: PathStep) -> bool:
        multiple = 3.0
        if self.blocker_analyzer is not None:
            multiple = self.blocker_analyzer.config.engagement_multiple
        return step.estimated_time > 0 and record.time_spent > multiple * step.estimated_time

    def _side_effect_failed(self, side_effect: str, exc: Exception) -> PartialFailure:
        logger.warning("Side effect %s failed after step write: %s", side_effect, exc)
        message = exc.message if isinstance(exc, OnboardingError) else str(exc)
        return PartialFailure(f"{side_effect} failed: {message}", side_effect, cause=exc,
                              operation="record_step_completion")

    # ── Aggregation ───────────────────────────────────────────────────────────

    def get_achievements(self, session_id: str) -> list[Achievement]:
        validate_id(session_id, "session_id")
        rows = self.adapter.query("achievements", {"session_id": session_id})
        return sorted((Achievement.model_validate(r) for r in rows), key=lambda a: a.awarded_at)

    def get_overall_progress(self, session_id: str) -> OverallProgress:
        session = self.get_session(session_id)
        path = self.get_path(session.path_id)
        records = {r.step_id: r for r in self.get_progress_records(session_id)}
        ordered = path.ordered_steps()

        completed_ids = [s.step_id for s in ordered
                         if s.step_id in records and records[s.step_id].status == StepStatus.COMPLETED]
        failed_ids = [s.step_id for s in ordered
                      if s.step_id in records and records[s.step_id].status == StepStatus.FAILED]
        required = [s.step_id for s in ordered if s.is_required]
        done_required = [sid for sid in required if sid in completed_ids]

        # No required steps: nothing is outstanding
        pct = (len(done_required) / len(required) * 100) if required else 100.0
        current_index = next(
            (i for i, s in enumerate(ordered) if s.step_id not in completed_ids), len(ordered)
        )
        last_updated = max((r.updated_at for r in records.values()), default=session.started_at)

        return OverallProgress(
            session_id               = session_id,
            path_id                  = path.path_id,
            completion_percentage    = round(pct, 2),
            completed_steps          = len(completed_ids),
            total_steps              = len(ordered),
            completed_required_steps = len(done_required),
            total_required_steps     = len(required),
            completed_step_ids       = completed_ids,
            failed_step_ids          = failed_ids,
            time_spent               = round(sum(r.time_spent for r in records.values()), 2),
            current_step_index       = current_index,
            achievements             = self.get_achievements(session_id),
            last_updated             = last_updated,
        )
