"""
blockers.py – Blocker identification from progress history
============================================================
Explains why a session is stuck.  Blockers are never stored: they are
regenerated on demand from the session's ProgressEvent history by the pure
function ``classify_history`` so the rules can be tested without storage.

Rules (evaluated independently, a session can have several blockers)
--------------------------------------------------------------------
  validation   ≥ N consecutive failed attempts on one step whose error is
               an input/validation error (in-progress retries between the
               failures do not break the streak; a completion or another
               kind of failure does)
  technical    any failed attempt whose error is an infrastructure fault
               (technical / system / timeout / network)
  engagement   an in-progress step whose time_spent exceeds
               multiple × estimated_time
  pattern      the same category seen on ≥ 2 distinct steps, a systemic
               issue rather than a per-step one

Steps whose current record is completed are not blocking and are skipped.

Severity = base severity of the category (BlockerConfig.category_severity)
raised one level when the blocker was detected inside the recency window.
Output is sorted by severity, most severe first, then most recent first.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from onboarding_engine.config import BlockerConfig
from onboarding_engine.models import (
    BlockerCategory,
    ErrorKind,
    Path,
    ProgressEvent,
    ProgressRecord,
    Severity,
    StepStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_ERROR_CATEGORY: dict[ErrorKind, BlockerCategory] = {
    ErrorKind.VALIDATION: BlockerCategory.VALIDATION,
    ErrorKind.INPUT:      BlockerCategory.VALIDATION,
    ErrorKind.TECHNICAL:  BlockerCategory.TECHNICAL,
    ErrorKind.SYSTEM:     BlockerCategory.TECHNICAL,
    ErrorKind.TIMEOUT:    BlockerCategory.TECHNICAL,
    ErrorKind.NETWORK:    BlockerCategory.TECHNICAL,
}

# (description, suggested resolution) per category
_GUIDANCE: dict[BlockerCategory, tuple[str, str]] = {
    BlockerCategory.VALIDATION: (
        "Repeated input validation failures suggest the step's instructions are unclear",
        "Provide clearer instructions and input examples for this step",
    ),
    BlockerCategory.TECHNICAL: (
        "Technical errors are preventing step completion",
        "Check system functionality and offer technical support",
    ),
    BlockerCategory.ENGAGEMENT: (
        "The user is spending far longer on this step than expected",
        "Simplify the step content or offer additional guidance",
    ),
    BlockerCategory.PATTERN: (
        "The same problem is recurring across several steps",
        "Consider switching to an easier onboarding path or providing one-on-one support",
    ),
}


def error_category(kind: Optional[ErrorKind]) -> Optional[BlockerCategory]:
    """Map a step error kind to the blocker category it indicates, if any."""
    if kind is None:
        return None
    return _ERROR_CATEGORY.get(ErrorKind(kind))


# ─── Output model ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Blocker:
    category:             BlockerCategory
    severity:             Severity
    related_step_id:      Optional[str]
    detected_at:          datetime
    evidence:             dict[str, Any] = field(default_factory=dict)
    description:          str = ""
    suggested_resolution: str = ""


def _make(
    category: BlockerCategory,
    step_id: Optional[str],
    detected_at: datetime,
    evidence: dict[str, Any],
    config: BlockerConfig,
    now: datetime,
) -> Blocker:
    severity = config.category_severity.get(category, Severity.LOW)
    if now - detected_at <= timedelta(hours=config.recency_window_hours):
        severity = severity.raised()
    description, resolution = _GUIDANCE[category]
    return Blocker(
        category             = category,
        severity             = severity,
        related_step_id      = step_id,
        detected_at          = detected_at,
        evidence             = evidence,
        description          = description,
        suggested_resolution = resolution,
    )


def sort_blockers(blockers: Iterable[Blocker]) -> list[Blocker]:
    """Severity descending, ties broken by most recent detection."""
    return sorted(blockers, key=lambda b: (b.severity.rank, b.detected_at), reverse=True)


# ─── Rules ───────────────────────────────────────────────────────────────────

def _validation_streak(events: list[ProgressEvent], threshold: int) -> Optional[list[ProgressEvent]]:
    run: list[ProgressEvent] = []
    latest: Optional[list[ProgressEvent]] = None
    for event in events:
        if event.status == StepStatus.FAILED:
            kind = event.last_error.kind if event.last_error else None
            if error_category(kind) == BlockerCategory.VALIDATION:
                run.append(event)
            else:
                run = []
        elif event.status == StepStatus.COMPLETED:
            run = []
        if len(run) >= threshold:
            latest = list(run)
    return latest


def _step_blockers(
    step_id: str,
    events: list[ProgressEvent],
    config: BlockerConfig,
    now: datetime,
) -> list[Blocker]:
    found: list[Blocker] = []

    streak = _validation_streak(events, config.validation_threshold)
    if streak:
        found.append(_make(BlockerCategory.VALIDATION, step_id, streak[-1].recorded_at, {
            "consecutive_failures": len(streak),
            "errors": [e.last_error.message for e in streak[-3:] if e.last_error],
        }, config, now))

    technical = [
        e for e in events
        if e.status == StepStatus.FAILED and e.last_error is not None
        and error_category(e.last_error.kind) == BlockerCategory.TECHNICAL
    ]
    if technical:
        found.append(_make(BlockerCategory.TECHNICAL, step_id, technical[-1].recorded_at, {
            "occurrences": len(technical),
            "kinds":       sorted({e.last_error.kind.value for e in technical}),
            "last_error":  technical[-1].last_error.message,
        }, config, now))

    return found


def _engagement_blocker(
    record: ProgressRecord,
    path: Path,
    config: BlockerConfig,
    now: datetime,
) -> Optional[Blocker]:
    step = path.step_by_id(record.step_id)
    if step is None or record.status != StepStatus.IN_PROGRESS or step.estimated_time <= 0:
        return None
    limit = config.engagement_multiple * step.estimated_time
    if record.time_spent <= limit:
        return None
    return _make(BlockerCategory.ENGAGEMENT, record.step_id, record.updated_at, {
        "time_spent":     record.time_spent,
        "estimated_time": step.estimated_time,
        "overrun_ratio":  round(record.time_spent / step.estimated_time, 2),
    }, config, now)


def _pattern_blockers(blockers: list[Blocker], config: BlockerConfig, now: datetime) -> list[Blocker]:
    by_category: dict[BlockerCategory, list[Blocker]] = defaultdict(list)
    for b in blockers:
        by_category[b.category].append(b)

    patterns: list[Blocker] = []
    for category, members in by_category.items():
        step_ids = sorted({b.related_step_id for b in members if b.related_step_id})
        if len(step_ids) < 2:
            continue
        patterns.append(_make(BlockerCategory.PATTERN, None, max(b.detected_at for b in members), {
            "category": category.value,
            "step_ids": step_ids,
        }, config, now))
    return patterns


def classify_history(
    history: list[ProgressEvent],
    records: list[ProgressRecord],
    path: Path,
    config: BlockerConfig,
    now: datetime,
) -> list[Blocker]:
    """Pure classification of a session's history into sorted blockers."""
    current = {r.step_id: r for r in records}
    events_by_step: dict[str, list[ProgressEvent]] = defaultdict(list)
    for event in sorted(history, key=lambda e: e.recorded_at):
        events_by_step[event.step_id].append(event)

    blockers: list[Blocker] = []
    for step_id, events in events_by_step.items():
        record = current.get(step_id)
        if record is not None and record.status == StepStatus.COMPLETED:
            continue
        blockers.extend(_step_blockers(step_id, events, config, now))

    for record in records:
        blocker = _engagement_blocker(record, path, config, now)
        if blocker is not None:
            blockers.append(blocker)

    blockers.extend(_pattern_blockers(blockers, config, now))
    return sort_blockers(blockers)


# ─── Analyzer ────────────────────────────────────────────────────────────────

class BlockerAnalyzer:
    """Reads a session's history from the ProgressStore and classifies it."""

    def __init__(
        self,
        store,
        config: Optional[BlockerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store  = store
        self.config = config or BlockerConfig()
        self.clock  = clock or store.clock or utcnow

    def identify_blockers(self, session_id: str) -> list[Blocker]:
        session = self.store.get_session(session_id)
        path    = self.store.get_path(session.path_id)
        history = self.store.get_history(session_id)
        records = self.store.get_progress_records(session_id)

        blockers = classify_history(history, records, path, self.config, self.clock())
        if blockers:
            logger.info("Session %s: %d blocker(s), most severe %s/%s", session_id,
                        len(blockers), blockers[0].category.value, blockers[0].severity.value)
        return blockers
