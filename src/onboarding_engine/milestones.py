"""
milestones.py – Milestone awards and badge progress
====================================================
  MilestoneEngine
    • award_milestone(session_id, milestone_key, data=None)
        Idempotent: the achievement is written with the adapter's
        conditional insert, so N concurrent or sequential calls produce one
        Achievement and all return it.  The ``milestone_reached`` analytics
        event is emitted only by the call that created the record.
    • check_and_award(session_id, progress)
        Awards every catalog milestone whose criteria the aggregate meets.
    • get_available_badges(session_id)
        Badge read-model: earned flag plus percent progress.

Badge progress
--------------
A badge's criteria are the criteria of all its milestones.  An awarded
milestone counts every one of its criteria as achieved; an unawarded one
counts the criteria the current aggregate already satisfies.

    progress = achieved / total × 100, clamped to [0, 100]

A badge with no criteria at all is always earned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from onboarding_engine.analytics import emit_safely
from onboarding_engine.catalog import MilestoneCatalog, MilestoneDefinition, default_catalog
from onboarding_engine.errors import ValidationError
from onboarding_engine.models import Achievement, new_id, utcnow
from onboarding_engine.progress_store import OverallProgress, validate_id

logger = logging.getLogger(__name__)


@dataclass
class Badge:
    badge_id:         str
    name:             str
    description:      str
    earned:           bool
    progress:         float                 # 0–100
    milestone_keys:   list[str] = field(default_factory=list)
    awarded_keys:     list[str] = field(default_factory=list)


# ─── Criteria evaluation ─────────────────────────────────────────────────────

def criterion_met(name: str, expected: Any, progress: OverallProgress) -> bool:
    """Evaluate one catalog criterion against a session aggregate."""
    if name == "steps_completed":
        return progress.completed_steps >= int(expected)
    if name == "progress_percentage":
        return progress.completion_percentage >= float(expected)
    if name in ("all_required_steps", "completion_required"):
        return (not expected) or progress.all_required_completed
    if name == "required_steps":
        return all(s in progress.completed_step_ids for s in (expected or []))
    if name == "max_time_minutes":
        return progress.time_spent <= float(expected)
    # External fact the engine cannot observe
    return False


def criteria_results(definition: MilestoneDefinition, progress: OverallProgress) -> list[bool]:
    return [criterion_met(k, v, progress) for k, v in definition.criteria.items()]


def milestone_met(definition: MilestoneDefinition, progress: OverallProgress) -> bool:
    results = criteria_results(definition, progress)
    return bool(results) and all(results)


# ─── Engine ──────────────────────────────────────────────────────────────────

class MilestoneEngine:

    def __init__(
        self,
        store,
        catalog: Optional[MilestoneCatalog] = None,
        analytics=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store     = store
        self.catalog   = catalog if catalog is not None else default_catalog()
        self.analytics = analytics
        self.clock     = clock or store.clock or utcnow

    def award_milestone(
        self,
        session_id: str,
        milestone_key: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Achievement:
        validate_id(session_id, "session_id")
        if not isinstance(milestone_key, str) or milestone_key not in self.catalog:
            raise ValidationError(f"Unknown milestone key {milestone_key!r}", "award_milestone")
        session = self.store.get_session(session_id)
        definition = self.catalog.get(milestone_key)

        candidate = Achievement(
            achievement_id = new_id("ach"),
            session_id     = session_id,
            user_id        = session.user_id,
            milestone_key  = milestone_key,
            awarded_at     = self.clock(),
            data           = {"points": definition.points, **(data or {})},
        )
        stored = Achievement.model_validate(self.store.adapter.upsert(
            "achievements", (session_id, milestone_key),
            candidate.model_dump(mode="json"), on_conflict="ignore",
        ))

        if stored.achievement_id == candidate.achievement_id:
            logger.info("Awarded milestone %s to session %s", milestone_key, session_id)
            emit_safely(self.analytics, "milestone_reached", {
                "session_id":    session_id,
                "user_id":       session.user_id,
                "milestone_key": milestone_key,
                **candidate.data,
            })
        return stored

    def check_and_award(self, session_id: str, progress: OverallProgress) -> list[Achievement]:
        """Award newly met milestones; returns only the ones created by this call."""
        already = {a.milestone_key for a in self.get_achievements(session_id)}
        awarded: list[Achievement] = []
        for definition in self.catalog.milestones.values():
            if definition.key in already or not milestone_met(definition, progress):
                continue
            awarded.append(self.award_milestone(session_id, definition.key, {
                "progress_at_award": progress.completion_percentage,
            }))
        return awarded

    def get_achievements(self, session_id: str) -> list[Achievement]:
        return self.store.get_achievements(session_id)

    def get_user_achievements(self, user_id: str) -> list[Achievement]:
        validate_id(user_id, "user_id")
        rows = self.store.adapter.query("achievements", {"user_id": user_id})
        return sorted((Achievement.model_validate(r) for r in rows), key=lambda a: a.awarded_at)

    def get_available_badges(self, session_id: str) -> list[Badge]:
        progress = self.store.get_overall_progress(session_id)
        awarded = {a.milestone_key for a in progress.achievements}

        badges: list[Badge] = []
        for badge in self.catalog.badges:
            achieved = total = 0
            for key in badge.milestone_keys:
                definition = self.catalog.get(key)
                criteria = list(definition.criteria.items()) if definition else []
                # A milestone without criteria still counts as one criterion
                weight = max(len(criteria), 1)
                total += weight
                if key in awarded:
                    achieved += weight
                elif definition is not None:
                    achieved += sum(criteria_results(definition, progress))

            if total == 0:
                earned, pct = True, 100.0
            else:
                earned = all(k in awarded for k in badge.milestone_keys)
                pct = 100.0 if earned else min(max(achieved / total * 100, 0.0), 100.0)

            badges.append(Badge(
                badge_id       = badge.badge_id,
                name           = badge.name,
                description    = badge.description,
                earned         = earned,
                progress       = round(pct, 2),
                milestone_keys = list(badge.milestone_keys),
                awarded_keys   = [k for k in badge.milestone_keys if k in awarded],
            ))
        return badges
