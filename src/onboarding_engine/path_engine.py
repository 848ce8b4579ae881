"""
path_engine.py – Path template selection and step sequencing
=============================================================
Chooses the onboarding Path for a user context and answers "what next?"
questions for a running session.

  PathEngine
    • publish_path(path)
        Stores a template.  Templates are immutable once published: the
        same path_id with different content is rejected, identical content
        is a no-op.  Step orders must be unique and dependencies must form
        a DAG over the path's own steps.
    • generate_personalized_path(user_id, context)  → PersonalizedPath
    • get_next_step(session_id)                     → PathStep | None
    • validate_path_completion(session_id)          → PathValidation
    • suggest_alternative_paths(session_id)         → list[AlternativePath]

Template selection
------------------
Eligible templates have ``subscription_tier`` unset or equal to the context
tier.  The most specific match wins:

    role + organization  >  role  >  default role

Ties go to tier-specific templates first, then by name, then by path_id.
The returned step order is the template order with any step whose
dependencies come later deferred until after them (stable topological sort).
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from onboarding_engine.analytics import emit_safely
from onboarding_engine.errors import NotFoundError, ValidationError
from onboarding_engine.models import OnboardingContext, Path, PathStep, StepStatus
from onboarding_engine.progress_store import coerce_model, validate_id

logger = logging.getLogger(__name__)

MATCH_ROLE_AND_ORG = "role+organization"
MATCH_ROLE         = "role"
MATCH_DEFAULT      = "default"

_MATCH_RANK = {MATCH_ROLE_AND_ORG: 0, MATCH_ROLE: 1, MATCH_DEFAULT: 2}


# ─── Output models ───────────────────────────────────────────────────────────

@dataclass
class PersonalizedPath:
    user_id:            str
    path:               Path
    match:              str                        # role+organization | role | default
    steps:              list[PathStep] = field(default_factory=list)
    estimated_duration: float = 0.0               # minutes

    @property
    def path_id(self) -> str:
        return self.path.path_id


@dataclass
class PathValidation:
    is_valid:              bool
    issues:                list[str] = field(default_factory=list)
    completion_percentage: float = 0.0
    missing_steps:         list[str] = field(default_factory=list)


@dataclass
class AlternativePath:
    path_id:            str
    path_name:          str
    reason:             str
    estimated_duration: float
    focus_areas:        list[str] = field(default_factory=list)


# ─── Pure helpers ────────────────────────────────────────────────────────────

def dependency_order(steps: list[PathStep]) -> list[PathStep]:
    """
    Stable topological order: a step never precedes one of its dependencies,
    and independent steps keep their template order.  Dependencies outside
    ``steps`` are ignored.  Raises ValidationError on a cycle.
    """
    by_id = {s.step_id: s for s in steps}
    pending = {s.step_id: {d for d in s.dependencies if d in by_id and d != s.step_id}
               for s in steps}
    dependants: dict[str, list[str]] = {s.step_id: [] for s in steps}
    for sid, deps in pending.items():
        for dep in deps:
            dependants[dep].append(sid)

    ready = [(by_id[sid].order, sid) for sid, deps in pending.items() if not deps]
    heapq.heapify(ready)
    ordered: list[PathStep] = []
    while ready:
        _, sid = heapq.heappop(ready)
        ordered.append(by_id[sid])
        for child in dependants[sid]:
            pending[child].discard(sid)
            if not pending[child]:
                heapq.heappush(ready, (by_id[child].order, child))

    if len(ordered) != len(steps):
        stuck = sorted(sid for sid, deps in pending.items() if deps)
        raise ValidationError("Step dependencies contain a cycle", "dependency_order",
                              {"steps": stuck})
    return ordered


def validate_path(path: Path) -> None:
    """Structural checks run before a template is published."""
    validate_id(path.path_id, "path_id")
    if not path.steps:
        raise ValidationError(f"Path {path.path_id} has no steps", "publish_path")

    ids = [s.step_id for s in path.steps]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"Path {path.path_id} has duplicate step ids", "publish_path")
    orders = [s.order for s in path.steps]
    if len(set(orders)) != len(orders):
        raise ValidationError(f"Path {path.path_id} has duplicate step orders", "publish_path")

    for step in path.steps:
        validate_id(step.step_id, "step_id")
        unknown = [d for d in step.dependencies if d not in ids]
        if unknown:
            raise ValidationError(
                f"Step {step.step_id!r} depends on unknown step(s) {unknown}", "publish_path",
            )
        if step.step_id in step.dependencies:
            raise ValidationError(f"Step {step.step_id!r} depends on itself", "publish_path")

    dependency_order(path.steps)


def match_template(path: Path, context: OnboardingContext, default_role: str) -> Optional[str]:
    """Return the match level of ``path`` for ``context``, or None if ineligible."""
    if path.subscription_tier is not None and path.subscription_tier != context.subscription_tier:
        return None
    if path.target_role == context.role:
        if path.organization_id is None:
            return MATCH_ROLE
        if path.organization_id == context.organization_id:
            return MATCH_ROLE_AND_ORG
        return None
    if path.target_role == default_role and path.organization_id is None:
        return MATCH_DEFAULT
    return None


def rank_templates(
    paths: list[Path],
    context: OnboardingContext,
    default_role: str,
) -> list[tuple[str, Path]]:
    """Eligible templates, best match first."""
    matched = []
    for path in paths:
        level = match_template(path, context, default_role)
        if level is not None:
            matched.append((level, path))
    matched.sort(key=lambda lp: (
        _MATCH_RANK[lp[0]],
        lp[1].subscription_tier is None,
        lp[1].name,
        lp[1].path_id,
    ))
    return matched


# ─── Engine ──────────────────────────────────────────────────────────────────

class PathEngine:

    def __init__(self, store, analytics=None, default_role: str = "default") -> None:
        self.store        = store
        self.analytics    = analytics
        self.default_role = default_role

    # ── Templates ─────────────────────────────────────────────────────────────

    def publish_path(self, path: Union[Path, Mapping[str, Any]]) -> Path:
        path = coerce_model(Path, path, "publish_path")
        validate_path(path)

        body = path.model_dump(mode="json")
        stored = self.store.adapter.upsert("paths", (path.path_id,), body, on_conflict="ignore")
        if stored != body:
            raise ValidationError(
                f"Path {path.path_id} is already published with different content; "
                "publish the change under a new path_id",
                "publish_path",
            )
        logger.debug("Published path %s (%d steps)", path.path_id, len(path.steps))
        return path

    def list_paths(self) -> list[Path]:
        return [Path.model_validate(r) for r in self.store.adapter.query("paths", {})]

    # ── Personalisation ───────────────────────────────────────────────────────

    def generate_personalized_path(
        self,
        user_id: str,
        context: Union[OnboardingContext, Mapping[str, Any]],
    ) -> PersonalizedPath:
        validate_id(user_id, "user_id")
        ctx = coerce_model(OnboardingContext, context, "generate_personalized_path")

        ranked = rank_templates(self.list_paths(), ctx, self.default_role)
        if not ranked:
            raise NotFoundError(
                f"No path template matches role {ctx.role!r} or the default role "
                f"{self.default_role!r}",
                "generate_personalized_path",
                {"role": ctx.role, "subscription_tier": ctx.subscription_tier},
            )

        match, template = ranked[0]
        steps = dependency_order(template.ordered_steps())
        personalized = PersonalizedPath(
            user_id            = user_id,
            path               = template,
            match              = match,
            steps              = steps,
            estimated_duration = template.estimated_duration,
        )
        logger.info("Selected path %s (%s match) for user %s", template.path_id, match, user_id)
        emit_safely(self.analytics, "path_generated", {
            "user_id":         user_id,
            "path_id":         template.path_id,
            "match":           match,
            "role":            ctx.role,
            "organization_id": ctx.organization_id,
            "candidates":      len(ranked),
        })
        return personalized

    # ── Session navigation ────────────────────────────────────────────────────

    def _completed_ids(self, session_id: str) -> set[str]:
        return {r.step_id for r in self.store.get_progress_records(session_id)
                if r.status == StepStatus.COMPLETED}

    def get_next_step(self, session_id: str) -> Optional[PathStep]:
        session = self.store.get_session(session_id)
        path = self.store.get_path(session.path_id)
        completed = self._completed_ids(session_id)

        if all(sid in completed for sid in path.required_step_ids()):
            return None
        for step in path.ordered_steps():
            if step.step_id in completed:
                continue
            if all(dep in completed for dep in step.dependencies):
                return step
        return None

    def validate_path_completion(self, session_id: str) -> PathValidation:
        session = self.store.get_session(session_id)
        path = self.store.get_path(session.path_id)
        progress = self.store.get_overall_progress(session_id)
        completed = set(progress.completed_step_ids)

        issues: list[str] = []
        if not path.steps:
            issues.append("Path has no steps defined")

        missing = [sid for sid in path.required_step_ids() if sid not in completed]
        if missing:
            issues.append(f"Missing {len(missing)} required step(s)")

        for step in path.ordered_steps():
            unmet = [d for d in step.dependencies if d not in completed]
            if step.step_id in completed and unmet:
                issues.append(f"Step {step.title or step.step_id!r} completed without meeting "
                              f"dependencies {unmet}")

        return PathValidation(
            is_valid              = not issues,
            issues                = issues,
            completion_percentage = progress.completion_percentage,
            missing_steps         = missing,
        )

    def suggest_alternative_paths(self, session_id: str) -> list[AlternativePath]:
        """Other templates eligible for the session's context, shortest first."""
        session = self.store.get_session(session_id)
        ctx = OnboardingContext.model_validate(
            session.context or {"role": self.default_role}
        )

        focus: list[str] = []
        analyzer = self.store.blocker_analyzer
        if analyzer is not None:
            focus = list(dict.fromkeys(b.category.value for b in analyzer.identify_blockers(session_id)))

        alternatives = []
        for match, path in rank_templates(self.list_paths(), ctx, self.default_role):
            if path.path_id == session.path_id:
                continue
            reason = (f"Alternative {match} path to address {', '.join(focus)} issues"
                      if focus else f"Alternative {match} path for your role")
            alternatives.append(AlternativePath(
                path_id            = path.path_id,
                path_name          = path.name,
                reason             = reason,
                estimated_duration = path.estimated_duration,
                focus_areas        = focus,
            ))
        alternatives.sort(key=lambda a: (a.estimated_duration, a.path_name, a.path_id))
        return alternatives
