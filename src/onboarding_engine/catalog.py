"""
catalog.py — Milestone / badge catalog and default path templates
==================================================================
The milestone rules are configuration, not code: a ``MilestoneCatalog`` is
passed into the MilestoneEngine so tests can inject a tiny catalog and a
deployment can load its own.  ``default_catalog()`` and
``DEFAULT_PATHS`` mirror the seed data shipped with the product.

Criteria vocabulary (all keys of a milestone must hold for it to be met)
-----------------------------------------------------------------------
  steps_completed       int    completed steps (required or optional) ≥ n
  progress_percentage   float  required-step completion % ≥ n
  all_required_steps    bool   every required step completed
  required_steps        list   every listed step_id completed
  max_time_minutes      float  total time spent ≤ n
  completion_required   bool   every required step completed

Any other key describes an external fact the engine cannot observe
(e.g. ``agent_created``); such milestones are only ever awarded
explicitly through ``award_milestone``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from onboarding_engine.models import Path, PathStep, StepType


# ─── Definitions ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MilestoneDefinition:
    key:            str
    name:           str
    description:    str
    milestone_type: str                      # progress | completion | time_based | achievement
    criteria:       dict[str, Any] = field(default_factory=dict)
    points:         int = 0


@dataclass(frozen=True)
class BadgeDefinition:
    badge_id:       str
    name:           str
    description:    str
    milestone_keys: tuple[str, ...] = ()


@dataclass
class MilestoneCatalog:
    milestones: dict[str, MilestoneDefinition] = field(default_factory=dict)
    badges:     list[BadgeDefinition] = field(default_factory=list)

    @classmethod
    def from_definitions(
        cls,
        milestones: list[MilestoneDefinition],
        badges: Optional[list[BadgeDefinition]] = None,
    ) -> "MilestoneCatalog":
        return cls(milestones={m.key: m for m in milestones}, badges=list(badges or []))

    def get(self, key: str) -> Optional[MilestoneDefinition]:
        return self.milestones.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.milestones


# ─── Default milestone catalog ───────────────────────────────────────────────

_DEFAULT_MILESTONES: list[MilestoneDefinition] = [
    MilestoneDefinition(
        "first_steps", "First Steps", "Complete your first onboarding step",
        "progress", {"steps_completed": 1}, 10,
    ),
    MilestoneDefinition(
        "halfway", "Halfway There", "Reach 50% of the required steps",
        "progress", {"progress_percentage": 50}, 20,
    ),
    MilestoneDefinition(
        "profile_complete", "Profile Complete", "Complete your user profile setup",
        "achievement", {"profile_fields": ["name", "role", "avatar"]}, 25,
    ),
    MilestoneDefinition(
        "first_agent", "First Agent", "Create and deploy your first AI agent",
        "achievement", {"agent_created": True, "agent_deployed": True}, 50,
    ),
    MilestoneDefinition(
        "team_player", "Team Player", "Successfully collaborate on a team project",
        "achievement", {"team_project_completed": True}, 40,
    ),
    MilestoneDefinition(
        "speed_runner", "Speed Runner", "Complete onboarding in under 30 minutes",
        "time_based", {"max_time_minutes": 30, "completion_required": True}, 75,
    ),
    MilestoneDefinition(
        "graduate", "Onboarding Graduate", "Complete the entire onboarding journey",
        "completion", {"progress_percentage": 100, "all_required_steps": True}, 100,
    ),
]

_DEFAULT_BADGES: list[BadgeDefinition] = [
    BadgeDefinition("getting_started", "Getting Started",
                    "You've taken your first step!", ("first_steps",)),
    BadgeDefinition("momentum", "Momentum",
                    "Halfway through the required steps.", ("first_steps", "halfway")),
    BadgeDefinition("builder", "Agent Creator",
                    "Profile done and first agent shipped.", ("profile_complete", "first_agent")),
    BadgeDefinition("quick_learner", "Quick Learner",
                    "Completed onboarding in record time.", ("speed_runner",)),
    BadgeDefinition("graduate", "Onboarding Graduate",
                    "Completed the full onboarding experience.", ("graduate",)),
    BadgeDefinition("welcome", "Welcome Aboard",
                    "Awarded to everyone who opens the onboarding flow.", ()),
]


def default_catalog() -> MilestoneCatalog:
    return MilestoneCatalog.from_definitions(_DEFAULT_MILESTONES, _DEFAULT_BADGES)


# ─── Default path templates ──────────────────────────────────────────────────

def _step(step_id, title, order, step_type, required=True, deps=(), minutes=10.0) -> PathStep:
    return PathStep(
        step_id        = step_id,
        title          = title,
        order          = order,
        step_type      = step_type,
        is_required    = required,
        dependencies   = list(deps),
        estimated_time = minutes,
    )


DEFAULT_PATHS: list[Path] = [
    Path(
        path_id     = "path_default_v1",
        name        = "Getting Started",
        target_role = "default",
        description = "Generic onboarding for users without a specific role",
        steps=[
            _step("welcome",      "Welcome tour",          1, StepType.TUTORIAL, minutes=5),
            _step("profile",      "Complete your profile", 2, StepType.SETUP, deps=["welcome"]),
            _step("explore",      "Explore the dashboard", 3, StepType.TUTORIAL, required=False, minutes=8),
        ],
    ),
    Path(
        path_id     = "path_developer_v1",
        name        = "Individual Developer Onboarding",
        target_role = "developer",
        description = "Complete onboarding journey for individual developers",
        steps=[
            _step("welcome",      "Welcome tour",             1, StepType.TUTORIAL, minutes=5),
            _step("profile",      "Complete your profile",    2, StepType.SETUP, deps=["welcome"]),
            _step("environment",  "Set up your environment",  3, StepType.SETUP, deps=["profile"], minutes=15),
            _step("first_agent",  "Create your first agent",  4, StepType.EXERCISE, deps=["environment"], minutes=20),
            _step("collaborate",  "Invite a collaborator",    5, StepType.TUTORIAL, required=False, minutes=5),
            _step("verify",       "Verify your deployment",   6, StepType.VALIDATION, deps=["first_agent"]),
        ],
    ),
    Path(
        path_id     = "path_admin_v1",
        name        = "Team Administrator Onboarding",
        target_role = "admin",
        description = "Organization setup for team administrators",
        steps=[
            _step("welcome",      "Welcome tour",             1, StepType.TUTORIAL, minutes=5),
            _step("organization", "Create your organization", 2, StepType.SETUP, deps=["welcome"], minutes=10),
            _step("settings",     "Configure team settings",  3, StepType.SETUP, deps=["organization"], minutes=10),
            _step("invite",       "Invite team members",      4, StepType.EXERCISE, deps=["organization"], minutes=10),
            _step("billing",      "Set up billing",           5, StepType.SETUP, deps=["organization"], minutes=15),
            _step("roles",        "Review roles & permissions", 6, StepType.TUTORIAL, required=False, minutes=10),
        ],
    ),
    Path(
        path_id     = "path_member_v1",
        name        = "Team Member Onboarding",
        target_role = "member",
        description = "Onboarding for members joining an existing organization",
        steps=[
            _step("welcome",       "Welcome tour",               1, StepType.TUTORIAL, minutes=5),
            _step("workspace",     "Tour the team workspace",    2, StepType.TUTORIAL, deps=["welcome"]),
            _step("first_project", "Complete a team project",    3, StepType.EXERCISE, deps=["workspace"], minutes=20),
            _step("notifications", "Set communication preferences", 4, StepType.SETUP, required=False, minutes=5),
        ],
    ),
]
