"""
Data models for the onboarding engine.

Persisted entities (Session, Path, PathStep, ProgressRecord, ProgressEvent,
Achievement) are Pydantic models so the persistence adapter can store them
as plain JSON dicts and validate them on the way back in.  Derived
read-models live next to the component that computes them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ─── Enumerations ────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    ACTIVE    = "active"
    COMPLETED = "completed"   # terminal
    ABANDONED = "abandoned"   # terminal


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"   # terminal for the step
    FAILED      = "failed"      # may be retried


class StepType(str, Enum):
    TUTORIAL   = "tutorial"
    EXERCISE   = "exercise"
    SETUP      = "setup"
    VALIDATION = "validation"
    MILESTONE  = "milestone"


class ErrorKind(str, Enum):
    """What went wrong on a failed attempt, as reported by the step UI."""
    VALIDATION = "validation"
    INPUT      = "input"
    TECHNICAL  = "technical"
    SYSTEM     = "system"
    TIMEOUT    = "timeout"
    NETWORK    = "network"
    UNKNOWN    = "unknown"


class BlockerCategory(str, Enum):
    VALIDATION = "validation"
    TECHNICAL  = "technical"
    ENGAGEMENT = "engagement"
    PATTERN    = "pattern"


class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def raised(self) -> "Severity":
        """One level up, capped at CRITICAL."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
_SEVERITY_RANK  = {s: i for i, s in enumerate(_SEVERITY_ORDER)}


# ─── Path templates ──────────────────────────────────────────────────────────

class PathStep(BaseModel):
    step_id:        str = Field(min_length=1)
    title:          str = ""
    order:          int = Field(ge=0, description="Unique within the path")
    step_type:      StepType = StepType.TUTORIAL
    is_required:    bool = True
    dependencies:   list[str] = Field(default_factory=list)
    estimated_time: float = Field(default=10.0, ge=0, description="Minutes")


class Path(BaseModel):
    """
    Ordered step template for a role/context.  Immutable once published;
    a changed template is published under a new path_id.
    """
    path_id:            str = Field(min_length=1)
    name:               str
    target_role:        str
    organization_id:    Optional[str] = None
    subscription_tier:  Optional[str] = None
    description:        str = ""
    steps:              list[PathStep] = Field(default_factory=list)

    @property
    def estimated_duration(self) -> float:
        return sum(s.estimated_time for s in self.steps)

    def ordered_steps(self) -> list[PathStep]:
        return sorted(self.steps, key=lambda s: s.order)

    def step_by_id(self, step_id: str) -> Optional[PathStep]:
        return next((s for s in self.steps if s.step_id == step_id), None)

    def required_step_ids(self) -> list[str]:
        return [s.step_id for s in self.ordered_steps() if s.is_required]


# ─── Sessions & progress ─────────────────────────────────────────────────────

class Session(BaseModel):
    session_id:           str
    user_id:              str
    path_id:              str
    status:               SessionStatus = SessionStatus.ACTIVE
    started_at:           datetime
    completed_at:         Optional[datetime] = None
    last_active_at:       Optional[datetime] = None
    context:              dict[str, Any] = Field(default_factory=dict)
    # Denormalised aggregate, refreshed after every step completion
    progress_percentage:  float = 0.0
    time_spent:           float = 0.0
    current_step_index:   int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.ABANDONED)


class StepError(BaseModel):
    kind:    ErrorKind = ErrorKind.UNKNOWN
    message: str = ""


class ProgressRecord(BaseModel):
    """Current state of one step in one session; unique on (session_id, step_id)."""
    session_id:   str
    step_id:      str
    status:       StepStatus = StepStatus.NOT_STARTED
    time_spent:   float = Field(default=0.0, ge=0, description="Minutes")
    attempts:     int = Field(default=0, ge=0)
    score:        Optional[float] = None
    last_error:   Optional[StepError] = None
    user_actions: dict[str, Any] = Field(default_factory=dict)
    started_at:   Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at:   datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.session_id, self.step_id)


class ProgressEvent(BaseModel):
    """Append-only copy of a ProgressRecord taken after each write."""
    event_id:    str
    session_id:  str
    step_id:     str
    status:      StepStatus
    time_spent:  float = 0.0
    attempts:    int = 0
    last_error:  Optional[StepError] = None
    recorded_at: datetime

    @classmethod
    def from_record(cls, record: ProgressRecord) -> "ProgressEvent":
        return cls(
            event_id    = new_id("evt"),
            session_id  = record.session_id,
            step_id     = record.step_id,
            status      = record.status,
            time_spent  = record.time_spent,
            attempts    = record.attempts,
            last_error  = record.last_error,
            recorded_at = record.updated_at,
        )


class Achievement(BaseModel):
    """A milestone award; unique on (session_id, milestone_key)."""
    achievement_id: str
    session_id:     str
    user_id:        str
    milestone_key:  str
    awarded_at:     datetime
    data:           dict[str, Any] = Field(default_factory=dict)


# ─── Input payloads ──────────────────────────────────────────────────────────

class StepProgressUpdate(BaseModel):
    """Caller-supplied data for track_step_progress; unset fields keep their value."""
    status:       StepStatus
    time_spent:   Optional[float] = Field(default=None, ge=0)
    attempts:     Optional[int] = Field(default=None, ge=0)
    score:        Optional[float] = None
    last_error:   Optional[StepError] = None
    user_actions: Optional[dict[str, Any]] = None


class StepResult(BaseModel):
    """Outcome reported by record_step_completion."""
    status:       StepStatus
    time_spent:   Optional[float] = Field(default=None, ge=0)
    score:        Optional[float] = None
    error:        Optional[StepError] = None
    user_actions: Optional[dict[str, Any]] = None


class OnboardingContext(BaseModel):
    role:              str = Field(min_length=1)
    organization_id:   Optional[str] = None
    subscription_tier: Optional[str] = None
    preferences:       dict[str, Any] = Field(default_factory=dict)
