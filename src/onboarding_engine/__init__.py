"""
onboarding_engine — Adaptive onboarding progress & path engine
===============================================================
Tracks a user's progress through an onboarding Path, explains why a
session is stuck, awards milestones and badges, issues completion
certificates, reports trends and keeps a local backup of progress.

Module map
----------
  models.py          Pydantic entities (Session, Path, ProgressRecord, …) and enums.
  config.py          Settings loaded from .env; blocker thresholds, severities.
  errors.py          ValidationError / NotFoundError / StorageError / PartialFailure.
  database.py        Persistence adapters: SQLite (generic table) and in-memory.
  analytics.py       Fire-and-forget analytics sinks.
  catalog.py         Milestone / badge catalog and default path templates.

  progress_store.py  Sessions, idempotent step upserts, aggregate progress.
  blockers.py        Blocker classification over progress history.
  milestones.py      Idempotent milestone awards and badge progress.
  certificates.py    Completion certificates (+ reportlab PDF).
  path_engine.py     Template selection, next step, completion validation.
  reports.py         Progress reports with trend series and recommendations.
  backup.py          Local JSON cache with restore and last-writer-wins sync.
  engine.py          OnboardingEngine facade wiring all of the above.
  cli.py             Rich walk-through demo (python -m onboarding_engine).

Write flow
----------
  record_step_completion → ProgressStore (upsert + history event)
    ├── BlockerAnalyzer   (failure / overrun only)
    ├── MilestoneEngine   (completion only)
    └── session aggregate refresh
  side-effect faults come back as PartialFailure warnings.
"""
__version__ = "0.1.0"
