"""
engine.py – OnboardingEngine facade
====================================
Wires one persistence adapter, one analytics sink and the milestone
catalog into every component:

  OnboardingEngine
    .store        ProgressStore       sessions, step progress, aggregates
    .blockers     BlockerAnalyzer     why a session is stuck
    .milestones   MilestoneEngine     awards and badges
    .certificates CertificateGenerator
    .paths        PathEngine          template choice and next step
    .reports      ReportGenerator
    .backup       LocalBackup         local cache with restore / sync

``OnboardingEngine.from_settings()`` builds a SQLite-backed engine from the
environment; ``OnboardingEngine.in_memory()`` is used by tests and the demo
and owns a temp backup dir unless given one (``close()`` or ``with`` removes it).
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import replace
from datetime import datetime
from pathlib import Path as FsPath
from typing import Any, Callable, Mapping, Optional, Union

from onboarding_engine.analytics import NullAnalyticsSink, StoreAnalyticsSink
from onboarding_engine.backup import LocalBackup
from onboarding_engine.blockers import BlockerAnalyzer
from onboarding_engine.catalog import DEFAULT_PATHS, MilestoneCatalog, default_catalog
from onboarding_engine.certificates import CertificateGenerator
from onboarding_engine.config import BackupConfig, Settings, get_settings
from onboarding_engine.database import InMemoryAdapter, SQLiteAdapter
from onboarding_engine.milestones import MilestoneEngine
from onboarding_engine.models import OnboardingContext, Path, Session, utcnow
from onboarding_engine.path_engine import PathEngine, PersonalizedPath
from onboarding_engine.progress_store import ProgressStore, coerce_model
from onboarding_engine.reports import ReportGenerator

logger = logging.getLogger(__name__)


class OnboardingEngine:

    def __init__(
        self,
        adapter,
        settings: Settings,
        catalog: Optional[MilestoneCatalog] = None,
        analytics=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.adapter  = adapter
        self.clock    = clock or utcnow
        if analytics is None:
            analytics = (StoreAnalyticsSink(adapter, self.clock)
                         if settings.app.analytics_enabled else NullAnalyticsSink())
        self.analytics = analytics

        self.store        = ProgressStore(adapter, analytics, self.clock)
        self.blockers     = BlockerAnalyzer(self.store, settings.blockers, self.clock)
        self.milestones   = MilestoneEngine(self.store, catalog or default_catalog(),
                                            analytics, self.clock)
        self.store.bind(blocker_analyzer=self.blockers, milestone_engine=self.milestones)

        self.certificates = CertificateGenerator(self.store)
        self.paths        = PathEngine(self.store, analytics, settings.app.default_role)
        self.reports      = ReportGenerator(self.store, self.blockers, settings.reports, self.clock)
        self.backup       = LocalBackup(self.store, settings.backup.cache_dir, self.clock)
        self._tmpdir: Optional[tempfile.TemporaryDirectory] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "OnboardingEngine":
        settings = settings or get_settings()
        return cls(SQLiteAdapter(settings.storage.db_path), settings, **kwargs)

    @classmethod
    def in_memory(
        cls,
        settings: Optional[Settings] = None,
        cache_dir=None,
        **kwargs,
    ) -> "OnboardingEngine":
        """
        Engine over an InMemoryAdapter.  The backup cache goes to ``cache_dir``;
        without one the engine owns a temp dir that ``close()`` removes.
        """
        settings = settings or get_settings()
        tmpdir = None if cache_dir else tempfile.TemporaryDirectory(prefix="onboarding_")
        settings = replace(settings, backup=BackupConfig(
            cache_dir=FsPath(cache_dir or tmpdir.name),
        ))
        engine = cls(InMemoryAdapter(), settings, **kwargs)
        engine._tmpdir = tmpdir
        return engine

    def close(self) -> None:
        """Remove the owned backup temp dir, if any.  Safe to call twice."""
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None

    def __enter__(self) -> "OnboardingEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Seeding & entry point ─────────────────────────────────────────────────

    def seed_default_paths(self) -> list[Path]:
        published = [self.paths.publish_path(p) for p in DEFAULT_PATHS]
        logger.info("Seeded %d default path template(s)", len(published))
        return published

    def start_onboarding(
        self,
        user_id: str,
        context: Union[OnboardingContext, Mapping[str, Any]],
    ) -> tuple[Session, PersonalizedPath]:
        """Pick the best path for ``context`` and open a session on it."""
        ctx = coerce_model(OnboardingContext, context, "start_onboarding")
        personalized = self.paths.generate_personalized_path(user_id, ctx)
        session = self.store.start_session(user_id, personalized.path_id, ctx)
        return session, personalized
