"""
config.py — Central settings for the onboarding engine
=======================================================
All configuration is loaded from environment variables / .env file.
Copy .env.example → .env to override the defaults.

Blocker thresholds, the category → severity table, the local backup
directory and the report bucket size are all injected from here so the
rules stay data-driven and unit-testable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path as FsPath

from dotenv import load_dotenv

from onboarding_engine.errors import ValidationError
from onboarding_engine.models import BlockerCategory, Severity

# Load .env into os.environ (no-op if already set, safe to call multiple times)
load_dotenv(override=False)

# Workspace root (src/onboarding_engine/config.py → ../../)
_ROOT_DIR = FsPath(__file__).resolve().parent.parent.parent

DEFAULT_CATEGORY_SEVERITY: dict[BlockerCategory, Severity] = {
    BlockerCategory.PATTERN:    Severity.CRITICAL,
    BlockerCategory.TECHNICAL:  Severity.HIGH,
    BlockerCategory.VALIDATION: Severity.MEDIUM,
    BlockerCategory.ENGAGEMENT: Severity.LOW,
}

REPORT_BUCKETS = ("day", "week")


# ─── Helpers ────────────────────────────────────────────────────────────────

def parse_category_severity(raw: str) -> dict[BlockerCategory, Severity]:
    """
    Parse ``"pattern=critical,technical=high"`` into a full mapping.
    Categories not mentioned keep their default severity.
    """
    mapping = dict(DEFAULT_CATEGORY_SEVERITY)
    for chunk in filter(None, (c.strip() for c in raw.split(","))):
        name, sep, level = chunk.partition("=")
        if not sep:
            raise ValidationError(f"Malformed category severity entry {chunk!r}", "get_settings")
        try:
            mapping[BlockerCategory(name.strip().lower())] = Severity(level.strip().lower())
        except ValueError as exc:
            raise ValidationError(
                f"Unknown category or severity in {chunk!r}", "get_settings"
            ) from exc
    return mapping


# ─── Storage ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StorageConfig:
    db_path: FsPath


# ─── Blocker analysis ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BlockerConfig:
    engagement_multiple:   float = 3.0
    validation_threshold:  int   = 3
    recency_window_hours:  float = 24.0
    category_severity:     dict[BlockerCategory, Severity] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_SEVERITY)
    )


# ─── Local backup ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BackupConfig:
    cache_dir: FsPath


# ─── Reports ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReportConfig:
    bucket:              str = "day"   # "day" | "week"
    max_recommendations: int = 5


# ─── App-level settings ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class AppConfig:
    default_role:      str  = "default"
    analytics_enabled: bool = True
    log_level:         str  = "INFO"


# ─── Master settings object ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    storage:  StorageConfig
    blockers: BlockerConfig
    backup:   BackupConfig
    reports:  ReportConfig
    app:      AppConfig

    def status_summary(self) -> dict[str, str]:
        """Return a dict of setting → value for the CLI banner."""
        severities = ", ".join(
            f"{c.value}={s.value}" for c, s in self.blockers.category_severity.items()
        )
        return {
            "Database":            str(self.storage.db_path),
            "Backup cache":        str(self.backup.cache_dir),
            "Engagement multiple": f"{self.blockers.engagement_multiple:g}x estimated time",
            "Validation streak":   f"{self.blockers.validation_threshold} failures",
            "Recency window":      f"{self.blockers.recency_window_hours:g} h",
            "Category severity":   severities,
            "Report bucket":       self.reports.bucket,
            "Analytics":           "on" if self.app.analytics_enabled else "off",
        }


def get_settings() -> Settings:
    """Load all configuration from environment variables."""
    _str   = lambda k, d="": os.getenv(k, d).strip()
    _int   = lambda k, d=0: int(os.getenv(k, str(d)) or d)
    _float = lambda k, d=0.0: float(os.getenv(k, str(d)) or d)
    _bool  = lambda k, d=False: os.getenv(k, str(d)).lower() in ("1", "true", "yes")

    try:
        engagement_multiple = _float("ONBOARDING_ENGAGEMENT_MULTIPLE", 3.0)
        validation_threshold = _int("ONBOARDING_VALIDATION_THRESHOLD", 3)
        recency_hours = _float("ONBOARDING_RECENCY_HOURS", 24.0)
        max_recs = _int("ONBOARDING_MAX_RECOMMENDATIONS", 5)
    except ValueError as exc:
        raise ValidationError(f"Invalid numeric setting: {exc}", "get_settings") from exc

    if engagement_multiple <= 0 or validation_threshold < 1 or recency_hours < 0:
        raise ValidationError("Blocker thresholds must be positive", "get_settings")

    bucket = _str("ONBOARDING_REPORT_BUCKET", "day").lower()
    if bucket not in REPORT_BUCKETS:
        raise ValidationError(
            f"ONBOARDING_REPORT_BUCKET must be one of {REPORT_BUCKETS}, got {bucket!r}",
            "get_settings",
        )

    db_path = FsPath(_str("ONBOARDING_DB_PATH") or _ROOT_DIR / "onboarding_data.db")
    cache_dir = FsPath(_str("ONBOARDING_BACKUP_DIR") or _ROOT_DIR / ".onboarding_cache")

    return Settings(
        storage=StorageConfig(db_path=db_path),
        blockers=BlockerConfig(
            engagement_multiple  = engagement_multiple,
            validation_threshold = validation_threshold,
            recency_window_hours = recency_hours,
            category_severity    = parse_category_severity(_str("ONBOARDING_CATEGORY_SEVERITY")),
        ),
        backup=BackupConfig(cache_dir=cache_dir),
        reports=ReportConfig(
            bucket              = bucket,
            max_recommendations = max_recs,
        ),
        app=AppConfig(
            default_role      = _str("ONBOARDING_DEFAULT_ROLE", "default") or "default",
            analytics_enabled = _bool("ONBOARDING_ANALYTICS_ENABLED", True),
            log_level         = _str("ONBOARDING_LOG_LEVEL", "INFO").upper(),
        ),
    )
