"""
backup.py – Local progress cache with restore and sync
=======================================================
Mirrors the latest ProgressRecord set of a session into a JSON file under
``BackupConfig.cache_dir``:

    onboarding_backup_<session_id>.json
    {"version": 1, "session_id": …, "last_backup": …, "records": [...]}

Files are written to a temp file and moved into place with ``os.replace``
so a crash never leaves half a cache behind.

  LocalBackup
    • backup(session_id)   snapshot the store's records into the cache
    • restore(session_id)  read the cache; a missing file falls back to the
                           store, an unreadable one is deleted (warning
                           logged) and also falls back to the store
    • sync(session_id)     reconcile cache and store per step, newest
                           ``updated_at`` wins, ties go to the store; newer
                           cached records are written back to the store
    • clear(session_id)
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path as FsPath
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from onboarding_engine.errors import StorageError
from onboarding_engine.models import ProgressRecord, utcnow
from onboarding_engine.progress_store import validate_id

logger = logging.getLogger(__name__)

CACHE_VERSION = 1

SOURCE_CACHE  = "cache"
SOURCE_REMOTE = "remote"


class BackupPayload(BaseModel):
    """On-disk cache layout; anything that fails to parse is treated as corrupt."""
    version:     int = CACHE_VERSION
    session_id:  str
    last_backup: datetime
    records:     list[ProgressRecord] = Field(default_factory=list)


@dataclass
class RestoreResult:
    records:     list[ProgressRecord]
    source:      str                          # cache | remote
    last_backup: Optional[datetime] = None


@dataclass
class StepConflict:
    step_id:    str
    local:      Optional[ProgressRecord]
    remote:     Optional[ProgressRecord]
    resolution: str                           # cache | remote


@dataclass
class SyncResult:
    records:      list[ProgressRecord] = field(default_factory=list)
    conflicts:    list[StepConflict] = field(default_factory=list)
    synchronized: bool = True
    written_back: list[str] = field(default_factory=list)   # step_ids pushed to the store


def reconcile(
    local: list[ProgressRecord],
    remote: list[ProgressRecord],
) -> tuple[list[ProgressRecord], list[StepConflict]]:
    """Per-step last-writer-wins merge; the remote copy wins ties."""
    local_by_step = {r.step_id: r for r in local}
    remote_by_step = {r.step_id: r for r in remote}

    merged: list[ProgressRecord] = []
    conflicts: list[StepConflict] = []
    for step_id in list(dict.fromkeys([*remote_by_step, *local_by_step])):
        cached, stored = local_by_step.get(step_id), remote_by_step.get(step_id)
        if stored is None:
            winner, resolution = cached, SOURCE_CACHE
        elif cached is None or cached.updated_at <= stored.updated_at:
            winner, resolution = stored, SOURCE_REMOTE
        else:
            winner, resolution = cached, SOURCE_CACHE

        if cached is None or stored is None or cached != stored:
            conflicts.append(StepConflict(step_id, cached, stored, resolution))
        merged.append(winner)
    return merged, conflicts


class LocalBackup:

    def __init__(
        self,
        store,
        cache_dir: Union[str, FsPath],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store     = store
        self.cache_dir = FsPath(cache_dir)
        self.clock     = clock or store.clock or utcnow

    def cache_file(self, session_id: str) -> FsPath:
        validate_id(session_id, "session_id")
        return self.cache_dir / f"onboarding_backup_{session_id}.json"

    # ── Cache I/O ─────────────────────────────────────────────────────────────

    def _write(self, session_id: str, records: list[ProgressRecord]) -> BackupPayload:
        payload = BackupPayload(session_id=session_id, last_backup=self.clock(), records=records)
        target = self.cache_file(session_id)
        tmp = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=".backup_", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload.model_dump_json(indent=2))
            os.replace(tmp, target)
        except OSError as exc:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise StorageError(f"Could not write backup for {session_id}: {exc}", "backup") from exc
        return payload

    def _read(self, session_id: str) -> Optional[BackupPayload]:
        """Parsed cache entry, or None when absent or corrupt (corrupt files are removed)."""
        target = self.cache_file(session_id)
        if not target.exists():
            return None
        try:
            payload = BackupPayload.model_validate_json(target.read_text(encoding="utf-8"))
            if payload.version != CACHE_VERSION or payload.session_id != session_id:
                raise ValueError(f"cache belongs to {payload.session_id} v{payload.version}")
            if any(r.session_id != session_id for r in payload.records):
                raise ValueError("cache holds records of another session")
        except (OSError, UnicodeDecodeError, json.JSONDecodeError,
                PydanticValidationError, ValueError) as exc:
            logger.warning("Discarding corrupt backup %s: %s", target.name, exc)
            self.clear(session_id)
            return None
        return payload

    # ── Public API ────────────────────────────────────────────────────────────

    def backup(self, session_id: str) -> BackupPayload:
        self.store.get_session(session_id)
        records = self.store.get_progress_records(session_id)
        payload = self._write(session_id, records)
        logger.debug("Backed up %d record(s) for session %s", len(records), session_id)
        return payload

    def restore(self, session_id: str) -> RestoreResult:
        payload = self._read(session_id)
        if payload is None:
            return RestoreResult(records=self.store.get_progress_records(session_id),
                                 source=SOURCE_REMOTE)
        return RestoreResult(records=list(payload.records), source=SOURCE_CACHE,
                             last_backup=payload.last_backup)

    def sync(self, session_id: str) -> SyncResult:
        restored = self.restore(session_id)
        remote = self.store.get_progress_records(session_id)
        if restored.source == SOURCE_REMOTE:
            self._write(session_id, remote)
            return SyncResult(records=remote)

        merged, conflicts = reconcile(restored.records, remote)
        remote_by_step = {r.step_id: r for r in remote}
        frozen = self.store.get_session(session_id).is_terminal
        written: list[str] = []
        synchronized = True
        for record in merged:
            if remote_by_step.get(record.step_id) == record:
                continue
            # A finished session no longer accepts progress writes
            if frozen:
                synchronized = False
                continue
            self.store.write_record(record)
            written.append(record.step_id)

        # The cache mirrors the authoritative store once the session is closed
        kept = remote if frozen else merged
        self._write(session_id, kept)
        if conflicts:
            logger.info("Synced session %s: %d conflict(s), %d record(s) written back",
                        session_id, len(conflicts), len(written))
        return SyncResult(records=kept, conflicts=conflicts,
                          synchronized=synchronized, written_back=written)

    def clear(self, session_id: str) -> bool:
        target = self.cache_file(session_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Could not remove backup {target.name}: {exc}", "clear") from exc
        return True
