"""
database.py — Persistence adapters for the onboarding engine
=============================================================
The engine talks to storage only through three primitives:

  upsert(table, key, record, on_conflict="update")  → stored record
  query(table, filter)                              → list[record]
  get(table, key)                                   → record | NotFoundError

Records are JSON-compatible dicts; keys are tuples of strings.  Every
adapter fault is raised as StorageError and never retried here.

Design decisions
----------------
- **Single generic table** — the SQLite adapter stores every logical table
  in one ``records`` table keyed by (tbl, pk) with the record as a JSON
  TEXT body.  Filters use ``json_extract`` so the adapter stays schema-free.
- **Conditional writes, not locks** — uniqueness on a key is enforced by
  ``INSERT … ON CONFLICT`` so several engine processes can share one
  database file.  ``on_conflict="ignore"`` keeps the first writer's record
  and returns it to every later caller.
- **WAL journal mode** — readers do not block the writer.

Logical tables
--------------
  sessions          key (session_id,)
  paths             key (path_id,)
  progress          key (session_id, step_id)
  progress_events   key (session_id, event_id)      append-only
  achievements      key (session_id, milestone_key)
  analytics_events  key (event_id,)
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from pathlib import Path as FsPath
from typing import Any, Optional, Protocol, Sequence, Union

from onboarding_engine.errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

Key = Sequence[str]
Record = dict[str, Any]

_CONFLICT_MODES = ("update", "ignore")


def _pk(key: Key) -> str:
    if isinstance(key, str) or not key or not all(isinstance(k, str) and k for k in key):
        raise ValidationError(f"Invalid storage key {key!r}", "database")
    return json.dumps(list(key))


def _check_mode(on_conflict: str) -> None:
    if on_conflict not in _CONFLICT_MODES:
        raise ValidationError(f"on_conflict must be one of {_CONFLICT_MODES}", "database")


class PersistenceAdapter(Protocol):
    def upsert(self, table: str, key: Key, record: Record, *, on_conflict: str = "update") -> Record: ...

    def query(self, table: str, filter: Optional[dict[str, Any]] = None) -> list[Record]: ...

    def get(self, table: str, key: Key) -> Record: ...


# ─── In-memory adapter ───────────────────────────────────────────────────────

class InMemoryAdapter:
    """
    Dict-backed adapter for tests and the CLI demo.  A lock makes the
    conditional write atomic inside one process.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Record]] = {}
        self._lock = threading.Lock()

    def upsert(self, table: str, key: Key, record: Record, *, on_conflict: str = "update") -> Record:
        _check_mode(on_conflict)
        pk = _pk(key)
        with self._lock:
            rows = self._tables.setdefault(table, {})
            if on_conflict == "ignore" and pk in rows:
                return copy.deepcopy(rows[pk])
            # Round-trip through JSON so callers get the same shapes SQLite returns
            stored = json.loads(json.dumps(record))
            rows[pk] = stored   # replacing keeps the original insertion position
            return copy.deepcopy(stored)

    def query(self, table: str, filter: Optional[dict[str, Any]] = None) -> list[Record]:
        filter = filter or {}
        with self._lock:
            rows = list(self._tables.get(table, {}).values())
        return [
            copy.deepcopy(r) for r in rows
            if all(r.get(k) == v for k, v in filter.items())
        ]

    def get(self, table: str, key: Key) -> Record:
        pk = _pk(key)
        with self._lock:
            row = self._tables.get(table, {}).get(pk)
        if row is None:
            raise NotFoundError(f"No {table} record for key {tuple(key)}", "get")
        return copy.deepcopy(row)


# ─── SQLite adapter ──────────────────────────────────────────────────────────

class SQLiteAdapter:
    """Generic-table SQLite adapter; one connection per call."""

    def __init__(self, db_path: Union[str, FsPath]) -> None:
        self.db_path = FsPath(db_path)
        self.init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Return a connection with row_factory set."""
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self) -> None:
        """Create the records table if it doesn't exist."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._get_conn()
            try:
                conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                    tbl         TEXT NOT NULL,
                    pk          TEXT NOT NULL,
                    body        TEXT NOT NULL,
                    created_at  TEXT DEFAULT (datetime('now')),
                    updated_at  TEXT DEFAULT (datetime('now')),
                    UNIQUE (tbl, pk)
                );
                CREATE INDEX IF NOT EXISTS idx_records_tbl ON records(tbl);
                """)
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Failed to initialise database at {self.db_path}", "init_db") from exc

    def upsert(self, table: str, key: Key, record: Record, *, on_conflict: str = "update") -> Record:
        _check_mode(on_conflict)
        pk = _pk(key)
        body = json.dumps(record)
        if on_conflict == "update":
            sql = """
                INSERT INTO records (tbl, pk, body) VALUES (?, ?, ?)
                ON CONFLICT(tbl, pk) DO UPDATE SET
                    body = excluded.body,
                    updated_at = datetime('now')
            """
        else:
            sql = "INSERT INTO records (tbl, pk, body) VALUES (?, ?, ?) ON CONFLICT(tbl, pk) DO NOTHING"
        try:
            conn = self._get_conn()
            try:
                conn.execute(sql, (table, pk, body))
                row = conn.execute(
                    "SELECT body FROM records WHERE tbl = ? AND pk = ?", (table, pk)
                ).fetchone()
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to upsert {table} record", "upsert",
                               {"table": table, "key": list(key)}) from exc
        logger.debug("upsert %s %s (%s)", table, pk, on_conflict)
        return json.loads(row["body"])

    def query(self, table: str, filter: Optional[dict[str, Any]] = None) -> list[Record]:
        clauses = ["tbl = ?"]
        params: list[Any] = [table]
        for field_name, value in (filter or {}).items():
            if not field_name.isidentifier():
                raise ValidationError(f"Invalid filter field {field_name!r}", "query")
            if value is None:
                clauses.append(f"json_extract(body, '$.{field_name}') IS NULL")
            else:
                clauses.append(f"json_extract(body, '$.{field_name}') = ?")
                params.append(value)
        sql = f"SELECT body FROM records WHERE {' AND '.join(clauses)} ORDER BY seq"
        try:
            conn = self._get_conn()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to query {table}", "query", {"table": table}) from exc
        return [json.loads(r["body"]) for r in rows]

    def get(self, table: str, key: Key) -> Record:
        pk = _pk(key)
        try:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT body FROM records WHERE tbl = ? AND pk = ?", (table, pk)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read {table} record", "get", {"table": table}) from exc
        if row is None:
            raise NotFoundError(f"No {table} record for key {tuple(key)}", "get")
        return json.loads(row["body"])
