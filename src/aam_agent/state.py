from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import sqlite3
import threading
from typing import Literal, cast

from aam_agent.errors import ScopeMismatchError
from aam_agent.models import Activity, Cursor, Project, ResolutionOutcome


ProcessedOutcome = Literal["handled", "failed", "ignored"]

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


@dataclass(frozen=True)
class CursorRecord:
    cursor: Cursor
    last_activity_at: str | None
    updated_at: str


@dataclass(frozen=True)
class ProcessedActivityRow:
    activity_id: str
    kind: str
    issue_id: str
    outcome: ProcessedOutcome
    error: str | None
    activity_at: str
    processed_at: str


@dataclass(frozen=True)
class ResolutionRow:
    id: int
    issue_id: str
    status: str
    resolution_note: str
    outcome: ResolutionOutcome
    detail: str | None
    created_at: str


@dataclass(frozen=True)
class OverviewStats:
    project_id: str | None
    project_name: str | None
    cursor_kind: str | None
    cursor_updated_at: str | None
    handled: int
    failed: int
    ignored: int
    resolutions: int


class StateStore:
    """Agent bookkeeping in sqlite: cursor, processed-activity ledger, resolutions.

    Issue content is never written here.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        # Cursor commits must survive power loss.
        conn.execute("PRAGMA synchronous=FULL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS project_binding (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    project_id TEXT NOT NULL,
                    project_name TEXT NOT NULL,
                    bound_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cursor_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    kind TEXT NOT NULL CHECK (kind IN ('token', 'since')),
                    value TEXT NOT NULL,
                    last_activity_at TEXT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_activities (
                    activity_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    issue_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    error TEXT NULL,
                    activity_at TEXT NOT NULL,
                    processed_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS processed_activities_processed_at_idx
                ON processed_activities(processed_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS resolutions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    issue_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    resolution_note TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    detail TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )

    def bind_project(self, project: Project) -> None:
        """Tie this state DB to one project; a cursor from another project is never reused."""
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT project_id FROM project_binding WHERE id = 1").fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO project_binding(id, project_id, project_name) VALUES(1, ?, ?)",
                    (project.id, project.name),
                )
                return
            bound_project_id = str(row[0])
            if bound_project_id != project.id:
                raise ScopeMismatchError(
                    expected_project_id=bound_project_id, actual_project_id=project.id
                )
            conn.execute(
                "UPDATE project_binding SET project_name = ? WHERE id = 1", (project.name,)
            )

    def load_cursor(self) -> CursorRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT kind, value, last_activity_at, updated_at FROM cursor_state WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        kind, value, last_activity_at, updated_at = row
        cursor = Cursor.from_token(str(value)) if kind == "token" else Cursor.from_since(str(value))
        return CursorRecord(
            cursor=cursor,
            last_activity_at=str(last_activity_at) if last_activity_at is not None else None,
            updated_at=str(updated_at),
        )

    def save_cursor(self, cursor: Cursor, *, last_activity_at: str | None = None) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO cursor_state(id, kind, value, last_activity_at)
                VALUES(1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    kind=excluded.kind,
                    value=excluded.value,
                    last_activity_at=COALESCE(excluded.last_activity_at, last_activity_at),
                    updated_at={_NOW_SQL}
                """,
                (cursor.kind, cursor.value, last_activity_at),
            )

    def record_processed(
        self, activity: Activity, *, outcome: ProcessedOutcome, error: str | None = None
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO processed_activities(
                    activity_id, kind, issue_id, outcome, error, activity_at
                )
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(activity_id) DO NOTHING
                """,
                (activity.id, activity.kind, activity.issue_id, outcome, error, activity.timestamp),
            )

    def recent_processed_ids(self, limit: int) -> tuple[str, ...]:
        """Most recent processed ids, oldest first."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT activity_id FROM processed_activities
                ORDER BY processed_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return tuple(str(row[0]) for row in reversed(rows))

    def prune_processed(self, *, keep: int) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM processed_activities
                WHERE rowid NOT IN (
                    SELECT rowid FROM processed_activities
                    ORDER BY processed_at DESC, rowid DESC
                    LIMIT ?
                )
                """,
                (keep,),
            )
            return cursor.rowcount

    def list_recent_activities(self, *, limit: int = 50) -> tuple[ProcessedActivityRow, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT activity_id, kind, issue_id, outcome, error, activity_at, processed_at
                FROM processed_activities
                ORDER BY processed_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return tuple(
            ProcessedActivityRow(
                activity_id=str(activity_id),
                kind=str(kind),
                issue_id=str(issue_id),
                outcome=cast(ProcessedOutcome, str(outcome)),
                error=str(error) if error is not None else None,
                activity_at=str(activity_at),
                processed_at=str(processed_at),
            )
            for activity_id, kind, issue_id, outcome, error, activity_at, processed_at in rows
        )

    def record_resolution(
        self,
        *,
        issue_id: str,
        status: str,
        resolution_note: str,
        outcome: ResolutionOutcome,
        detail: str | None = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO resolutions(issue_id, status, resolution_note, outcome, detail)
                VALUES(?, ?, ?, ?, ?)
                """,
                (issue_id, status, resolution_note, outcome, detail),
            )

    def list_resolutions(self, *, limit: int = 50) -> tuple[ResolutionRow, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, issue_id, status, resolution_note, outcome, detail, created_at
                FROM resolutions
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return tuple(
            ResolutionRow(
                id=int(row_id),
                issue_id=str(issue_id),
                status=str(status),
                resolution_note=str(note),
                outcome=cast(ResolutionOutcome, str(outcome)),
                detail=str(detail) if detail is not None else None,
                created_at=str(created_at),
            )
            for row_id, issue_id, status, note, outcome, detail, created_at in rows
        )

    def load_overview(self) -> OverviewStats:
        with self._lock, self._connect() as conn:
            binding = conn.execute(
                "SELECT project_id, project_name FROM project_binding WHERE id = 1"
            ).fetchone()
            cursor_row = conn.execute(
                "SELECT kind, updated_at FROM cursor_state WHERE id = 1"
            ).fetchone()
            counts = dict(
                conn.execute(
                    "SELECT outcome, COUNT(*) FROM processed_activities GROUP BY outcome"
                ).fetchall()
            )
            resolution_count = conn.execute("SELECT COUNT(*) FROM resolutions").fetchone()[0]
        return OverviewStats(
            project_id=str(binding[0]) if binding else None,
            project_name=str(binding[1]) if binding else None,
            cursor_kind=str(cursor_row[0]) if cursor_row else None,
            cursor_updated_at=str(cursor_row[1]) if cursor_row else None,
            handled=int(counts.get("handled", 0)),
            failed=int(counts.get("failed", 0)),
            ignored=int(counts.get("ignored", 0)),
            resolutions=int(resolution_count),
        )
