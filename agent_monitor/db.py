"""SQLite storage for sessions and agent activities."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from agent_monitor.config import Config
from agent_monitor.date_utils import format_utc, parse_timestamp, utc_now
from agent_monitor.errors import ActivityStateError, NotFoundError, StorageError
from agent_monitor.models import (
    AgentActivity,
    FileOperation,
    Session,
    SessionFilter,
    TaskStatus,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration INTEGER,
    working_directory TEXT NOT NULL DEFAULT '',
    total_tasks INTEGER NOT NULL DEFAULT 0,
    completed_tasks INTEGER NOT NULL DEFAULT 0,
    metadata TEXT,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS activities (
    task_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    agent_id TEXT NOT NULL,
    agent_type TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration INTEGER,
    status TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    tools_used TEXT,
    success INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS file_operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES activities(task_id) ON DELETE CASCADE,
    operation TEXT NOT NULL,
    path TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time);
CREATE INDEX IF NOT EXISTS idx_sessions_end ON sessions(end_time);
CREATE INDEX IF NOT EXISTS idx_activities_session ON activities(session_id, position);
CREATE INDEX IF NOT EXISTS idx_activities_agent_type ON activities(agent_type);
CREATE INDEX IF NOT EXISTS idx_file_operations_task ON file_operations(task_id);
"""

_SESSION_FIELDS = ("start_time", "end_time", "working_directory", "metadata")


def _ts(value: datetime | None) -> str | None:
    return format_utc(value) if value is not None else None


def _json(value: Any) -> str | None:
    return json.dumps(value) if value else None


class MonitorDB:
    """SQLite-backed session/activity store.

    All writes go through one re-entrant lock, so concurrent updates to the
    same session or activity are applied one at a time. Writes made inside
    ``batch()`` are committed together when the block exits.
    """

    def __init__(self, config: Config) -> None:
        self.db_path = config.resolved_db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._batch_depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call init_db() first.")
        return self._conn

    def init_db(self) -> None:
        """Create database and tables."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are managed by _writing() and batch()
            self._conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(SCHEMA_SQL)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open database at {self.db_path}: {e}") from e
        logger.info("Database initialized at %s", self.db_path)

    def close(self) -> None:
        if self._conn:
            self.flush()
            self._conn.close()
            self._conn = None

    # --- Write scoping ---

    @contextmanager
    def _writing(self) -> Iterator[sqlite3.Connection]:
        """Run one write operation atomically under the write lock.

        A failing operation is rolled back to its savepoint, so it never
        leaves half its rows behind. Outside a batch the write is committed
        immediately.
        """
        with self._lock:
            conn = self.conn
            try:
                conn.execute("SAVEPOINT write_op")
            except sqlite3.Error as e:
                raise StorageError(f"Database write failed: {e}") from e
            try:
                yield conn
            except BaseException as exc:
                conn.execute("ROLLBACK TO write_op")
                conn.execute("RELEASE write_op")
                if isinstance(exc, sqlite3.Error):
                    raise StorageError(f"Database write failed: {exc}") from exc
                raise
            try:
                conn.execute("RELEASE write_op")
            except sqlite3.Error as e:
                raise StorageError(f"Database write failed: {e}") from e

    @contextmanager
    def batch(self) -> Iterator["MonitorDB"]:
        """Group writes into one transaction.

        Everything written in the block is committed on exit, including when
        the block raises.
        """
        with self._lock:
            if self._batch_depth == 0:
                try:
                    self.conn.execute("BEGIN")
                except sqlite3.Error as e:
                    raise StorageError(f"Cannot start batch: {e}") from e
            self._batch_depth += 1
            try:
                yield self
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0:
                    self.flush()

    def flush(self) -> None:
        """Commit all pending writes."""
        with self._lock:
            if self._conn is None or not self._conn.in_transaction:
                return
            try:
                self._conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Commit failed: {e}") from e

    # --- Session operations ---

    def save_session(self, session: Session) -> None:
        """Insert or replace a session and its activities (upsert by session_id)."""
        with self._writing() as conn:
            conn.execute(
                """INSERT INTO sessions
                   (session_id, start_time, end_time, duration, working_directory,
                    total_tasks, completed_tasks, metadata, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                   ON CONFLICT(session_id) DO UPDATE SET
                     start_time = excluded.start_time,
                     end_time = excluded.end_time,
                     duration = excluded.duration,
                     working_directory = excluded.working_directory,
                     total_tasks = excluded.total_tasks,
                     completed_tasks = excluded.completed_tasks,
                     metadata = excluded.metadata,
                     updated_at = excluded.updated_at""",
                (
                    session.session_id,
                    _ts(session.start_time),
                    _ts(session.end_time),
                    session.duration,
                    session.working_directory,
                    session.total_tasks,
                    session.completed_tasks,
                    _json(session.metadata),
                ),
            )
            conn.execute("DELETE FROM activities WHERE session_id = ?", (session.session_id,))
            for position, activity in enumerate(session.agents):
                self._insert_activity(conn, activity, session.session_id, position)

    def update_session(self, session: Session) -> Session:
        """Merge the fields set on ``session`` into the stored row.

        Activities present on ``session`` are upserted, except those already
        terminal in storage, which keep their stored state. Stored activities
        not mentioned are kept. Counters are recomputed from storage.
        """
        with self._writing() as conn:
            current = self.get_session(session.session_id)
            if current is None:
                raise NotFoundError(f"Unknown session: {session.session_id}")
            changes = {
                k: getattr(session, k) for k in _SESSION_FIELDS if k in session.model_fields_set
            }
            merged = current.model_copy(update=changes)
            merged = Session.model_validate(merged.model_dump())
            conn.execute(
                """UPDATE sessions SET start_time = ?, end_time = ?, duration = ?,
                   working_directory = ?, metadata = ?, updated_at = datetime('now')
                   WHERE session_id = ?""",
                (
                    _ts(merged.start_time),
                    _ts(merged.end_time),
                    merged.duration,
                    merged.working_directory,
                    _json(merged.metadata),
                    merged.session_id,
                ),
            )
            if "agents" in session.model_fields_set:
                stored = {a.task_id: a for a in current.agents}
                for activity in session.agents:
                    previous = stored.get(activity.task_id)
                    if previous is not None and previous.status.is_terminal:
                        logger.debug("Keeping terminal activity %s", activity.task_id)
                        continue
                    self._upsert_activity(conn, activity, session.session_id)
            self._recount(conn, session.session_id)
        return self.get_session(session.session_id)  # type: ignore[return-value]

    def get_session(self, session_id: str) -> Session | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def get_sessions(self, filters: SessionFilter | None = None) -> list[Session]:
        """Sessions whose start time falls in the (inclusive) range.

        With ``agent_types`` or ``statuses``, only sessions holding at least
        one matching activity are returned. No match is an empty list.
        """
        filters = filters or SessionFilter()
        clauses: list[str] = []
        params: list[str] = []
        if filters.start is not None:
            clauses.append("s.start_time >= ?")
            params.append(format_utc(filters.start))
        if filters.end is not None:
            clauses.append("s.start_time <= ?")
            params.append(format_utc(filters.end))

        activity_clauses: list[str] = []
        if filters.agent_types:
            types = sorted(filters.agent_types)
            activity_clauses.append(f"a.agent_type IN ({','.join('?' * len(types))})")
            params.extend(types)
        if filters.statuses:
            statuses = sorted(TaskStatus(s).value for s in filters.statuses)
            activity_clauses.append(f"a.status IN ({','.join('?' * len(statuses))})")
            params.extend(statuses)
        if activity_clauses:
            clauses.append(
                "EXISTS (SELECT 1 FROM activities a WHERE a.session_id = s.session_id AND "
                + " AND ".join(activity_clauses) + ")"
            )

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT s.* FROM sessions s {where} ORDER BY s.start_time, s.session_id",
            params,
        ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def count_sessions(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS cnt FROM sessions").fetchone()
        return row["cnt"] if row else 0

    def clean_old_data(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete ended sessions whose end time is older than the retention window.

        Sessions without an end time are still active and are never removed.
        Returns the number of sessions deleted.
        """
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        with self._writing() as conn:
            cursor = conn.execute(
                "DELETE FROM sessions WHERE end_time IS NOT NULL AND end_time < ?",
                (format_utc(cutoff),),
            )
            removed = cursor.rowcount
        if removed:
            logger.info("Removed %d sessions older than %d days", removed, retention_days)
        return removed

    # --- Activity operations ---

    def save_activity(self, activity: AgentActivity, session_id: str) -> None:
        """Insert or replace one activity of an existing session."""
        with self._writing() as conn:
            if not self._session_exists(conn, session_id):
                raise NotFoundError(f"Unknown session: {session_id}")
            self._upsert_activity(conn, activity, session_id)
            self._recount(conn, session_id)

    def update_activity(
        self,
        activity: AgentActivity | str,
        changes: dict[str, Any] | None = None,
    ) -> AgentActivity:
        """Merge changes into a stored activity and return the result.

        Accepts either an AgentActivity (its explicitly set fields are
        merged) or a task id plus a dict of changes. Activities already in a
        terminal status reject further updates.
        """
        if isinstance(activity, AgentActivity):
            task_id = activity.task_id
            changes = activity.model_dump(exclude_unset=True, exclude={"task_id", "duration"})
        else:
            task_id = activity
            changes = dict(changes or {})
        changes.pop("duration", None)

        with self._writing() as conn:
            row = conn.execute(
                "SELECT * FROM activities WHERE task_id = ?", (task_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Unknown activity: {task_id}")
            current = self._row_to_activity(row)
            if current.status.is_terminal:
                raise ActivityStateError(
                    f"Activity {task_id} is already {current.status.value}"
                )
            merged = AgentActivity.model_validate({**current.model_dump(), **changes})
            self._upsert_activity(conn, merged, row["session_id"])
            self._recount(conn, row["session_id"])
        return merged

    def get_activity(self, task_id: str) -> AgentActivity | None:
        row = self.conn.execute(
            "SELECT * FROM activities WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_activity(row)

    def get_activities(
        self,
        session_id: str | None = None,
        agent_types: set[str] | None = None,
    ) -> list[AgentActivity]:
        clauses: list[str] = []
        params: list[str] = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if agent_types:
            types = sorted(agent_types)
            clauses.append(f"agent_type IN ({','.join('?' * len(types))})")
            params.extend(types)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM activities {where} ORDER BY start_time, session_id, position",
            params,
        ).fetchall()
        return [self._row_to_activity(r) for r in rows]

    # --- Helpers ---

    def _session_exists(self, conn: sqlite3.Connection, session_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        return row is not None

    def _recount(self, conn: sqlite3.Connection, session_id: str) -> None:
        conn.execute(
            """UPDATE sessions SET
                 total_tasks = (SELECT COUNT(*) FROM activities WHERE session_id = ?),
                 completed_tasks = (SELECT COUNT(*) FROM activities WHERE session_id = ? AND success = 1),
                 updated_at = datetime('now')
               WHERE session_id = ?""",
            (session_id, session_id, session_id),
        )

    def _upsert_activity(self, conn: sqlite3.Connection, activity: AgentActivity, session_id: str) -> None:
        row = conn.execute(
            "SELECT position FROM activities WHERE task_id = ?", (activity.task_id,)
        ).fetchone()
        if row is not None:
            position = row["position"]
            conn.execute("DELETE FROM activities WHERE task_id = ?", (activity.task_id,))
        else:
            nxt = conn.execute(
                "SELECT COALESCE(MAX(position) + 1, 0) AS pos FROM activities WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            position = nxt["pos"]
        self._insert_activity(conn, activity, session_id, position)

    def _insert_activity(
        self,
        conn: sqlite3.Connection,
        activity: AgentActivity,
        session_id: str,
        position: int,
    ) -> None:
        conn.execute(
            """INSERT INTO activities
               (task_id, session_id, position, agent_id, agent_type, start_time, end_time,
                duration, status, input_tokens, output_tokens, tools_used, success,
                error_message, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                activity.task_id,
                session_id,
                position,
                activity.agent_id,
                activity.agent_type,
                _ts(activity.start_time),
                _ts(activity.end_time),
                activity.duration,
                activity.status.value,
                activity.input_tokens,
                activity.output_tokens,
                json.dumps(activity.tools_used),
                int(activity.success),
                activity.error_message,
                _json(activity.metadata),
            ),
        )
        for op in activity.files:
            conn.execute(
                "INSERT INTO file_operations (task_id, operation, path, timestamp) VALUES (?, ?, ?, ?)",
                (activity.task_id, op.operation.value, op.path, _ts(op.timestamp)),
            )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        activities = self.conn.execute(
            "SELECT * FROM activities WHERE session_id = ? ORDER BY position",
            (row["session_id"],),
        ).fetchall()
        return Session(
            session_id=row["session_id"],
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row["end_time"]),
            working_directory=row["working_directory"],
            total_tasks=row["total_tasks"],
            completed_tasks=row["completed_tasks"],
            agents=[self._row_to_activity(a) for a in activities],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    def _row_to_activity(self, row: sqlite3.Row) -> AgentActivity:
        ops = self.conn.execute(
            "SELECT operation, path, timestamp FROM file_operations WHERE task_id = ? ORDER BY id",
            (row["task_id"],),
        ).fetchall()
        return AgentActivity(
            agent_id=row["agent_id"],
            agent_type=row["agent_type"],
            task_id=row["task_id"],
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row["end_time"]),
            status=TaskStatus(row["status"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            tools_used=json.loads(row["tools_used"]) if row["tools_used"] else [],
            files=[
                FileOperation(operation=o["operation"], path=o["path"], timestamp=parse_timestamp(o["timestamp"]))
                for o in ops
            ],
            success=bool(row["success"]),
            error_message=row["error_message"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )


def open_db(config: Config) -> MonitorDB:
    """Create and initialize a MonitorDB."""
    db = MonitorDB(config)
    db.init_db()
    return db
