"""Live tracking of in-progress sessions and agent activities.

The tracker owns the rolling in-memory view (which sessions are open and
which of their activities are still running) and writes every change
through to the injected MonitorDB. Create one per process and pass it to
whatever needs it.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent_monitor.date_utils import utc_now
from agent_monitor.db import MonitorDB
from agent_monitor.errors import NotFoundError
from agent_monitor.models import (
    AgentActivity,
    FileOperation,
    FileOperationType,
    Session,
    TaskStatus,
)

logger = logging.getLogger(__name__)

SESSION_START = "session.start"
SESSION_END = "session.end"
ACTIVITY_START = "activity.start"
ACTIVITY_UPDATE = "activity.update"
ACTIVITY_COMPLETE = "activity.complete"

Subscriber = Callable[[str, Any], None]


@dataclass(frozen=True)
class AgentInfo:
    """Display hints for an agent type. Unknown types get a generic entry."""
    name: str
    description: str = ""
    color: str = "#A0A0A0"
    tools: tuple[str, ...] = ()


AGENT_REGISTRY: dict[str, AgentInfo] = {
    "general-purpose": AgentInfo(
        "General Purpose", "Default delegate for open-ended tasks", "#9B9B9B",
        ("Read", "Write", "Edit", "Bash", "Grep", "Glob"),
    ),
    "ceo": AgentInfo(
        "CEO", "Strategy and decision making", "#FF6B6B",
        ("TodoWrite", "WebSearch", "Read"),
    ),
    "backend-developer": AgentInfo(
        "Backend Developer", "Backend development and security", "#4ECDC4",
        ("Read", "Write", "Edit", "Bash", "MultiEdit"),
    ),
    "frontend-developer": AgentInfo(
        "Frontend Developer", "Frontend development and UI/UX", "#45B7D1",
        ("Read", "Write", "Edit", "WebSearch"),
    ),
    "project-manager": AgentInfo(
        "Project Manager", "Planning and progress coordination", "#FFA07A",
        ("TodoWrite", "Read", "Write"),
    ),
}


def agent_info(agent_type: str) -> AgentInfo:
    info = AGENT_REGISTRY.get(agent_type)
    if info is not None:
        return info
    return AgentInfo(name=agent_type.replace("-", " ").replace("_", " ").title())


@dataclass
class _OpenSession:
    start_time: datetime
    open_tasks: set[str] = field(default_factory=set)


class AgentTracker:
    """Track sessions and activities as they happen."""

    def __init__(self, db: MonitorDB, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock
        self._open: dict[str, _OpenSession] = {}
        self._task_session: dict[str, str] = {}
        self._state_lock = threading.RLock()
        self._id_locks: dict[tuple[str, str], threading.Lock] = {}
        self._subscribers: list[Subscriber] = []

    # --- Subscriptions ---

    def subscribe(self, callback: Subscriber) -> None:
        with self._state_lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._state_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _emit(self, event: str, payload: Any) -> None:
        with self._state_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, event)

    def _lock_for(self, kind: str, ident: str) -> threading.Lock:
        key = (kind, ident)
        with self._state_lock:
            lock = self._id_locks.get(key)
            if lock is None:
                lock = self._id_locks[key] = threading.Lock()
            return lock

    # --- Sessions ---

    def create_session(
        self,
        working_directory: str = "",
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        session = Session(
            session_id=session_id or f"session-{uuid.uuid4().hex[:12]}",
            start_time=self.clock(),
            working_directory=working_directory,
            metadata=metadata,
        )
        with self._lock_for("session", session.session_id):
            self.db.save_session(session)
            with self._state_lock:
                self._open[session.session_id] = _OpenSession(session.start_time)
        logger.debug("Session started: %s", session.session_id)
        self._emit(SESSION_START, session)
        return session

    def end_session(self, session_id: str, reason: str | None = None) -> Session:
        """Close a session, failing any activity still running in it.

        Running activities get ``reason`` (default "session ended") as their
        error message. The session and its failed activities share one end time.
        """
        now = self.clock()
        with self._lock_for("session", session_id):
            stored = self.db.get_session(session_id)
            if stored is None:
                raise NotFoundError(f"Unknown session: {session_id}")
            with self._state_lock:
                state = self._open.pop(session_id, None)
                tracked = state.open_tasks if state else set()
                for task_id in tracked:
                    self._task_session.pop(task_id, None)
            running = {a.task_id for a in stored.agents if not a.status.is_terminal}
            open_tasks = sorted(tracked | running)

            # Lock order: session, then tasks (sorted), then the store
            failed: list[AgentActivity] = []
            with ExitStack() as stack:
                for task_id in open_tasks:
                    stack.enter_context(self._lock_for("task", task_id))
                with self.db.batch():
                    for task_id in open_tasks:
                        activity = self._finish_locked(task_id, now, success=False,
                                                       error_message=reason or "session ended")
                        if activity is not None:
                            failed.append(activity)
                    ended = self.db.update_session(Session(
                        session_id=session_id,
                        start_time=stored.start_time,
                        end_time=max(now, stored.start_time),
                    ))

        for activity in failed:
            self._emit(ACTIVITY_COMPLETE, activity)
        logger.info("Session ended: %s (%d activities failed)", session_id, len(failed))
        self._emit(SESSION_END, ended)
        return ended

    def observe_session(self, session: Session) -> Session:
        """Merge a freshly reconstructed snapshot of a session into the store.

        Activities already terminal in storage keep their stored state. New
        sessions, new activities, completions and the session end are
        published to subscribers.
        """
        with self._lock_for("session", session.session_id):
            stored = self.db.get_session(session.session_id)
            stored_by_id = {a.task_id: a for a in stored.agents} if stored else {}

            merged_agents: list[AgentActivity] = []
            started: list[AgentActivity] = []
            completed: list[AgentActivity] = []
            for activity in session.agents:
                previous = stored_by_id.get(activity.task_id)
                if previous is not None and previous.status.is_terminal:
                    merged_agents.append(previous)
                    continue
                merged_agents.append(activity)
                if previous is None:
                    started.append(activity)
                if activity.status.is_terminal:
                    completed.append(activity)

            merged = session.model_copy(update={"agents": merged_agents})
            merged.recount()
            self.db.save_session(merged)

            with self._state_lock:
                was_open = session.session_id in self._open
                if merged.end_time is None:
                    state = self._open.setdefault(session.session_id, _OpenSession(merged.start_time))
                    state.open_tasks = {a.task_id for a in merged.agents if not a.status.is_terminal}
                    for task_id in state.open_tasks:
                        self._task_session[task_id] = session.session_id
                else:
                    state = self._open.pop(session.session_id, None)
                    for task_id in (state.open_tasks if state else ()):
                        self._task_session.pop(task_id, None)

        if stored is None:
            self._emit(SESSION_START, merged)
        for activity in started:
            self._emit(ACTIVITY_START, activity)
        for activity in completed:
            self._emit(ACTIVITY_COMPLETE, activity)
        if merged.end_time is not None and (was_open or stored is None or stored.end_time is None):
            self._emit(SESSION_END, merged)
        return merged

    def force_terminate(self, reason: str = "interrupted") -> list[Session]:
        """End every open session, failing its running activities with ``reason``."""
        with self._state_lock:
            session_ids = sorted(self._open)
        ended = [self.end_session(sid, reason=reason) for sid in session_ids]
        if ended:
            logger.warning("Force-terminated %d sessions (%s)", len(ended), reason)
        return ended

    def shutdown(self) -> None:
        self.force_terminate("shutdown")
        self.db.flush()

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "active_sessions": len(self._open),
                "active_activities": len(self._task_session),
                "sessions": {
                    sid: sorted(state.open_tasks) for sid, state in sorted(self._open.items())
                },
            }

    # --- Activities ---

    def start_activity(
        self,
        session_id: str,
        agent_type: str,
        task_description: str | None = None,
        agent_id: str | None = None,
        task_id: str | None = None,
        model: str | None = None,
    ) -> AgentActivity:
        with self._state_lock:
            state = self._open.get(session_id)
        if state is None:
            raise NotFoundError(f"No open session: {session_id}")

        task_id = task_id or f"task-{uuid.uuid4().hex[:12]}"
        activity = AgentActivity(
            agent_id=agent_id or agent_type,
            agent_type=agent_type,
            task_id=task_id,
            start_time=self.clock(),
            status=TaskStatus.IN_PROGRESS,
            metadata={"model": model, "task_description": task_description or task_id},
        )
        with self._lock_for("session", session_id):
            with self._state_lock:
                if self._open.get(session_id) is not state:
                    raise NotFoundError(f"No open session: {session_id}")
            self.db.save_activity(activity, session_id)
            with self._state_lock:
                state.open_tasks.add(task_id)
                self._task_session[task_id] = session_id
        logger.debug("Activity started: %s (%s) in %s", task_id, agent_type, session_id)
        self._emit(ACTIVITY_START, activity)
        return activity

    def update_activity(self, task_id: str, **changes: Any) -> AgentActivity:
        """Merge ``changes`` into a running activity."""
        with self._lock_for("task", task_id):
            activity = self.db.update_activity(task_id, changes)
        self._emit(ACTIVITY_UPDATE, activity)
        return activity

    def record_file_operation(
        self,
        task_id: str,
        operation: FileOperationType | str,
        path: str,
    ) -> FileOperation:
        op = FileOperation(operation=FileOperationType(operation), path=path, timestamp=self.clock())
        with self._lock_for("task", task_id):
            current = self.db.get_activity(task_id)
            if current is None:
                raise NotFoundError(f"Unknown activity: {task_id}")
            activity = self.db.update_activity(task_id, {"files": [*current.files, op]})
        self._emit(ACTIVITY_UPDATE, activity)
        return op

    def complete_activity(
        self,
        task_id: str,
        success: bool = True,
        error_message: str | None = None,
    ) -> AgentActivity:
        activity = self._finish(task_id, self.clock(), success=success, error_message=error_message)
        with self._state_lock:
            session_id = self._task_session.pop(task_id, None)
            state = self._open.get(session_id) if session_id else None
            if state is not None:
                state.open_tasks.discard(task_id)
        self._emit(ACTIVITY_COMPLETE, activity)
        return activity

    def _finish(
        self,
        task_id: str,
        when: datetime,
        success: bool,
        error_message: str | None,
    ) -> AgentActivity:
        with self._lock_for("task", task_id):
            current = self.db.get_activity(task_id)
            if current is None:
                raise NotFoundError(f"Unknown activity: {task_id}")
            return self._close_activity(current, when, success, error_message)

    def _finish_locked(
        self,
        task_id: str,
        when: datetime,
        success: bool,
        error_message: str | None,
    ) -> AgentActivity | None:
        """Close a task whose lock the caller holds. Already-terminal tasks are skipped."""
        current = self.db.get_activity(task_id)
        if current is None or current.status.is_terminal:
            return None
        return self._close_activity(current, when, success, error_message)

    def _close_activity(
        self,
        current: AgentActivity,
        when: datetime,
        success: bool,
        error_message: str | None,
    ) -> AgentActivity:
        return self.db.update_activity(current.task_id, {
            "end_time": max(when, current.start_time),
            "status": TaskStatus.COMPLETED if success else TaskStatus.FAILED,
            "success": success,
            "error_message": None if success else (error_message or "failed"),
        })
