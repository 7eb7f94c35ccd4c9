"""Shared test fixtures for agent monitor tests."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from agent_monitor.config import Config
from agent_monitor.db import MonitorDB
from agent_monitor.models import AgentActivity, Session, TaskStatus

BASE_TIME = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def tmp_config(tmp_path):
    return Config(
        db_path=str(tmp_path / "test.db"),
        claude_logs_dir=str(tmp_path / "claude_logs"),
    )


@pytest.fixture()
def tmp_db(tmp_config):
    """Create a MonitorDB backed by a temp file."""
    db = MonitorDB(tmp_config)
    db.init_db()
    yield db
    db.close()


@pytest.fixture()
def write_jsonl():
    """Write records (dicts, or raw strings written verbatim) as a JSONL file."""
    def _write(path, records):
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        path.write_text("\n".join(lines) + "\n")
        return path
    return _write


@pytest.fixture()
def session_records():
    """One session: a successful backend task with sidechain tool use, then a failing default task."""
    return [
        {"type": "system", "timestamp": "2026-01-15T10:00:00Z", "cwd": "/work/app"},
        {
            "type": "user",
            "timestamp": "2026-01-15T10:00:05Z",
            "message": {"role": "user", "content": "Add a login endpoint"},
        },
        {
            "type": "assistant",
            "timestamp": "2026-01-15T10:00:10Z",
            "message": {
                "model": "claude-sonnet-4",
                "usage": {"input_tokens": 1200, "output_tokens": 300},
                "content": [
                    {"type": "text", "text": "Delegating."},
                    {
                        "type": "tool_use",
                        "id": "toolu_A",
                        "name": "Task",
                        "input": {
                            "subagent_type": "backend-developer",
                            "description": "Add login endpoint",
                            "prompt": "...",
                        },
                    },
                ],
            },
        },
        {
            "type": "assistant",
            "timestamp": "2026-01-15T10:00:20Z",
            "isSidechain": True,
            "message": {
                "content": [
                    {"type": "tool_use", "id": "tu_1", "name": "Read",
                     "input": {"file_path": "/work/app/auth.py"}},
                    {"type": "tool_use", "id": "tu_2", "name": "Edit",
                     "input": {"file_path": "/work/app/auth.py", "old_string": "a", "new_string": "b"}},
                ],
            },
        },
        {
            "type": "user",
            "timestamp": "2026-01-15T10:01:10Z",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "toolu_A", "content": "done"}]},
        },
        {
            "type": "assistant",
            "timestamp": "2026-01-15T10:01:20Z",
            "message": {
                "content": [{"type": "tool_use", "id": "toolu_B", "name": "Task", "input": {}}],
            },
        },
        {
            "type": "user",
            "timestamp": "2026-01-15T10:02:00Z",
            "message": {
                "content": [{
                    "type": "tool_result", "tool_use_id": "toolu_B", "is_error": True,
                    "content": [{"type": "text", "text": "Agent crashed"}],
                }],
            },
        },
    ]


@pytest.fixture()
def make_activity():
    def _make(
        task_id,
        agent_type="backend-developer",
        start=BASE_TIME,
        seconds=60,
        status=TaskStatus.COMPLETED,
        input_tokens=100,
        output_tokens=50,
        tools=(),
    ):
        return AgentActivity(
            agent_id=agent_type,
            agent_type=agent_type,
            task_id=task_id,
            start_time=start,
            end_time=start + timedelta(seconds=seconds) if seconds is not None else None,
            status=status,
            success=status == TaskStatus.COMPLETED,
            error_message="boom" if status == TaskStatus.FAILED else None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            tools_used=list(tools),
        )
    return _make


@pytest.fixture()
def make_session():
    def _make(session_id, activities=(), start=BASE_TIME, seconds=600):
        session = Session(
            session_id=session_id,
            start_time=start,
            end_time=start + timedelta(seconds=seconds) if seconds is not None else None,
            working_directory="/work/app",
            agents=list(activities),
        )
        session.recount()
        return session
    return _make


@pytest.fixture()
def populated_db(tmp_db, make_session, make_activity):
    """Three sessions a day apart; the last one is still active."""
    day = timedelta(days=1)
    tmp_db.save_session(make_session("s1", [
        make_activity("t1", "backend-developer"),
        make_activity("t2", "frontend-developer", status=TaskStatus.FAILED),
    ]))
    tmp_db.save_session(make_session("s2", [
        make_activity("t3", "backend-developer", start=BASE_TIME + day),
    ], start=BASE_TIME + day))
    tmp_db.save_session(make_session("s3", [
        make_activity("t4", "project-manager", start=BASE_TIME + 2 * day,
                      seconds=None, status=TaskStatus.IN_PROGRESS),
    ], start=BASE_TIME + 2 * day, seconds=None))
    return tmp_db
