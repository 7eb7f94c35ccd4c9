"""Rebuild sessions and delegated agent activities from decoded log events."""

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from agent_monitor.errors import truncate_message
from agent_monitor.extractors.log_decoder import LogEvent, TaskInvocation, ToolResult
from agent_monitor.models import (
    AgentActivity,
    FileOperation,
    FileOperationType,
    Session,
    TaskStatus,
)

logger = logging.getLogger(__name__)

FILE_TOOL_OPERATIONS: dict[str, FileOperationType] = {
    "Read": FileOperationType.READ,
    "Write": FileOperationType.WRITE,
    "Edit": FileOperationType.EDIT,
    "MultiEdit": FileOperationType.EDIT,
    "NotebookEdit": FileOperationType.EDIT,
}


@dataclass
class _PendingTask:
    invocation: TaskInvocation
    started: datetime
    tools: list[str] = field(default_factory=list)
    files: list[FileOperation] = field(default_factory=list)
    result: ToolResult | None = None
    finished: datetime | None = None


def build_session(
    events: Iterable[LogEvent],
    source_id: str,
    *,
    active: bool = False,
    default_cwd: str | None = None,
) -> Session | None:
    """Build one Session from the ordered events of a single log source.

    Each Task invocation becomes one AgentActivity, in event order. Tool
    calls made on the sidechain while a task is open are credited to the
    most recently started open task. A paired tool_result flagged as an
    error marks the activity failed.

    Returns None when no event carries a timestamp.
    """
    first_ts: datetime | None = None
    last_ts: datetime | None = None
    system_cwd: str | None = None
    any_cwd: str | None = None
    pending: list[_PendingTask] = []
    by_tool_use_id: dict[str, _PendingTask] = {}
    open_tasks: list[_PendingTask] = []

    for event in events:
        ts = event.timestamp or last_ts
        if event.timestamp is not None:
            if first_ts is None:
                first_ts = event.timestamp
            last_ts = event.timestamp
        if event.cwd:
            if event.event_type == "system" and system_cwd is None:
                system_cwd = event.cwd
            if any_cwd is None:
                any_cwd = event.cwd
        if ts is None:
            continue

        if event.is_sidechain and open_tasks:
            owner = open_tasks[-1]
            for call in event.tool_calls:
                owner.tools.append(call.name)
                op = _file_operation(call.name, call.input, ts)
                if op is not None:
                    owner.files.append(op)

        for invocation in event.tasks:
            task = _PendingTask(invocation=invocation, started=ts)
            pending.append(task)
            open_tasks.append(task)
            if invocation.tool_use_id:
                by_tool_use_id[invocation.tool_use_id] = task

        for result in event.results:
            task = by_tool_use_id.get(result.tool_use_id)
            if task is None or task.result is not None:
                continue
            task.result = result
            task.finished = ts
            open_tasks.remove(task)

    if first_ts is None:
        logger.debug("No timestamped events in %s", source_id)
        return None

    activities = [
        _to_activity(task, source_id, index, active)
        for index, task in enumerate(pending, 1)
    ]
    session = Session(
        session_id=source_id,
        start_time=first_ts,
        end_time=None if active else max(first_ts, last_ts),
        working_directory=system_cwd or any_cwd or default_cwd or os.getcwd(),
        agents=activities,
    )
    session.recount()
    return session


def _to_activity(task: _PendingTask, source_id: str, index: int, active: bool) -> AgentActivity:
    inv = task.invocation
    task_id = inv.tool_use_id or f"{source_id}-task-{index}"

    if task.result is not None and task.result.is_error:
        status = TaskStatus.FAILED
        success = False
        error_message = truncate_message(task.result.content) or "Task failed"
    elif task.result is None and active:
        status = TaskStatus.IN_PROGRESS
        success = False
        error_message = None
    else:
        status = TaskStatus.COMPLETED
        success = True
        error_message = None

    end_time = task.finished if task.finished and task.finished >= task.started else None
    return AgentActivity(
        agent_id=inv.subagent_type,
        agent_type=inv.subagent_type,
        task_id=task_id,
        start_time=task.started,
        end_time=end_time,
        status=status,
        input_tokens=inv.input_tokens,
        output_tokens=inv.output_tokens,
        tools_used=sorted(set(task.tools)),
        files=task.files,
        success=success,
        error_message=error_message,
        metadata={
            "model": inv.model,
            "task_description": inv.description or task_id,
        },
    )


def _file_operation(tool_name: str, tool_input: dict, ts: datetime) -> FileOperation | None:
    op_type = FILE_TOOL_OPERATIONS.get(tool_name)
    if op_type is None:
        return None
    path = tool_input.get("file_path") or tool_input.get("notebook_path")
    if not path:
        return None
    return FileOperation(operation=op_type, path=path, timestamp=ts)
