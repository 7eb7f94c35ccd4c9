"""Decode single lines of Claude Code session logs (JSONL) into typed events."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent_monitor.date_utils import parse_timestamp
from agent_monitor.errors import DecodeError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("system", "user", "assistant")
DELEGATION_TOOL = "Task"
DEFAULT_AGENT_TYPE = "general-purpose"


@dataclass
class ToolCall:
    """A non-delegation tool_use block (Read, Edit, Bash, ...)."""
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskInvocation:
    """A delegation ("Task") tool_use block inside an assistant message."""
    tool_use_id: str
    subagent_type: str
    description: str | None
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ToolResult:
    """A tool_result block inside a user message."""
    tool_use_id: str
    is_error: bool
    content: str


@dataclass
class LogEvent:
    """One decoded log line."""
    event_type: str
    timestamp: datetime | None
    cwd: str | None = None
    session_id: str | None = None
    is_sidechain: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)
    tasks: list[TaskInvocation] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


def decode_line(line: str, source: str = "<stream>", line_num: int = 0) -> LogEvent | None:
    """Decode one JSONL line. Returns None when the line should be skipped.

    Malformed lines never raise: they are logged and skipped so one bad
    line cannot abort the rest of the file.
    """
    line = line.strip()
    if not line:
        return None
    try:
        return _decode(line, source, line_num)
    except DecodeError as e:
        logger.warning("Skipping malformed log line %s:%d (%s)", source, line_num, e)
        return None


def _decode(line: str, source: str, line_num: int) -> LogEvent | None:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid JSON: {e.msg}", source, line_num) from e
    if not isinstance(data, dict):
        raise DecodeError("log line is not a JSON object", source, line_num)

    event_type = data.get("type")
    if event_type not in EVENT_TYPES:
        logger.debug("Ignoring %r event at %s:%d", event_type, source, line_num)
        return None

    event = LogEvent(
        event_type=event_type,
        timestamp=parse_timestamp(data.get("timestamp")),
        cwd=data.get("cwd"),
        session_id=data.get("sessionId"),
        is_sidechain=bool(data.get("isSidechain")),
        raw=data,
    )

    message = data.get("message")
    if not isinstance(message, dict):
        return event

    content = message.get("content")
    if not isinstance(content, list):
        return event

    if event_type == "assistant":
        _decode_assistant(event, message, content)
    elif event_type == "user":
        _decode_user(event, content)
    return event


def _decode_assistant(event: LogEvent, message: dict, content: list) -> None:
    """Collect tool calls and delegations. A message's usage is billed once,
    to its first delegation; parallel delegations after it carry zero tokens.
    """
    usage = message.get("usage") or {}
    model = message.get("model")
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        name = block.get("name")
        if not name:
            continue
        tool_input = block.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}
        if name != DELEGATION_TOOL:
            event.tool_calls.append(ToolCall(name=name, input=tool_input))
            continue
        billed = {} if event.tasks else usage
        event.tasks.append(TaskInvocation(
            tool_use_id=block.get("id", ""),
            subagent_type=tool_input.get("subagent_type") or DEFAULT_AGENT_TYPE,
            description=tool_input.get("description") or None,
            model=model,
            input_tokens=_as_int(billed.get("input_tokens")),
            output_tokens=_as_int(billed.get("output_tokens")),
        ))


def _decode_user(event: LogEvent, content: list) -> None:
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        event.results.append(ToolResult(
            tool_use_id=block.get("tool_use_id", ""),
            is_error=bool(block.get("is_error")),
            content=_result_text(block.get("content")),
        ))


def _result_text(content: Any) -> str:
    """Flatten tool_result content (string or list of text blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            b.get("text", "") for b in content
            if isinstance(b, dict) and b.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0
