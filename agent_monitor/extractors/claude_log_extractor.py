"""Extract sessions from Claude Code conversation logs (JSONL)."""

import logging
import threading
from collections.abc import Iterator
from pathlib import Path

from agent_monitor.extractors.base import BaseExtractor
from agent_monitor.extractors.log_decoder import LogEvent, decode_line
from agent_monitor.extractors.session_builder import build_session
from agent_monitor.models import Session

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
_LOG_KEY_TABLE = str.maketrans({"/": "-", "_": "-"})


class ReadCancelled(Exception):
    """Raised when a cooperative cancel is observed between read chunks."""


def project_log_key(project_path: Path) -> str:
    """Name of the directory Claude Code files a working directory's logs under.

    Separators and underscores both become dashes: ``/srv/my_app`` is
    stored as ``-srv-my-app``.
    """
    return str(project_path).translate(_LOG_KEY_TABLE)


def find_log_dir(project_path: Path, claude_logs_dir: Path) -> Path | None:
    """Locate the log directory for ``project_path`` under ``claude_logs_dir``.

    The exact key wins. Otherwise any directory whose key ends with the
    project's own name is a candidate, which covers symlinked or moved
    checkouts; among several, the one holding the most logs is used.
    """
    exact = claude_logs_dir / project_log_key(project_path)
    if exact.is_dir():
        return exact
    if not claude_logs_dir.is_dir():
        return None

    suffix = "-" + project_path.name.translate(_LOG_KEY_TABLE)
    candidates = sorted(
        (d for d in claude_logs_dir.iterdir() if d.is_dir() and d.name.endswith(suffix)),
        key=lambda d: (-sum(1 for _ in d.glob("*.jsonl")), d.name),
    )
    if not candidates:
        return None
    logger.info(
        "Using log dir %s for %s (%d candidates by name)",
        candidates[0].name, project_path, len(candidates),
    )
    return candidates[0]


def iter_log_lines(
    path: Path,
    cancel: threading.Event | None = None,
    offset: int = 0,
    chunk_size: int = READ_CHUNK_SIZE,
) -> Iterator[str]:
    """Yield complete lines from a log file, reading in fixed-size chunks.

    ``cancel`` is checked between chunks. A trailing partial line (no
    newline yet, e.g. a file still being appended to) is still yielded at
    EOF; the decoder drops it if it is not valid JSON.
    """
    buffer = b""
    with path.open("rb") as fh:
        fh.seek(offset)
        while True:
            if cancel is not None and cancel.is_set():
                raise ReadCancelled(str(path))
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            buffer += chunk
            *lines, buffer = buffer.split(b"\n")
            for raw in lines:
                yield raw.decode("utf-8", errors="replace")
    if buffer:
        yield buffer.decode("utf-8", errors="replace")


def read_log_events(path: Path, cancel: threading.Event | None = None) -> list[LogEvent]:
    """Decode every well-formed line of a JSONL log, skipping malformed ones."""
    events: list[LogEvent] = []
    try:
        for line_num, line in enumerate(iter_log_lines(path, cancel), 1):
            event = decode_line(line, source=path.name, line_num=line_num)
            if event is not None:
                events.append(event)
    except OSError:
        logger.exception("Error reading JSONL file %s", path)
        raise
    return events


def parse_log_file(
    path: Path,
    active: bool = False,
    cancel: threading.Event | None = None,
) -> Session | None:
    """Reconstruct one session from a JSONL file; the file stem is the session id."""
    events = read_log_events(path, cancel)
    if not events:
        return None
    return build_session(events, path.stem, active=active)


class ClaudeLogExtractor(BaseExtractor):
    """Extract agent sessions from a directory of Claude Code JSONL logs."""

    def __init__(self, log_dir: Path, recursive: bool = False) -> None:
        super().__init__(log_dir)
        self.recursive = recursive

    @classmethod
    def for_project(cls, project_path: Path, claude_logs_dir: Path) -> "ClaudeLogExtractor | None":
        """Extractor for the log directory Claude Code uses for ``project_path``."""
        log_dir = find_log_dir(project_path, claude_logs_dir)
        if log_dir is None:
            logger.warning("No Claude log dir found for %s", project_path)
            return None
        return cls(log_dir)

    def log_files(self) -> list[Path]:
        if not self.log_dir.exists():
            return []
        pattern = "**/*.jsonl" if self.recursive else "*.jsonl"
        return sorted(self.log_dir.glob(pattern))

    def extract(self, since: str | None = None) -> list[Session]:
        sessions: list[Session] = []
        for jsonl_path in self.log_files():
            session = parse_log_file(jsonl_path)
            if session is not None:
                sessions.append(session)
        sessions = self.started_since(sessions, since)

        if not sessions:
            logger.warning("No sessions found in %s", self.log_dir)

        logger.info(
            "Extracted %d sessions (%d agent activities) from %s",
            len(sessions), sum(s.total_tasks for s in sessions), self.source_name,
        )
        return sessions
