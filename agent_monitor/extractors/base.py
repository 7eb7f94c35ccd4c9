"""Common shape of session sources."""

import abc
from pathlib import Path

from agent_monitor.date_utils import parse_timestamp
from agent_monitor.models import Session


class BaseExtractor(abc.ABC):
    """A directory of logs that can be turned into sessions."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir

    @abc.abstractmethod
    def extract(self, since: str | None = None) -> list[Session]:
        """Reconstruct the sessions found under ``log_dir``.

        Args:
            since: ISO 8601 timestamp; sessions starting earlier are skipped.
        """
        ...

    @property
    def source_name(self) -> str:
        return self.log_dir.name

    @staticmethod
    def started_since(sessions: list[Session], since: str | None) -> list[Session]:
        cutoff = parse_timestamp(since) if since else None
        if cutoff is None:
            return sessions
        return [s for s in sessions if s.start_time >= cutoff]
