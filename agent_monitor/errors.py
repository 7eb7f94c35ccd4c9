"""Exception taxonomy for agent monitor."""

from datetime import datetime

MAX_MESSAGE_CHARS = 500
MAX_TRACE_CHARS = 1000


def truncate_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> str:
    """Cap a message before it is shown to a user."""
    if len(text) <= limit:
        return text
    return text[:limit] + "... [truncated]"


class MonitorError(Exception):
    """Base class for all agent monitor errors."""


class DecodeError(MonitorError):
    """A single log line could not be decoded. Recovered locally."""

    def __init__(self, message: str, source: str | None = None, line_num: int | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.line_num = line_num


class NotFoundError(MonitorError):
    """Unknown session or activity id."""


class StorageError(MonitorError):
    """The persistence medium failed; the operation was aborted."""


class ActivityStateError(MonitorError):
    """Update attempted on an activity that already reached a terminal status."""


class ConfigError(MonitorError):
    """A required configuration value is missing or unusable."""


class FetchError(MonitorError):
    """HTTP or network failure talking to the repository API.

    ``transient`` marks failures worth retrying (transport errors, 5xx).
    """

    def __init__(self, message: str, status: int | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.transient = transient


class RateLimitError(FetchError):
    """The API refused the request because the rate limit is exhausted."""

    def __init__(self, message: str, status: int | None = None, reset: datetime | None = None) -> None:
        super().__init__(message, status=status, transient=False)
        self.reset = reset


class AnalysisError(MonitorError):
    """A repository analysis aborted. ``stage`` names the failing step."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {truncate_message(str(cause))}")

    def summary(self) -> dict[str, object]:
        """Short, user-facing description of the failure."""
        info: dict[str, object] = {
            "stage": self.stage,
            "error": type(self.cause).__name__,
            "message": truncate_message(str(self.cause)),
        }
        if isinstance(self.cause, FetchError) and self.cause.status is not None:
            info["status"] = self.cause.status
        return info
