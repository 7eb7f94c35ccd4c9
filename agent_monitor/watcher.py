"""Watch a Claude log directory and feed changed sessions to the tracker."""

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from watchfiles import Change, watch

from agent_monitor.extractors.claude_log_extractor import ReadCancelled, parse_log_file
from agent_monitor.models import Session
from agent_monitor.tracker import AgentTracker, Subscriber

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 300.0


def _is_log_source(change: Change, path: str) -> bool:
    return path.endswith(".jsonl")


class LogWatcher:
    """Re-read each ``*.jsonl`` source whenever it changes.

    Changes come from watchfiles; ``interval`` is the tick on which idle
    sources are checked. A source untouched for ``idle_timeout`` seconds is
    treated as closed: it is read one last time as a finished session.
    Cancelling (``stop()``) is observed between read chunks; activities
    still running at that point are failed with "interrupted".
    """

    def __init__(
        self,
        log_dir: Path,
        tracker: AgentTracker,
        interval: float = 2.0,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        recursive: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.log_dir = log_dir
        self.tracker = tracker
        self.interval = interval
        self.idle_timeout = idle_timeout
        self.recursive = recursive
        self.clock = clock
        self._cancel = threading.Event()
        self._seen: dict[Path, tuple[int, int]] = {}
        self._closed: set[Path] = set()
        self._thread: threading.Thread | None = None

    def subscribe(self, callback: Subscriber) -> None:
        self.tracker.subscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self.tracker.unsubscribe(callback)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def sources(self) -> list[Path]:
        if not self.log_dir.exists():
            return []
        pattern = "**/*.jsonl" if self.recursive else "*.jsonl"
        return sorted(self.log_dir.glob(pattern))

    def poll_once(self) -> list[Session]:
        """Process every new, grown or newly idle source once."""
        now = self.clock()
        observed: list[Session] = []
        for path in self.sources():
            try:
                st = path.stat()
            except OSError as e:
                logger.warning("Cannot stat %s: %s", path, e)
                continue
            key = (st.st_size, st.st_mtime_ns)
            idle = now - st.st_mtime >= self.idle_timeout
            unchanged = self._seen.get(path) == key
            if unchanged and (path in self._closed or not idle):
                continue
            session = self._process(path, key, idle)
            if session is not None:
                observed.append(session)
        if observed:
            logger.info("Processed %d changed log sources", len(observed))
        return observed

    def handle_changes(self, changes: set[tuple[Change, str]]) -> list[Session]:
        """Re-read sources reported as added or modified; forget deleted ones."""
        observed: list[Session] = []
        for change, raw in sorted(changes, key=lambda c: c[1]):
            path = Path(raw)
            if change == Change.deleted:
                self._seen.pop(path, None)
                self._closed.discard(path)
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            session = self._process(path, (st.st_size, st.st_mtime_ns), idle=False)
            if session is not None:
                observed.append(session)
        return observed

    def close_idle(self) -> list[Session]:
        """Read once more, as finished, every known source idle past the timeout."""
        now = self.clock()
        observed: list[Session] = []
        for path in sorted(self._seen):
            if path in self._closed:
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            if now - st.st_mtime < self.idle_timeout:
                continue
            session = self._process(path, (st.st_size, st.st_mtime_ns), idle=True)
            if session is not None:
                observed.append(session)
        return observed

    def _process(self, path: Path, key: tuple[int, int], idle: bool) -> Session | None:
        try:
            session = parse_log_file(path, active=not idle, cancel=self._cancel)
        except OSError:
            # Source vanished or became unreadable; retried on its next change
            return None
        self._seen[path] = key
        if idle:
            self._closed.add(path)
        else:
            self._closed.discard(path)
        if session is None:
            return None
        return self.tracker.observe_session(session)

    def run(self) -> None:
        """Watch until stopped, then fail whatever is still running.

        Existing sources are read once up front. After that, change batches
        from watchfiles trigger re-reads, and every timeout tick checks for
        idle sources.
        """
        try:
            if not self.log_dir.is_dir():
                logger.warning("Log dir %s does not exist, nothing to watch", self.log_dir)
                return
            logger.info("Watching %s", self.log_dir)
            self.poll_once()
            for changes in watch(
                self.log_dir,
                watch_filter=_is_log_source,
                stop_event=self._cancel,
                rust_timeout=max(int(self.interval * 1000), 1),
                yield_on_timeout=True,
                recursive=self.recursive,
                raise_interrupt=False,
            ):
                if changes:
                    self.handle_changes(changes)
                self.close_idle()
        except ReadCancelled as e:
            logger.info("Read of %s cancelled", e)
        finally:
            self.tracker.force_terminate("interrupted")

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._cancel.clear()
        self._thread = threading.Thread(target=self.run, name="log-watcher", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self._cancel.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
