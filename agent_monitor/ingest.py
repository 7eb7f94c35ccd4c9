"""Ingestion orchestrator: extract sessions from Claude logs and store them."""

import logging
from pathlib import Path

from agent_monitor.config import Config
from agent_monitor.db import MonitorDB
from agent_monitor.extractors.claude_log_extractor import ClaudeLogExtractor

logger = logging.getLogger(__name__)


class IngestionResult:
    """Summary of an ingestion run."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.sessions_extracted = 0
        self.sessions_new = 0
        self.sessions_updated = 0
        self.activities = 0
        self.failed_activities = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "sessions_extracted": self.sessions_extracted,
            "sessions_new": self.sessions_new,
            "sessions_updated": self.sessions_updated,
            "activities": self.activities,
            "failed_activities": self.failed_activities,
        }

    def __repr__(self) -> str:
        parts = [
            f"IngestionResult({self.source}: ",
            f"{self.sessions_new} new / {self.sessions_extracted} extracted",
        ]
        if self.sessions_updated:
            parts.append(f", updated={self.sessions_updated}")
        parts.append(f", activities={self.activities}")
        if self.failed_activities:
            parts.append(f", failed={self.failed_activities}")
        parts.append(")")
        return "".join(parts)


def ingest_logs(
    log_dir: Path,
    db: MonitorDB,
    since: str | None = None,
    recursive: bool = False,
) -> IngestionResult:
    """Reconstruct every session in ``log_dir`` and upsert it into the store.

    Re-ingesting the same logs replaces the stored sessions, so running it
    twice is harmless.
    """
    extractor = ClaudeLogExtractor(log_dir, recursive=recursive)
    result = IngestionResult(extractor.source_name)

    logger.info("Starting ingestion from %s", log_dir)
    sessions = extractor.extract(since=since)
    result.sessions_extracted = len(sessions)

    with db.batch():
        for session in sessions:
            if db.get_session(session.session_id) is None:
                result.sessions_new += 1
            else:
                result.sessions_updated += 1
            db.save_session(session)
            result.activities += session.total_tasks
            result.failed_activities += sum(1 for a in session.agents if a.status == "failed")

    logger.info("Ingestion complete: %s", result)
    return result


def ingest_project(project_path: Path, db: MonitorDB, config: Config, since: str | None = None) -> IngestionResult:
    """Ingest the Claude logs recorded for a working directory."""
    project_path = project_path.resolve()
    extractor = ClaudeLogExtractor.for_project(project_path, config.resolved_claude_logs_dir)
    if extractor is None:
        return IngestionResult(project_path.name)
    return ingest_logs(extractor.log_dir, db, since=since)
