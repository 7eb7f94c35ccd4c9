#!/usr/bin/env python3
"""Agent Monitor MCP server: query agent sessions and repository health."""

import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP

from agent_monitor.analysis.performance import PerformanceAnalyzer
from agent_monitor.analysis.project_analyzer import ProjectAnalyzer, RepositoryClient
from agent_monitor.config import Config, GitHubConfig, load_config
from agent_monitor.date_utils import parse_timestamp
from agent_monitor.db import MonitorDB
from agent_monitor.errors import AnalysisError, MonitorError, truncate_message
from agent_monitor.github_client import GitHubClient
from agent_monitor.ingest import ingest_logs
from agent_monitor.models import SessionFilter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[GitHubConfig], RepositoryClient]


def _error(e: Exception) -> str:
    if isinstance(e, AnalysisError):
        return json.dumps({"error": e.summary()})
    return json.dumps({"error": truncate_message(str(e))})


def _filter(since: Optional[str], until: Optional[str], agent_type: Optional[str] = None) -> SessionFilter:
    if since and parse_timestamp(since) is None:
        raise ValueError(f"Invalid timestamp: {since}")
    if until and parse_timestamp(until) is None:
        raise ValueError(f"Invalid timestamp: {until}")
    return SessionFilter(
        start=parse_timestamp(since),
        end=parse_timestamp(until),
        agent_types={agent_type} if agent_type else None,
    )


def create_server(
    db: MonitorDB,
    config: Config,
    client_factory: ClientFactory = GitHubClient,
) -> FastMCP:
    """Build the MCP server around an initialized store."""
    mcp = FastMCP("agent-monitor")

    @mcp.tool()
    def list_sessions(
        since: Optional[str] = None,
        until: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> str:
        """List stored sessions. Dates as ISO strings; agent_type keeps sessions using that agent."""
        try:
            sessions = db.get_sessions(_filter(since, until, agent_type))
            return json.dumps([
                {
                    "session_id": s.session_id,
                    "start_time": s.start_time.isoformat(),
                    "end_time": s.end_time.isoformat() if s.end_time else None,
                    "working_directory": s.working_directory,
                    "total_tasks": s.total_tasks,
                    "completed_tasks": s.completed_tasks,
                    "agent_types": sorted({a.agent_type for a in s.agents}),
                }
                for s in sessions
            ])
        except (ValueError, MonitorError) as e:
            return _error(e)

    @mcp.tool()
    def agent_performance(since: Optional[str] = None, until: Optional[str] = None) -> str:
        """Per-agent success rate, duration, efficiency and token usage, plus trends and recommendations."""
        try:
            report = PerformanceAnalyzer().analyze(db.get_sessions(_filter(since, until)))
            return json.dumps(report.model_dump(mode="json"))
        except (ValueError, MonitorError) as e:
            return _error(e)

    @mcp.tool()
    def session_summary(since: Optional[str] = None, until: Optional[str] = None) -> str:
        """Session counts, average duration, success rate, most active agent and tool usage."""
        try:
            summary = PerformanceAnalyzer().session_summary(db.get_sessions(_filter(since, until)))
            return json.dumps(summary.model_dump(mode="json"))
        except (ValueError, MonitorError) as e:
            return _error(e)

    @mcp.tool()
    def compare_agents(
        agent_types: list[str],
        since: Optional[str] = None,
        until: Optional[str] = None,
    ) -> str:
        """Compare agent types side by side, ranked by efficiency, success rate and completed tasks."""
        try:
            filters = _filter(since, until).model_copy(update={"agent_types": set(agent_types)})
            comparison = PerformanceAnalyzer().compare_agents(agent_types, db.get_sessions(filters))
            return json.dumps(comparison.model_dump(mode="json"))
        except (ValueError, MonitorError) as e:
            return _error(e)

    @mcp.tool()
    def ingest_log_dir(log_dir: Optional[str] = None) -> str:
        """Ingest Claude session logs from a directory (defaults to the configured logs dir)."""
        try:
            path = Path(log_dir).expanduser() if log_dir else config.resolved_claude_logs_dir
            if not path.is_dir():
                raise ValueError(f"Not a directory: {path}")
            return json.dumps(ingest_logs(path, db).to_dict())
        except (ValueError, MonitorError) as e:
            return _error(e)

    @mcp.tool()
    def analyze_repository(owner: str, repo: str, days: Optional[int] = None) -> str:
        """Analyze a GitHub repository: metrics, weekly trends, health score and recommendations."""
        try:
            github = config.github.model_copy(update={"owner": owner, "repo": repo})
            analysis_config = config.analysis
            if days is not None:
                analysis_config = analysis_config.model_copy(update={"time_range_days": days})
            client = client_factory(github)
            try:
                analysis = ProjectAnalyzer(
                    client, analysis_config, retry_attempts=github.retry_attempts,
                ).analyze()
            finally:
                close = getattr(client, "close", None)
                if close is not None:
                    close()
            return json.dumps(analysis.model_dump(mode="json"))
        except (ValueError, MonitorError) as e:
            return _error(e)

    return mcp


def main() -> None:
    # Redirect all logging to stderr so stdout stays clean for MCP stdio transport
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    db = MonitorDB(config)
    db.init_db()
    try:
        create_server(db, config).run()
    finally:
        db.close()


if __name__ == "__main__":
    main()
