"""CLI entry point for agent monitor."""

import argparse
import json
import logging
import sys
import traceback
from pathlib import Path

from agent_monitor.analysis.performance import PerformanceAnalyzer
from agent_monitor.analysis.project_analyzer import ProjectAnalyzer
from agent_monitor.config import Config, load_config
from agent_monitor.date_utils import parse_timestamp
from agent_monitor.db import MonitorDB
from agent_monitor.errors import MAX_TRACE_CHARS, AnalysisError, MonitorError, truncate_message
from agent_monitor.github_client import GitHubClient
from agent_monitor.ingest import ingest_logs, ingest_project
from agent_monitor.models import SessionFilter
from agent_monitor.tracker import AgentTracker
from agent_monitor.watcher import LogWatcher

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent Monitor")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-c", "--config", type=Path, default=None, help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command")

    # ingest command
    ingest_parser = sub.add_parser("ingest", help="Ingest Claude session logs")
    ingest_parser.add_argument(
        "log_dir", nargs="?",
        help="Directory of *.jsonl logs. Defaults to the configured Claude logs dir.",
    )
    ingest_parser.add_argument(
        "--project", type=Path, default=None,
        help="Ingest the logs Claude recorded for this working directory",
    )
    ingest_parser.add_argument("--since", default=None, help="Only sessions starting at/after this ISO time")
    ingest_parser.add_argument("--recursive", action="store_true", help="Scan subdirectories too")

    # report command
    report_parser = sub.add_parser("report", help="Agent performance report (JSON)")
    report_parser.add_argument("--since", default=None, help="Earliest session start (ISO)")
    report_parser.add_argument("--until", default=None, help="Latest session start (ISO)")
    report_parser.add_argument(
        "--agent-type", action="append", default=None,
        help="Only sessions with this agent type (repeatable)",
    )
    report_parser.add_argument("--window", type=int, default=10, help="Sessions per trend window")

    # compare command
    compare_parser = sub.add_parser("compare", help="Rank agent types against each other (JSON)")
    compare_parser.add_argument("agent_types", nargs="+", help="Agent types to compare")
    compare_parser.add_argument("--since", default=None, help="Earliest session start (ISO)")
    compare_parser.add_argument("--until", default=None, help="Latest session start (ISO)")

    # clean command
    clean_parser = sub.add_parser("clean", help="Delete ended sessions past retention")
    clean_parser.add_argument("--days", type=int, default=None, help="Retention in days (default from config)")

    # watch command
    watch_parser = sub.add_parser("watch", help="Follow a log directory and print events")
    watch_parser.add_argument("log_dir", nargs="?", help="Directory of *.jsonl logs")
    watch_parser.add_argument("--interval", type=float, default=None, help="Seconds between idle-source checks")
    watch_parser.add_argument(
        "--idle-timeout", type=float, default=300.0,
        help="Seconds without writes before a session counts as finished",
    )

    # analyze-repo command
    repo_parser = sub.add_parser("analyze-repo", help="Analyze a GitHub repository (JSON)")
    repo_parser.add_argument("repository", nargs="?", help="owner/repo (defaults to config)")
    repo_parser.add_argument("--days", type=int, default=None, help="Time range in days (1-365)")

    return parser


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _report_error(e: Exception, verbose: bool) -> None:
    if isinstance(e, AnalysisError):
        payload: dict[str, object] = {"error": e.summary()}
    else:
        payload = {"error": {"error": type(e).__name__, "message": truncate_message(str(e))}}
    if verbose:
        payload["trace"] = truncate_message(traceback.format_exc(), MAX_TRACE_CHARS)
    print(json.dumps(payload, indent=2), file=sys.stderr)


def _log_dir(arg: str | None, config: Config) -> Path:
    return Path(arg).expanduser() if arg else config.resolved_claude_logs_dir


def run_analyze_repo(args: argparse.Namespace, config: Config) -> None:
    github = config.github
    if args.repository:
        owner, _, repo = args.repository.partition("/")
        github = github.model_copy(update={"owner": owner, "repo": repo})
    analysis_config = config.analysis
    if args.days is not None:
        analysis_config = analysis_config.model_copy(update={"time_range_days": args.days})

    with GitHubClient(github) as client:
        analyzer = ProjectAnalyzer(client, analysis_config, retry_attempts=github.retry_attempts)
        analysis = analyzer.analyze()
        if client.should_wait():
            logger.warning("GitHub rate limit nearly exhausted: %s", client.rate_limit)
    _print_json(analysis.model_dump(mode="json"))


def run_watch(args: argparse.Namespace, config: Config, db: MonitorDB) -> None:
    tracker = AgentTracker(db)
    watcher = LogWatcher(
        _log_dir(args.log_dir, config),
        tracker,
        interval=args.interval or config.watch_interval,
        idle_timeout=args.idle_timeout,
    )

    def show(event: str, payload: object) -> None:
        ident = getattr(payload, "task_id", None) or getattr(payload, "session_id", "")
        print(json.dumps({"event": event, "id": ident}), flush=True)

    watcher.subscribe(show)
    thread = watcher.start()
    try:
        while thread.is_alive():
            thread.join(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping watcher")
    finally:
        watcher.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config)
        if args.command == "analyze-repo":
            run_analyze_repo(args, config)
            return 0

        db = MonitorDB(config)
        db.init_db()
        try:
            if args.command == "ingest":
                if args.project:
                    result = ingest_project(args.project, db, config, since=args.since)
                else:
                    result = ingest_logs(_log_dir(args.log_dir, config), db,
                                         since=args.since, recursive=args.recursive)
                _print_json(result.to_dict())

            elif args.command == "report":
                filters = SessionFilter(
                    start=parse_timestamp(args.since),
                    end=parse_timestamp(args.until),
                    agent_types=set(args.agent_type) if args.agent_type else None,
                )
                report = PerformanceAnalyzer().analyze(db.get_sessions(filters), window=args.window)
                _print_json(report.model_dump(mode="json"))

            elif args.command == "compare":
                filters = SessionFilter(
                    start=parse_timestamp(args.since),
                    end=parse_timestamp(args.until),
                    agent_types=set(args.agent_types),
                )
                comparison = PerformanceAnalyzer().compare_agents(args.agent_types, db.get_sessions(filters))
                _print_json(comparison.model_dump(mode="json"))

            elif args.command == "clean":
                days = args.days if args.days is not None else config.retention_days
                removed = db.clean_old_data(days)
                _print_json({"removed_sessions": removed, "retention_days": days})

            elif args.command == "watch":
                run_watch(args, config, db)
        finally:
            db.close()
    except MonitorError as e:
        _report_error(e, args.verbose)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
