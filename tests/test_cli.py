"""Tests for the command line entry point."""

import json

import pytest
import yaml

from agent_monitor.cli import main


@pytest.fixture()
def config_file(tmp_path, monkeypatch):
    for name in ("GITHUB_TOKEN", "GITHUB_OWNER", "GITHUB_REPO", "GITHUB_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "db_path": str(tmp_path / "cli.db"),
        "claude_logs_dir": str(tmp_path / "claude_logs"),
    }))
    return path


class TestCommands:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_ingest_then_report(self, tmp_path, config_file, write_jsonl, session_records, capsys):
        write_jsonl(tmp_path / "logs" / "sess-1.jsonl", session_records)

        assert main(["-c", str(config_file), "ingest", str(tmp_path / "logs")]) == 0
        ingested = json.loads(capsys.readouterr().out)
        assert ingested["sessions_new"] == 1

        assert main(["-c", str(config_file), "report"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["summary"]["total_sessions"] == 1
        assert report["summary"]["total_tasks"] == 2

    def test_clean_removes_ended_sessions(self, tmp_path, config_file, write_jsonl, session_records, capsys):
        write_jsonl(tmp_path / "logs" / "sess-1.jsonl", session_records)
        main(["-c", str(config_file), "ingest", str(tmp_path / "logs")])
        capsys.readouterr()

        assert main(["-c", str(config_file), "clean", "--days", "0"]) == 0
        assert json.loads(capsys.readouterr().out) == {"removed_sessions": 1, "retention_days": 0}

    def test_compare(self, tmp_path, config_file, write_jsonl, session_records, capsys):
        write_jsonl(tmp_path / "logs" / "sess-1.jsonl", session_records)
        main(["-c", str(config_file), "ingest", str(tmp_path / "logs")])
        capsys.readouterr()

        assert main(["-c", str(config_file), "compare", "backend-developer", "ghost"]) == 0
        comparison = json.loads(capsys.readouterr().out)
        assert list(comparison["agents"]) == ["backend-developer"]
        assert comparison["top_performer"] == "backend-developer"


class TestErrors:
    def test_analyze_repo_without_repository(self, config_file, capsys):
        assert main(["-c", str(config_file), "analyze-repo"]) == 1
        assert "\"ConfigError\"" in capsys.readouterr().err
