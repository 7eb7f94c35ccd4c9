"""Tests for the Claude log extractor: file reading, cancellation, log dir lookup."""

import threading

import pytest

from agent_monitor.extractors.claude_log_extractor import (
    ClaudeLogExtractor,
    ReadCancelled,
    find_log_dir,
    iter_log_lines,
    parse_log_file,
    project_log_key,
)


class TestParseLogFile:
    def test_malformed_lines_are_no_ops(self, tmp_path, write_jsonl, session_records):
        clean = write_jsonl(tmp_path / "clean" / "sess.jsonl", session_records)
        noisy_records = []
        for i, record in enumerate(session_records):
            noisy_records.append(record)
            noisy_records.append('{"type": "assistant", "message": ' if i % 2 else "not json at all")
        noisy = write_jsonl(tmp_path / "noisy" / "sess.jsonl", noisy_records)

        assert parse_log_file(noisy) == parse_log_file(clean)

    def test_session_id_is_file_stem(self, tmp_path, write_jsonl, session_records):
        path = write_jsonl(tmp_path / "abc-123.jsonl", session_records)
        assert parse_log_file(path).session_id == "abc-123"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.jsonl"
        path.write_text("")
        assert parse_log_file(path) is None


class TestIterLogLines:
    def test_small_chunks_keep_lines_whole(self, tmp_path):
        path = tmp_path / "x.jsonl"
        path.write_text("alpha\nbeta\ngamma")
        assert list(iter_log_lines(path, chunk_size=3)) == ["alpha", "beta", "gamma"]

    def test_cancel_between_chunks(self, tmp_path):
        path = tmp_path / "x.jsonl"
        path.write_text("a\n" * 100)
        cancel = threading.Event()
        lines = iter_log_lines(path, cancel=cancel, chunk_size=4)
        assert next(lines) == "a"
        cancel.set()
        with pytest.raises(ReadCancelled):
            list(lines)

    def test_offset(self, tmp_path):
        path = tmp_path / "x.jsonl"
        path.write_text("first\nsecond\n")
        assert list(iter_log_lines(path, offset=6)) == ["second"]


class TestFindLogDir:
    def test_log_key(self, tmp_path):
        assert project_log_key(tmp_path / "my_project") == str(tmp_path / "my_project").replace(
            "/", "-").replace("_", "-")

    def test_exact_match(self, tmp_path):
        logs = tmp_path / "logs"
        project = tmp_path / "my_project"
        exact = logs / project_log_key(project)
        exact.mkdir(parents=True)
        assert find_log_dir(project, logs) == exact

    def test_suffix_match(self, tmp_path):
        logs = tmp_path / "logs"
        (logs / "-elsewhere-my-project").mkdir(parents=True)
        assert find_log_dir(tmp_path / "my_project", logs) == logs / "-elsewhere-my-project"

    def test_suffix_match_prefers_most_logs(self, tmp_path):
        logs = tmp_path / "logs"
        (logs / "-a-my-project").mkdir(parents=True)
        busy = logs / "-b-my-project"
        busy.mkdir()
        (busy / "one.jsonl").write_text("")
        assert find_log_dir(tmp_path / "my_project", logs) == busy

    def test_no_match(self, tmp_path):
        assert find_log_dir(tmp_path / "nothing", tmp_path / "logs") is None


class TestClaudeLogExtractor:
    def test_extract_sorted_and_since(self, tmp_path, write_jsonl, session_records):
        later = [dict(r, timestamp=r["timestamp"].replace("2026-01-15", "2026-02-01"))
                 for r in session_records]
        write_jsonl(tmp_path / "b.jsonl", session_records)
        write_jsonl(tmp_path / "a.jsonl", later)

        extractor = ClaudeLogExtractor(tmp_path)
        assert [s.session_id for s in extractor.extract()] == ["a", "b"]
        assert [s.session_id for s in extractor.extract(since="2026-01-20T00:00:00Z")] == ["a"]

    def test_missing_dir(self, tmp_path):
        assert ClaudeLogExtractor(tmp_path / "missing").extract() == []

    def test_for_project(self, tmp_path, write_jsonl, session_records):
        project = tmp_path / "proj"
        logs = tmp_path / "logs"
        write_jsonl(logs / project_log_key(project) / "s.jsonl", session_records)
        extractor = ClaudeLogExtractor.for_project(project, logs)
        assert [s.session_id for s in extractor.extract()] == ["s"]
