"""Tests for agent performance metrics, summaries and trends."""

from datetime import timedelta

import pytest

from agent_monitor.analysis.performance import PerformanceAnalyzer
from agent_monitor.models import TaskStatus

from conftest import BASE_TIME


@pytest.fixture()
def analyzer():
    return PerformanceAnalyzer()


class TestAgentPerformance:
    def test_per_agent_metrics(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", "backend-developer", seconds=60),
            make_activity("a2", "backend-developer", seconds=120, status=TaskStatus.FAILED),
            make_activity("a3", "ceo", seconds=30),
        ])]
        perf = {p.agent_type: p for p in analyzer.agent_performance(sessions)}
        backend = perf["backend-developer"]
        assert backend.tasks == 2
        assert backend.successful_tasks == 1
        assert backend.success_rate == 0.5
        assert backend.average_duration == 90.0
        assert backend.token_usage.total == 300
        assert 0 <= backend.efficiency <= 100

    def test_sorted_by_efficiency_then_type(self, analyzer, make_session, make_activity):
        # Identical stats give identical efficiency; ties fall back to agent type
        sessions = [make_session("s1", [
            make_activity("a1", "zeta"),
            make_activity("a2", "alpha"),
        ])]
        result = analyzer.agent_performance(sessions)
        assert [p.agent_type for p in result] == ["alpha", "zeta"]
        assert result[0].efficiency == result[1].efficiency

    def test_faster_agent_scores_higher(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", "slow", seconds=600),
            make_activity("a2", "fast", seconds=30),
        ])]
        result = analyzer.agent_performance(sessions)
        assert [p.agent_type for p in result] == ["fast", "slow"]

    def test_no_durations_no_crash(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", "ceo", seconds=None, status=TaskStatus.IN_PROGRESS,
                          input_tokens=0, output_tokens=0),
        ], seconds=None)]
        perf = analyzer.agent_performance(sessions)[0]
        assert perf.success_rate == 0.0
        assert perf.average_duration == 0.0
        assert 0 <= perf.efficiency <= 100

    def test_empty(self, analyzer):
        assert analyzer.agent_performance([]) == []


class TestSessionSummary:
    def test_average_excludes_unended(self, analyzer, make_session, make_activity):
        sessions = [
            make_session("s1", seconds=100),
            make_session("s2", seconds=300),
            make_session("s3", seconds=None),
        ]
        summary = analyzer.session_summary(sessions)
        assert summary.total_sessions == 3
        assert summary.average_session_duration == 200.0

    def test_most_active_tie_breaks_lexicographically(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", "project-manager"),
            make_activity("a2", "ceo"),
            make_activity("a3", "project-manager"),
            make_activity("a4", "ceo"),
        ])]
        assert analyzer.session_summary(sessions).most_active_agent == "ceo"

    def test_empty_input(self, analyzer):
        summary = analyzer.session_summary([])
        assert summary.total_sessions == 0
        assert summary.success_rate == 0.0
        assert summary.most_active_agent is None
        assert summary.average_session_duration == 0.0

    def test_tool_usage(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", tools=["Read", "Edit"], seconds=10),
            make_activity("a2", tools=["Read"], seconds=30, status=TaskStatus.FAILED),
        ])]
        usage = {t.tool_name: t for t in analyzer.session_summary(sessions).tool_usage}
        assert usage["Read"].usage_count == 2
        assert usage["Read"].success_rate == 0.5
        assert usage["Read"].average_duration == 20.0
        assert usage["Edit"].usage_count == 1


class TestDetectTrends:
    def _sessions(self, make_session, make_activity, counts):
        sessions = []
        for i, n in enumerate(counts):
            start = BASE_TIME + timedelta(hours=i)
            acts = [make_activity(f"s{i}-t{j}", start=start) for j in range(n)]
            sessions.append(make_session(f"s{i:02d}", acts, start=start))
        return sessions

    def test_task_volume_increasing(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, [1] * 10 + [3] * 10)
        trends = {t.metric: t for t in analyzer.detect_trends(sessions, window=10)}
        assert trends["task_volume"].trend == "increasing"
        assert trends["task_volume"].recent_value == 3.0
        assert trends["task_volume"].earlier_value == 1.0
        assert trends["success_rate"].trend == "stable"

    def test_single_session_has_no_trends(self, analyzer, make_session):
        assert analyzer.detect_trends([make_session("s1")]) == []

    def test_input_order_irrelevant(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, [2, 1, 4, 3, 5, 1])
        forward = analyzer.detect_trends(sessions, window=2)
        backward = analyzer.detect_trends(list(reversed(sessions)), window=2)
        assert forward == backward


class TestAnalyze:
    def test_deterministic(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", "ceo", seconds=40),
            make_activity("a2", "backend-developer", seconds=80, status=TaskStatus.FAILED),
        ])]
        first = analyzer.analyze(sessions).model_dump_json()
        assert all(analyzer.analyze(sessions).model_dump_json() == first for _ in range(3))

    def test_no_activity_recommendation(self, analyzer):
        report = analyzer.analyze([])
        assert report.recommendations == ["No agent activity recorded yet."]

    def test_low_success_flagged(self, analyzer, make_session, make_activity):
        sessions = [make_session("s1", [
            make_activity("a1", "ceo", status=TaskStatus.FAILED),
            make_activity("a2", "ceo", status=TaskStatus.FAILED),
        ])]
        recs = analyzer.analyze(sessions).recommendations
        assert any("'ceo'" in r for r in recs)


class TestDetectAnomalies:
    def _sessions(self, make_session, make_activity, n, status=TaskStatus.COMPLETED, hours=None, seconds=None):
        sessions = []
        for i in range(n):
            start = BASE_TIME + timedelta(days=i)
            if hours is not None:
                start = start.replace(hour=hours[i])
            sessions.append(make_session(
                f"s{i:02d}", [make_activity(f"t{i}", start=start, status=status)],
                start=start, seconds=seconds[i] if seconds else 600,
            ))
        return sessions

    def test_too_few_sessions(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, 4, status=TaskStatus.FAILED)
        assert analyzer.detect_anomalies(sessions) == []

    def test_healthy_sessions(self, analyzer, make_session, make_activity):
        assert analyzer.detect_anomalies(self._sessions(make_session, make_activity, 5)) == []

    def test_duration_outlier(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, 10, seconds=[600] * 9 + [6000])
        anomalies = analyzer.detect_anomalies(sessions)
        assert [a.kind for a in anomalies] == ["duration_outlier"]
        assert anomalies[0].affected_sessions == ["s09"]
        assert anomalies[0].severity == "medium"
        assert anomalies[0].confidence == pytest.approx(0.1)

    def test_collapsed_success_rate(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, 5, status=TaskStatus.FAILED)
        anomalies = analyzer.detect_anomalies(sessions)
        assert [a.kind for a in anomalies] == ["low_success_rate"]
        assert anomalies[0].severity == "critical"
        assert len(anomalies[0].affected_sessions) == 5

    def test_off_hours_activity(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, 5, hours=[2, 10, 2, 11, 12])
        anomalies = analyzer.detect_anomalies(sessions)
        assert [a.kind for a in anomalies] == ["off_hours"]
        assert anomalies[0].affected_sessions == ["s00", "s02"]
        assert "02:00" in anomalies[0].description

    def test_included_in_report(self, analyzer, make_session, make_activity):
        sessions = self._sessions(make_session, make_activity, 5, status=TaskStatus.FAILED)
        assert analyzer.analyze(sessions).anomalies[0].kind == "low_success_rate"


class TestCompareAgents:
    @pytest.fixture()
    def sessions(self, make_session, make_activity):
        return [make_session("s1", [
            make_activity("a1", "ceo", seconds=40),
            make_activity("b1", "backend-developer"),
            make_activity("b2", "backend-developer", status=TaskStatus.FAILED),
            make_activity("f1", "frontend-developer"),
        ])]

    def test_rankings(self, analyzer, sessions):
        comparison = analyzer.compare_agents(["ceo", "backend-developer", "ghost"], sessions)
        assert set(comparison.agents) == {"ceo", "backend-developer"}
        rankings = {r.metric: [e.agent_type for e in r.ranking] for r in comparison.rankings}
        assert rankings["success_rate"] == ["ceo", "backend-developer"]
        assert rankings["tasks_completed"] == ["backend-developer", "ceo"]
        assert rankings["efficiency"][0] == "ceo"
        assert comparison.top_performer == "ceo"

    def test_no_matching_agents(self, analyzer, sessions):
        comparison = analyzer.compare_agents(["ghost"], sessions)
        assert comparison.agents == {}
        assert comparison.top_performer is None
        assert all(r.ranking == [] for r in comparison.rankings)
