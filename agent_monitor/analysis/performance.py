"""Per-agent performance metrics and session-level summaries.

Everything here is a pure function of the sessions passed in: no clock,
no randomness, so the same input always yields the same report.
"""

import logging
import statistics
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass

from agent_monitor.analysis.trends import (
    ACTIVITY_LABELS,
    RESOLUTION_LABELS,
    classify_change,
    classify_duration_change,
    mean,
    relative_change,
)
from agent_monitor.models import (
    AgentActivity,
    AgentComparison,
    AgentPerformance,
    AgentRanking,
    Anomaly,
    PerformanceReport,
    PerformanceTrend,
    RankingEntry,
    Session,
    SessionSummary,
    TokenUsage,
    ToolUsage,
)

logger = logging.getLogger(__name__)

LOW_SUCCESS_RATE = 0.7
SLOW_AGENT_FACTOR = 2.0

MIN_ANOMALY_SESSIONS = 5
OFF_HOURS_SHARE = 0.1
ANOMALOUS_SUCCESS_FACTOR = 0.7
CRITICAL_SUCCESS_FACTOR = 0.5


def _off_hours(hour: int) -> bool:
    return hour < 6 or hour > 22


@dataclass(frozen=True)
class PerformanceBaseline:
    """Reference points for the efficiency score."""
    success_rate: float = 0.85
    success_points: float = 40.0
    speed_points: float = 30.0
    token_points: float = 20.0
    activity_points: float = 10.0
    activity_saturation: int = 10  # tasks needed for the full activity bonus
    anomaly_threshold: float = 2.0  # standard deviations


def _activities(sessions: Sequence[Session]) -> list[AgentActivity]:
    return [a for s in sessions for a in s.agents]


def _ratio(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


class PerformanceAnalyzer:
    """Aggregate agent activity into performance metrics and trends."""

    def __init__(self, baseline: PerformanceBaseline | None = None) -> None:
        self.baseline = baseline or PerformanceBaseline()

    def analyze(self, sessions: Sequence[Session], window: int = 10) -> PerformanceReport:
        agents = self.agent_performance(sessions)
        summary = self.session_summary(sessions)
        trends = self.detect_trends(sessions, window=window)
        return PerformanceReport(
            summary=summary,
            agents=agents,
            trends=trends,
            anomalies=self.detect_anomalies(sessions),
            recommendations=self.recommendations(summary, agents, trends),
        )

    # --- Per-agent ---

    def agent_performance(self, sessions: Sequence[Session]) -> list[AgentPerformance]:
        """Metrics per agent type, best efficiency first (ties by agent type)."""
        by_type: dict[str, list[AgentActivity]] = defaultdict(list)
        for activity in _activities(sessions):
            by_type[activity.agent_type].append(activity)
        if not by_type:
            return []

        durations = {
            t: mean([a.duration for a in acts if a.duration is not None])
            for t, acts in by_type.items()
        }
        tokens_per_task = {
            t: mean([a.total_tokens for a in acts]) for t, acts in by_type.items()
        }
        peer_duration = mean([d for d in durations.values() if d > 0])
        peer_tokens = mean([t for t in tokens_per_task.values() if t > 0])

        results: list[AgentPerformance] = []
        for agent_type in sorted(by_type):
            acts = by_type[agent_type]
            successes = sum(1 for a in acts if a.success)
            success_rate = _ratio(successes, len(acts))
            efficiency = self.efficiency_score(
                success_rate=success_rate,
                avg_duration=durations[agent_type],
                peer_duration=peer_duration,
                tokens_per_task=tokens_per_task[agent_type],
                peer_tokens=peer_tokens,
                task_count=len(acts),
            )
            input_tokens = sum(a.input_tokens for a in acts)
            output_tokens = sum(a.output_tokens for a in acts)
            results.append(AgentPerformance(
                agent_type=agent_type,
                tasks=len(acts),
                successful_tasks=successes,
                success_rate=round(success_rate, 4),
                average_duration=round(durations[agent_type], 2),
                efficiency=efficiency,
                token_usage=TokenUsage(
                    input=input_tokens, output=output_tokens, total=input_tokens + output_tokens,
                ),
            ))

        results.sort(key=lambda p: (-p.efficiency, p.agent_type))
        return results

    def efficiency_score(
        self,
        success_rate: float,
        avg_duration: float,
        peer_duration: float,
        tokens_per_task: float,
        peer_tokens: float,
        task_count: int,
    ) -> float:
        """Efficiency in [0, 100].

        Success rate against the baseline (40), speed against the peer mean
        duration (30), token economy against the peer mean tokens per task
        (20), and an activity bonus (10). Missing duration or token data
        scores half of that component.
        """
        b = self.baseline
        success = min(success_rate / b.success_rate * b.success_points, b.success_points)

        if avg_duration > 0 and peer_duration > 0:
            speed = min(peer_duration / avg_duration * b.speed_points / 2, b.speed_points)
        else:
            speed = b.speed_points / 2

        if tokens_per_task > 0 and peer_tokens > 0:
            tokens = min(peer_tokens / tokens_per_task * b.token_points / 2, b.token_points)
        else:
            tokens = b.token_points / 2

        activity = min(task_count / b.activity_saturation, 1.0) * b.activity_points
        return round(max(0.0, min(100.0, success + speed + tokens + activity)), 2)

    # --- Session level ---

    def session_summary(self, sessions: Sequence[Session]) -> SessionSummary:
        activities = _activities(sessions)
        ended = [s.duration for s in sessions if s.end_time is not None and s.duration is not None]
        successes = sum(1 for a in activities if a.success)

        counts: dict[str, int] = defaultdict(int)
        for a in activities:
            counts[a.agent_type] += 1
        most_active = (
            min(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0] if counts else None
        )

        return SessionSummary(
            total_sessions=len(sessions),
            average_session_duration=round(mean(ended), 2),
            total_tasks=len(activities),
            success_rate=round(_ratio(successes, len(activities)), 4),
            most_active_agent=most_active,
            tool_usage=self.tool_usage(sessions),
        )

    def tool_usage(self, sessions: Sequence[Session]) -> list[ToolUsage]:
        """Usage count, success rate and mean duration of the activities using each tool."""
        uses: dict[str, list[AgentActivity]] = defaultdict(list)
        for activity in _activities(sessions):
            for tool in activity.tools_used:
                uses[tool].append(activity)
        stats = [
            ToolUsage(
                tool_name=tool,
                usage_count=len(acts),
                success_rate=round(_ratio(sum(1 for a in acts if a.success), len(acts)), 4),
                average_duration=round(mean([a.duration for a in acts if a.duration is not None]), 2),
            )
            for tool, acts in uses.items()
        ]
        stats.sort(key=lambda t: (-t.usage_count, t.tool_name))
        return stats

    # --- Trends ---

    def detect_trends(self, sessions: Sequence[Session], window: int = 10) -> list[PerformanceTrend]:
        """Compare the most recent sessions with the earlier ones.

        With at least ``2 * window`` sessions the recent window is the last
        ``window`` sessions; otherwise the sessions are split in half.
        """
        ordered = sorted(sessions, key=lambda s: (s.start_time, s.session_id))
        if len(ordered) < 2:
            return []
        if len(ordered) >= 2 * window:
            earlier, recent = ordered[:-window], ordered[-window:]
        else:
            half = len(ordered) // 2
            earlier, recent = ordered[:half], ordered[half:]

        trends: list[PerformanceTrend] = []

        recent_volume = mean([s.total_tasks for s in recent])
        earlier_volume = mean([s.total_tasks for s in earlier])
        trends.append(_trend(
            "task_volume", recent_volume, earlier_volume,
            classify_change(recent_volume, earlier_volume, ACTIVITY_LABELS),
        ))

        recent_acts, earlier_acts = _activities(recent), _activities(earlier)
        recent_rate = _ratio(sum(1 for a in recent_acts if a.success), len(recent_acts))
        earlier_rate = _ratio(sum(1 for a in earlier_acts if a.success), len(earlier_acts))
        trends.append(_trend(
            "success_rate", recent_rate, earlier_rate,
            classify_change(recent_rate, earlier_rate, RESOLUTION_LABELS),
        ))

        recent_durations = [a.duration for a in recent_acts if a.duration is not None]
        earlier_durations = [a.duration for a in earlier_acts if a.duration is not None]
        recent_dur, earlier_dur = mean(recent_durations), mean(earlier_durations)
        if recent_durations and earlier_durations:
            duration_label = classify_duration_change(recent_dur, earlier_dur, RESOLUTION_LABELS)
        else:
            duration_label = "stable"
        trends.append(_trend("average_duration", recent_dur, earlier_dur, duration_label))
        return trends

    # --- Comparison ---

    def compare_agents(self, agent_types: Sequence[str], sessions: Sequence[Session]) -> AgentComparison:
        """Side-by-side metrics and per-metric rankings for the named agent types.

        Types with no activity in ``sessions`` are left out.
        """
        wanted = set(agent_types)
        compared = [p for p in self.agent_performance(sessions) if p.agent_type in wanted]
        metrics = {
            "efficiency": lambda p: p.efficiency,
            "success_rate": lambda p: p.success_rate,
            "tasks_completed": lambda p: float(p.successful_tasks),
        }
        rankings = []
        for metric, value in metrics.items():
            ordered = sorted(compared, key=lambda p: (-value(p), p.agent_type))
            rankings.append(AgentRanking(
                metric=metric,
                ranking=[RankingEntry(agent_type=p.agent_type, value=value(p)) for p in ordered],
            ))
        top = rankings[0].ranking[0].agent_type if compared else None
        return AgentComparison(
            agents={p.agent_type: p for p in compared},
            rankings=rankings,
            top_performer=top,
        )

    # --- Anomalies ---

    def detect_anomalies(self, sessions: Sequence[Session]) -> list[Anomaly]:
        """Duration outliers, a collapsed success rate and off-hours activity.

        Needs at least ``MIN_ANOMALY_SESSIONS`` sessions; fewer yield nothing.
        Hours are taken in UTC.
        """
        if len(sessions) < MIN_ANOMALY_SESSIONS:
            return []
        ordered = sorted(sessions, key=lambda s: (s.start_time, s.session_id))
        anomalies: list[Anomaly] = []
        for check in (self._duration_outliers, self._low_success, self._off_hours_activity):
            anomaly = check(ordered)
            if anomaly is not None:
                anomalies.append(anomaly)
        return anomalies

    def _duration_outliers(self, sessions: Sequence[Session]) -> Anomaly | None:
        timed = [s for s in sessions if s.duration]
        if not timed:
            return None
        durations = [s.duration for s in timed]
        center = statistics.fmean(durations)
        spread = statistics.pstdev(durations)
        limit = self.baseline.anomaly_threshold * spread
        outliers = [s for s in timed if abs(s.duration - center) > limit]
        if not outliers:
            return None
        return Anomaly(
            kind="duration_outlier",
            severity="high" if len(outliers) > len(timed) * 0.1 else "medium",
            description=f"{len(outliers)} sessions ran unusually long or short.",
            affected_sessions=[s.session_id for s in outliers],
            confidence=round(min(len(outliers) / len(timed), 1.0), 4),
        )

    def _low_success(self, sessions: Sequence[Session]) -> Anomaly | None:
        rate = mean([_ratio(s.completed_tasks, s.total_tasks) for s in sessions])
        expected = self.baseline.success_rate
        if rate >= expected * ANOMALOUS_SUCCESS_FACTOR:
            return None
        return Anomaly(
            kind="low_success_rate",
            severity="critical" if rate < expected * CRITICAL_SUCCESS_FACTOR else "high",
            description=f"Average session success rate is {rate:.1%}, far below {expected:.0%}.",
            affected_sessions=[s.session_id for s in sessions],
            confidence=0.9,
        )

    def _off_hours_activity(self, sessions: Sequence[Session]) -> Anomaly | None:
        by_hour: dict[int, list[str]] = defaultdict(list)
        for s in sessions:
            by_hour[s.start_time.hour].append(s.session_id)
        hours = sorted(
            h for h, ids in by_hour.items()
            if _off_hours(h) and len(ids) > len(sessions) * OFF_HOURS_SHARE
        )
        if not hours:
            return None
        return Anomaly(
            kind="off_hours",
            severity="medium",
            description="Unusual activity at " + ", ".join(f"{h:02d}:00" for h in hours) + " UTC.",
            affected_sessions=[sid for h in hours for sid in by_hour[h]],
            confidence=0.7,
        )

    # --- Recommendations ---

    def recommendations(
        self,
        summary: SessionSummary,
        agents: Sequence[AgentPerformance],
        trends: Sequence[PerformanceTrend],
    ) -> list[str]:
        if summary.total_tasks == 0:
            return ["No agent activity recorded yet."]

        recs: list[str] = []
        for perf in sorted(agents, key=lambda p: p.agent_type):
            if perf.success_rate < LOW_SUCCESS_RATE:
                recs.append(
                    f"Agent '{perf.agent_type}' succeeds on only {perf.success_rate:.0%} of tasks; "
                    "review how work is delegated to it."
                )
        durations = [p.average_duration for p in agents if p.average_duration > 0]
        peer = mean(durations)
        for perf in sorted(agents, key=lambda p: p.agent_type):
            if peer > 0 and perf.average_duration > peer * SLOW_AGENT_FACTOR:
                recs.append(
                    f"Agent '{perf.agent_type}' takes {perf.average_duration:.0f}s per task, "
                    "more than twice the peer average; consider splitting its tasks."
                )
        for trend in trends:
            if trend.metric == "success_rate" and trend.trend == "degrading":
                recs.append("Task success rate is falling in recent sessions.")
            if trend.metric == "average_duration" and trend.trend == "degrading":
                recs.append("Tasks are taking longer in recent sessions.")
        return recs or ["Agent performance looks healthy."]


def _trend(metric: str, recent: float, earlier: float, label: str) -> PerformanceTrend:
    return PerformanceTrend(
        metric=metric,
        trend=label,
        recent_value=round(recent, 4),
        earlier_value=round(earlier, 4),
        change_rate=round(relative_change(recent, earlier), 4),
    )
