"""Categorical trend classification shared by the session and repository analyzers.

Every trend compares a recent window against an earlier one and reports a
category rather than a number. Changes within +/-10% count as no change.
"""

from collections.abc import Sequence
from datetime import date, datetime, timedelta

from agent_monitor.date_utils import week_start

CHANGE_THRESHOLD = 0.10

# (up, down, flat) labels per trend family
ACTIVITY_LABELS = ("increasing", "decreasing", "stable")
VELOCITY_LABELS = ("accelerating", "decelerating", "consistent")
RESOLUTION_LABELS = ("improving", "degrading", "stable")
ENGAGEMENT_LABELS = ("growing", "shrinking", "stable")


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def relative_change(recent: float, earlier: float) -> float:
    """Fractional change from ``earlier`` to ``recent``.

    With an earlier value of zero the change is +1.0 for any positive
    recent value and 0.0 otherwise.
    """
    if earlier == 0:
        return 1.0 if recent > 0 else 0.0
    return (recent - earlier) / earlier


def classify_change(
    recent: float,
    earlier: float,
    labels: tuple[str, str, str] = ACTIVITY_LABELS,
    threshold: float = CHANGE_THRESHOLD,
) -> str:
    """Label a change as up / down / flat. Higher recent values mean "up"."""
    change = relative_change(recent, earlier)
    up, down, flat = labels
    if change > threshold:
        return up
    if change < -threshold:
        return down
    return flat


def classify_duration_change(
    recent: float,
    earlier: float,
    labels: tuple[str, str, str],
    threshold: float = CHANGE_THRESHOLD,
) -> str:
    """Like classify_change, but for durations/intervals where lower is better."""
    better, worse, flat = labels
    if recent < earlier * (1 - threshold):
        return better
    if recent > earlier * (1 + threshold):
        return worse
    return flat


def activity_trend(weekly_totals: Sequence[float], recent_weeks: int = 4) -> str:
    """Compare the mean of the last ``recent_weeks`` buckets to the earlier ones."""
    if len(weekly_totals) < 2:
        return "stable"
    recent = weekly_totals[-recent_weeks:]
    earlier = weekly_totals[:max(1, len(weekly_totals) - recent_weeks)]
    return classify_change(mean(recent), mean(earlier), ACTIVITY_LABELS)


def velocity_trend(timestamps: Sequence[datetime], window: int = 10) -> str:
    """Compare the mean gap of the last ``window`` intervals with the first ones.

    Shorter gaps mean the work is accelerating. Needs at least ``window``
    timestamps, otherwise "consistent".
    """
    if len(timestamps) < window:
        return "consistent"
    ordered = sorted(timestamps)
    gaps = [(b - a).total_seconds() for a, b in zip(ordered, ordered[1:])]
    if not gaps:
        return "consistent"
    return classify_duration_change(mean(gaps[-window:]), mean(gaps[:window]), VELOCITY_LABELS)


def resolution_trend(durations_hours: Sequence[float], window: int = 5) -> str:
    """Compare the mean of the last ``window`` resolution times with the first ones."""
    if len(durations_hours) < window:
        return "stable"
    return classify_duration_change(
        mean(durations_hours[-window:]), mean(durations_hours[:window]), RESOLUTION_LABELS,
    )


def engagement_trend(recent_count: int, earlier_count: int) -> str:
    if recent_count > earlier_count:
        return "growing"
    if recent_count < earlier_count:
        return "shrinking"
    return "stable"


def week_range(start: datetime | date, end: datetime | date) -> list[date]:
    """Every Monday-anchored week start from ``start``'s week to ``end``'s week."""
    first = week_start(start)
    last = week_start(end)
    weeks: list[date] = []
    current = first
    while current <= last:
        weeks.append(current)
        current += timedelta(days=7)
    return weeks
