"""Repository health analysis over commits, pull requests and issues.

One analysis is a single sequential pass: fetch the repository, its
commits in the time window, and its full pull request and issue history,
then aggregate, classify trends, score and recommend. Any fetch failure
aborts the run with an AnalysisError naming the stage.
"""

import hashlib
import json
import logging
from collections import Counter
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Protocol

from agent_monitor.analysis.trends import (
    activity_trend,
    engagement_trend,
    resolution_trend,
    velocity_trend,
    week_range,
)
from agent_monitor.config import AnalysisConfig
from agent_monitor.date_utils import utc_now, week_start
from agent_monitor.errors import AnalysisError
from agent_monitor.fetch import PER_PAGE, fetch_all_pages
from agent_monitor.models import (
    CodeChangeMetrics,
    Commit,
    CommitMetrics,
    Contributor,
    ContributorMetrics,
    Issue,
    IssueMetrics,
    ProjectAnalysis,
    ProjectMetrics,
    ProjectTrends,
    PullRequest,
    PullRequestMetrics,
    Repository,
    TimeRange,
    WeeklyActivity,
)

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_DAYS = 30
TOP_CONTRIBUTORS = 10
HOURS = 3600.0

RECOMMENDATIONS = {
    "low_health": "Project health is low; schedule a regular review of process and backlog.",
    "low_commit_rate": "Commit frequency is low; prefer smaller, more frequent commits.",
    "slow_merges": "Pull requests take too long to merge; look at the review process.",
    "open_issues": "Too many issues are open; prioritise and close out the backlog.",
    "activity_decreasing": "Activity is trending down; check in on team capacity and focus.",
    "engagement_shrinking": "Fewer contributors are active; invest in onboarding and support.",
    "healthy": "The project is in good shape; keep up the current practices.",
}


class RepositoryClient(Protocol):
    def get_repository(self) -> dict[str, Any]: ...

    def get_commits(self, since: datetime, until: datetime, page: int = 1,
                    per_page: int = PER_PAGE) -> list[dict[str, Any]]: ...

    def get_pulls(self, page: int = 1, per_page: int = PER_PAGE) -> list[dict[str, Any]]: ...

    def get_issues(self, page: int = 1, per_page: int = PER_PAGE) -> list[dict[str, Any]]: ...


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except AnalysisError:
        raise
    except Exception as e:
        logger.error("Repository analysis failed at stage %s: %s", name, e)
        raise AnalysisError(name, e) from e


class ProjectAnalyzer:
    """Compute metrics, trends and a health score for one repository."""

    def __init__(
        self,
        client: RepositoryClient,
        config: AnalysisConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        retry_attempts: int = 3,
    ) -> None:
        self.client = client
        # Re-validating clamps and normalises values set after construction
        self.config = AnalysisConfig.model_validate((config or AnalysisConfig()).model_dump())
        self.clock = clock
        self.retry_attempts = retry_attempts

    def analyze(self) -> ProjectAnalysis:
        now = self.clock()
        start = now - timedelta(days=self.config.time_range_days)

        with _stage("repository"):
            repository = Repository.from_api(self.client.get_repository())
        with _stage("commits"):
            commits = self.fetch_commits(start, now)
        with _stage("pulls"):
            pulls = [PullRequest.from_api(p) for p in self._paged(self.client.get_pulls)]
        with _stage("issues"):
            issues = [
                Issue.from_api(i) for i in self._paged(self.client.get_issues)
                if "pull_request" not in i
            ]
        logger.info(
            "Fetched %s: %d commits, %d pull requests, %d issues",
            repository.full_name, len(commits), len(pulls), len(issues),
        )

        metrics = self.calculate_metrics(commits, pulls, issues, now)
        trends = self.calculate_trends(commits, pulls, issues, start, now)
        health = self.health_score(metrics)
        return ProjectAnalysis(
            repository=repository.full_name,
            analysis_date=now,
            time_range=TimeRange(start=start, end=now),
            metrics=metrics,
            trends=trends,
            health_score=health,
            recommendations=self.recommendations(metrics, trends, health),
            data_integrity_hash=integrity_digest(len(commits), len(pulls), len(issues), repository.id, now),
        )

    # --- Fetching ---

    def _paged(self, fetch: Callable[..., list[dict[str, Any]]]) -> list[dict[str, Any]]:
        return fetch_all_pages(
            lambda page: fetch(page=page, per_page=PER_PAGE),
            retry_attempts=self.retry_attempts,
        )

    def fetch_commits(self, since: datetime, until: datetime) -> list[Commit]:
        raw = fetch_all_pages(
            lambda page: self.client.get_commits(since, until, page=page, per_page=PER_PAGE),
            retry_attempts=self.retry_attempts,
        )
        return self.filter_commits([Commit.from_api(c) for c in raw])

    def filter_commits(self, commits: Sequence[Commit]) -> list[Commit]:
        """Drop merge commits (when configured) and commits with too-short messages."""
        kept: list[Commit] = []
        for commit in commits:
            if self.config.exclude_merge_commits and commit.is_merge:
                continue
            if len(commit.message) < self.config.minimum_commit_message_length:
                continue
            kept.append(commit)
        if len(kept) != len(commits):
            logger.debug("Filtered %d of %d commits", len(commits) - len(kept), len(commits))
        return kept

    # --- Metrics ---

    def calculate_metrics(
        self,
        commits: Sequence[Commit],
        pulls: Sequence[PullRequest],
        issues: Sequence[Issue],
        now: datetime,
    ) -> ProjectMetrics:
        by_author: Counter[str] = Counter()
        by_date: Counter[str] = Counter()
        additions = deletions = 0
        for commit in commits:
            by_author[commit.contributor] += 1
            by_date[commit.date.date().isoformat()] += 1
            additions += commit.additions
            deletions += commit.deletions

        merged = [p for p in pulls if p.merged]
        merge_hours = [
            (p.merged_at - p.created_at).total_seconds() / HOURS for p in merged if p.merged_at
        ]
        closed_issues = [i for i in issues if i.state == "closed"]
        resolution_hours = [
            (i.closed_at - i.created_at).total_seconds() / HOURS for i in closed_issues if i.closed_at
        ]

        # Count ties are broken by name so the top list is stable
        ranked = sorted(by_author.items(), key=lambda kv: (-kv[1], kv[0]))
        active_cutoff = now - timedelta(days=ACTIVE_WINDOW_DAYS)

        return ProjectMetrics(
            commits=CommitMetrics(
                total=len(commits),
                by_author=dict(by_author),
                by_date=dict(sorted(by_date.items())),
                average_per_day=len(commits) / self.config.time_range_days,
            ),
            pull_requests=PullRequestMetrics(
                total=len(pulls),
                open=sum(1 for p in pulls if p.state == "open"),
                closed=sum(1 for p in pulls if p.state == "closed"),
                merged=len(merged),
                # Summed over PRs with a merge time, divided by all merged PRs
                average_merge_time_hours=sum(merge_hours) / len(merged) if merged else 0.0,
            ),
            issues=IssueMetrics(
                total=len(issues),
                open=sum(1 for i in issues if i.state == "open"),
                closed=len(closed_issues),
                resolution_time_average_hours=(
                    sum(resolution_hours) / len(closed_issues) if closed_issues else 0.0
                ),
            ),
            code_changes=CodeChangeMetrics(
                total_additions=additions,
                total_deletions=deletions,
                lines_per_commit_average=(additions + deletions) / len(commits) if commits else 0.0,
            ),
            contributors=ContributorMetrics(
                total=len(by_author),
                active_last_30_days=len(_authors_between(commits, active_cutoff, now)),
                top_contributors=[
                    Contributor(name=name, commits=count) for name, count in ranked[:TOP_CONTRIBUTORS]
                ],
            ),
        )

    # --- Trends ---

    def calculate_trends(
        self,
        commits: Sequence[Commit],
        pulls: Sequence[PullRequest],
        issues: Sequence[Issue],
        start: datetime,
        end: datetime,
    ) -> ProjectTrends:
        weekly = weekly_activity(commits, pulls, issues, start, end)

        closed = sorted((i for i in issues if i.closed_at), key=lambda i: i.closed_at)
        resolution = [(i.closed_at - i.created_at).total_seconds() / HOURS for i in closed]

        recent = _authors_between(commits, end - timedelta(days=30), end)
        earlier = _authors_between(commits, end - timedelta(days=60), end - timedelta(days=30))

        return ProjectTrends(
            activity_trend=activity_trend([w.commits + w.prs for w in weekly]),
            velocity_trend=velocity_trend([c.date for c in commits]),
            issue_resolution_trend=resolution_trend(resolution),
            contributor_engagement=engagement_trend(len(recent), len(earlier)),
            weekly_activity=weekly,
        )

    # --- Scoring ---

    def health_score(self, metrics: ProjectMetrics) -> int:
        """Weighted 0-100 score from activity, quality, collaboration and issue sub-scores."""
        weights = self.config.health_score_weights
        commits, prs, issues = metrics.commits, metrics.pull_requests, metrics.issues

        merge_ratio = prs.merged / prs.total * 100 if prs.total else 0.0
        activity = min(100.0, commits.average_per_day * 10 + merge_ratio)

        quality = min(100.0, (80 if prs.total else 60) + (20 if commits.average_per_day < 10 else 0))

        fast_merges = prs.merged > 0 and prs.average_merge_time_hours < 48
        collaboration = min(100.0, metrics.contributors.active_last_30_days * 10 + (30 if fast_merges else 0))

        fast_resolution = issues.closed > 0 and issues.resolution_time_average_hours < 168
        issue_score = min(100.0, (50 if fast_resolution else 0) + (50 if _open_ratio(issues) < 0.3 else 0))

        total = (
            activity * weights.activity
            + quality * weights.code_quality
            + collaboration * weights.collaboration
            + issue_score * weights.issue_management
        )
        return int(round(max(0.0, min(100.0, total))))

    def recommendations(self, metrics: ProjectMetrics, trends: ProjectTrends, health: int) -> list[str]:
        checks = [
            ("low_health", health < 50),
            ("low_commit_rate", metrics.commits.average_per_day < 1),
            ("slow_merges", metrics.pull_requests.average_merge_time_hours > 72),
            ("open_issues", _open_ratio(metrics.issues) > 0.5),
            ("activity_decreasing", trends.activity_trend == "decreasing"),
            ("engagement_shrinking", trends.contributor_engagement == "shrinking"),
        ]
        recs = [RECOMMENDATIONS[key] for key, triggered in checks if triggered]
        return recs or [RECOMMENDATIONS["healthy"]]


def weekly_activity(
    commits: Sequence[Commit],
    pulls: Sequence[PullRequest],
    issues: Sequence[Issue],
    start: datetime,
    end: datetime,
) -> list[WeeklyActivity]:
    """Commits, merged PRs and closed issues per Monday-anchored week, every week filled."""
    weeks = week_range(start, end)
    commit_counts: Counter = Counter(week_start(c.date) for c in commits)
    pr_counts: Counter = Counter(week_start(p.merged_at) for p in pulls if p.merged_at)
    issue_counts: Counter = Counter(week_start(i.closed_at) for i in issues if i.closed_at)
    return [
        WeeklyActivity(
            week=week,
            commits=commit_counts[week],
            prs=pr_counts[week],
            issues_closed=issue_counts[week],
        )
        for week in weeks
    ]


def integrity_digest(commits: int, prs: int, issues: int, repo_id: int, when: datetime) -> str:
    """Fingerprint of the record counts, repository id and calendar day.

    Two runs on the same day with the same counts share a digest even if
    the underlying records differ. It is a consistency check, not a
    content hash.
    """
    payload = json.dumps({
        "commits_count": commits,
        "prs_count": prs,
        "issues_count": issues,
        "repo_id": repo_id,
        "date": when.date().isoformat(),
    }, sort_keys=True)
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def _open_ratio(issues: IssueMetrics) -> float:
    return issues.open / max(1, issues.total)


def _authors_between(commits: Sequence[Commit], after: datetime, until: datetime) -> set[str]:
    return {c.contributor for c in commits if after < c.date <= until}
