"""Minimal GitHub REST v3 client for repository, commit, pull and issue lists."""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from agent_monitor.config import GitHubConfig
from agent_monitor.date_utils import format_utc
from agent_monitor.errors import FetchError, RateLimitError, truncate_message
from agent_monitor.fetch import PER_PAGE
from agent_monitor.models import RateLimitInfo

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
USER_AGENT = "agent-monitor"


class GitHubClient:
    """Thin wrapper over ``httpx.Client``.

    Every response updates ``rate_limit`` from the ``x-ratelimit-*``
    headers. The client never sleeps; callers check ``should_wait()``.
    """

    def __init__(self, config: GitHubConfig, transport: httpx.BaseTransport | None = None) -> None:
        config.require_repository()
        self.config = config
        self.rate_limit: RateLimitInfo | None = None
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": API_VERSION,
        }
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._http = httpx.Client(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.config.owner}/{self.config.repo}"

    # --- Endpoints ---

    def get_repository(self) -> dict[str, Any]:
        return self._get(self.repo_path)

    def get_commits(
        self,
        since: datetime,
        until: datetime,
        page: int = 1,
        per_page: int = PER_PAGE,
    ) -> list[dict[str, Any]]:
        return self._get(f"{self.repo_path}/commits", {
            "since": format_utc(since),
            "until": format_utc(until),
            "page": page,
            "per_page": per_page,
        })

    def get_pulls(self, page: int = 1, per_page: int = PER_PAGE, state: str = "all") -> list[dict[str, Any]]:
        return self._get(f"{self.repo_path}/pulls", {
            "state": state, "page": page, "per_page": per_page,
        })

    def get_issues(self, page: int = 1, per_page: int = PER_PAGE, state: str = "all") -> list[dict[str, Any]]:
        return self._get(f"{self.repo_path}/issues", {
            "state": state, "page": page, "per_page": per_page,
        })

    def should_wait(self) -> bool:
        """True when the remaining quota has dropped below the configured buffer."""
        if self.rate_limit is None:
            return False
        return self.rate_limit.remaining < self.config.rate_limit_buffer

    # --- Transport ---

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = self._http.get(path, params=params)
        except httpx.TransportError as e:
            raise FetchError(f"GET {path} failed: {e}", transient=True) from e

        self._capture_rate_limit(response)

        status = response.status_code
        if status in (403, 429) and self._quota_exhausted(response):
            reset = self.rate_limit.reset if self.rate_limit else None
            raise RateLimitError(f"Rate limit exceeded for GET {path}", status=status, reset=reset)
        if status >= 500:
            raise FetchError(f"GET {path} returned {status}", status=status, transient=True)
        if status >= 400:
            detail = truncate_message(response.text)
            raise FetchError(f"GET {path} returned {status}: {detail}", status=status)

        logger.debug("GET %s -> %d", path, status)
        return response.json()

    def _quota_exhausted(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return response.headers.get("x-ratelimit-remaining") == "0"

    def _capture_rate_limit(self, response: httpx.Response) -> None:
        headers = response.headers
        if "x-ratelimit-remaining" not in headers:
            return
        try:
            used = headers.get("x-ratelimit-used")
            self.rate_limit = RateLimitInfo(
                limit=int(headers.get("x-ratelimit-limit", 0)),
                remaining=int(headers["x-ratelimit-remaining"]),
                reset=datetime.fromtimestamp(int(headers.get("x-ratelimit-reset", 0)), tz=timezone.utc),
                used=int(used) if used is not None else None,
            )
        except ValueError:
            logger.warning("Ignoring malformed rate-limit headers on %s", response.url)
