"""Configuration loading for agent monitor."""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from agent_monitor.errors import ConfigError

logger = logging.getLogger(__name__)

MAX_TIMEOUT_SECONDS = 30.0
MAX_RETRY_ATTEMPTS = 5


class HealthScoreWeights(BaseModel):
    activity: float = 0.3
    code_quality: float = 0.25
    collaboration: float = 0.25
    issue_management: float = 0.2

    @field_validator("activity", "code_quality", "collaboration", "issue_management")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return max(0.0, min(1.0, value))

    @model_validator(mode="after")
    def _normalize(self) -> "HealthScoreWeights":
        total = self.activity + self.code_quality + self.collaboration + self.issue_management
        # A zero sum is left alone; callers must not pass all-zero weights.
        if total > 0:
            self.activity /= total
            self.code_quality /= total
            self.collaboration /= total
            self.issue_management /= total
        return self


class AnalysisConfig(BaseModel):
    time_range_days: int = 30
    include_weekends: bool = False  # accepted but does not filter anything
    exclude_merge_commits: bool = True
    minimum_commit_message_length: int = 10
    health_score_weights: HealthScoreWeights = Field(default_factory=HealthScoreWeights)

    @field_validator("time_range_days")
    @classmethod
    def _clamp_days(cls, value: int) -> int:
        return max(1, min(365, value))

    @field_validator("minimum_commit_message_length")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(0, value)


class GitHubConfig(BaseModel):
    token: str | None = None
    owner: str = ""
    repo: str = ""
    base_url: str = "https://api.github.com"
    timeout_seconds: float = 10.0
    retry_attempts: int = 3
    rate_limit_buffer: int = 10

    @field_validator("timeout_seconds")
    @classmethod
    def _cap_timeout(cls, value: float) -> float:
        return max(1.0, min(MAX_TIMEOUT_SECONDS, value))

    @field_validator("retry_attempts")
    @classmethod
    def _cap_retries(cls, value: int) -> int:
        return max(1, min(MAX_RETRY_ATTEMPTS, value))

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def require_repository(self) -> None:
        """Raise ConfigError unless both owner and repo are set."""
        if not self.owner.strip() or not self.repo.strip():
            raise ConfigError("Repository owner and name are required (owner/repo)")


class Config(BaseModel):
    db_path: str = "data/agent_monitor.db"
    claude_logs_dir: str = "~/.claude/projects"
    retention_days: int = 30
    watch_interval: float = 2.0
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)

    @property
    def resolved_db_path(self) -> Path:
        """Resolve db_path relative to project root."""
        p = Path(self.db_path).expanduser()
        if p.is_absolute():
            return p
        return _project_root() / p

    @property
    def resolved_claude_logs_dir(self) -> Path:
        return Path(self.claude_logs_dir).expanduser()


def _project_root() -> Path:
    """Return the agent monitor project root directory."""
    return Path(__file__).parent.parent


_ENV_OVERRIDES = {
    "GITHUB_TOKEN": "token",
    "GITHUB_OWNER": "owner",
    "GITHUB_REPO": "repo",
    "GITHUB_BASE_URL": "base_url",
}


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    github = dict(raw.get("github") or {})
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            github[key] = value
    if github:
        raw = {**raw, "github": github}
    return raw


def load_config(config_path: Path | None = None) -> Config:
    """Load config from YAML file. Falls back to defaults if file missing.

    GITHUB_* environment variables override the file's github section.
    """
    if config_path is None:
        config_path = _project_root() / "config.yaml"

    raw: dict[str, Any] = {}
    if config_path.exists():
        raw = yaml.safe_load(config_path.read_text()) or {}
        logger.debug("Loaded config from %s", config_path)

    return Config(**_apply_env(raw))
