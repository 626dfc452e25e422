from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agentcron.config_utils import env_first, env_float, env_int, env_optional_str, env_str
from agentcron.scheduler.errors import ConfigError

DEFAULT_TIMEZONE = "UTC"
DEFAULT_APP_URL = "http://localhost:3000"
EXECUTION_PATH = "/api/agi/chat"


@dataclass(frozen=True)
class SchedulerConfig:
    """Runtime configuration for the scheduler service.

    DB selection:
    - PLATFORM_DATABASE_URL: shared DB URL (preferred)
    - SCHEDULER_DATABASE_URL: scheduler-specific DB URL
    - If neither is set, defaults to local SQLite at data/scheduler.db

    Loop:
    - SCHEDULER_TICK_SECONDS: how often to check for due jobs (default: 60)
    - SCHEDULER_MAX_JOBS_PER_TICK: cap due jobs picked up per tick (default: 20)
    - SCHEDULER_MAX_WORKERS: size of the worker pool running due jobs (default: 4)

    Schedules:
    - SCHEDULER_TIMEZONE (or APP_TIMEZONE): IANA zone used to evaluate cron
      expressions and ISO instants without an offset (default: UTC)

    Execution endpoint:
    - SCHEDULER_EXECUTION_URL: full URL of the chat endpoint; otherwise
      APP_URL + /api/agi/chat (default APP_URL: http://localhost:3000)
    - SCHEDULER_API_KEY (or API_KEY): bearer token sent to the endpoint
    - SCHEDULER_EXECUTION_TIMEOUT_SECONDS: per-call timeout (default: 120)

    MCP server:
    - SCHEDULER_MCP_HOST (default: 0.0.0.0)
    - SCHEDULER_MCP_PORT (default: 8010)

    Notes:
    - Stored instants are UTC; the timezone only affects how schedules are read.
    """

    database_url: str
    tick_seconds: int = 60
    max_jobs_per_tick: int = 20
    max_workers: int = 4

    timezone: str = DEFAULT_TIMEZONE

    execution_url: str = DEFAULT_APP_URL + EXECUTION_PATH
    api_key: Optional[str] = None
    execution_timeout_seconds: float = 120.0

    log_level: str = "INFO"
    mcp_host: str = "0.0.0.0"
    mcp_port: int = 8010

    def __post_init__(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone: {self.timezone!r}") from e
        if self.execution_timeout_seconds <= 0:
            raise ConfigError("execution_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        db_url = env_first("PLATFORM_DATABASE_URL", "SCHEDULER_DATABASE_URL", default="")

        if not db_url:
            # Default sqlite path under repo-root data/.
            repo_root = Path(__file__).resolve().parents[2]
            data_dir = repo_root / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            db_url = f"sqlite:///{(data_dir / 'scheduler.db').as_posix()}"

        execution_url = env_optional_str("SCHEDULER_EXECUTION_URL")
        if not execution_url:
            app_url = env_str("APP_URL", DEFAULT_APP_URL) or DEFAULT_APP_URL
            execution_url = app_url.rstrip("/") + EXECUTION_PATH

        return cls(
            database_url=db_url,
            tick_seconds=max(1, env_int("SCHEDULER_TICK_SECONDS", 60)),
            max_jobs_per_tick=max(1, env_int("SCHEDULER_MAX_JOBS_PER_TICK", 20)),
            max_workers=max(1, env_int("SCHEDULER_MAX_WORKERS", 4)),
            timezone=env_first("SCHEDULER_TIMEZONE", "APP_TIMEZONE", default=DEFAULT_TIMEZONE),
            execution_url=execution_url,
            api_key=env_first("SCHEDULER_API_KEY", "API_KEY"),
            execution_timeout_seconds=env_float("SCHEDULER_EXECUTION_TIMEOUT_SECONDS", 120.0),
            log_level=env_str("SCHEDULER_LOG_LEVEL", "INFO").upper(),
            mcp_host=env_str("SCHEDULER_MCP_HOST", "0.0.0.0"),
            mcp_port=env_int("SCHEDULER_MCP_PORT", 8010),
        )


# Global config instance
_config: Optional[SchedulerConfig] = None


def get_config(reload: bool = False) -> SchedulerConfig:
    """Get the scheduler configuration (cached)."""
    global _config
    if _config is None or reload:
        _config = SchedulerConfig.from_env()
    return _config
