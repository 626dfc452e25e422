"""Scheduler service package.

This package contains the scheduler runtime that:
- Persists job definitions and execution records to a DB (SQLite by default).
- Turns cron expressions, one-time instants and recurring intervals into fire times.
- Executes due jobs on a timer loop through a bounded worker pool, calling the
  agent execution endpoint for each fire.
- Exposes a small control surface via FastMCP tools.
"""

from agentcron.scheduler.config import SchedulerConfig, get_config
from agentcron.scheduler.errors import (
    ExecutionError,
    InvalidScheduleError,
    InvalidTransitionError,
    JobNotFoundError,
    SchedulerError,
    StoreError,
)
from agentcron.scheduler.runner import Scheduler
from agentcron.scheduler.schedule import next_fire_time
from agentcron.scheduler.service import cancel_job, create_job, get_job, reset_job

__all__ = [
    "ExecutionError",
    "InvalidScheduleError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "Scheduler",
    "SchedulerConfig",
    "SchedulerError",
    "StoreError",
    "cancel_job",
    "create_job",
    "get_config",
    "get_job",
    "next_fire_time",
    "reset_job",
]
