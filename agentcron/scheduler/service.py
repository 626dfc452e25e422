"""Control operations on scheduled jobs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from agentcron.scheduler import repo
from agentcron.scheduler.config import SchedulerConfig
from agentcron.scheduler.dispatcher import ExecutionDispatcher
from agentcron.scheduler.errors import InvalidScheduleError
from agentcron.scheduler.lifecycle import Clock, JobLifecycle
from agentcron.scheduler.models import JOB_TYPE_RECURRING, JOB_TYPES, utcnow
from agentcron.scheduler.schedule import initial_fire_time

logger = logging.getLogger(__name__)


def _lifecycle(cfg: SchedulerConfig, clock: Optional[Clock]) -> JobLifecycle:
    return JobLifecycle(cfg, ExecutionDispatcher(cfg), clock=clock)


def create_job(
    cfg: SchedulerConfig,
    name: str,
    job_type: str,
    schedule: str,
    task_uuid: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    interval_seconds: Optional[int] = None,
    clock: Optional[Clock] = None,
) -> Dict[str, Any]:
    """
    Validate a schedule and persist a new ``pending`` job.

    Recurring jobs take their period from ``interval_seconds``, or from
    ``metadata["interval_seconds"]`` when the argument is omitted.

    Raises:
        InvalidScheduleError: if ``schedule`` can't be parsed for ``job_type``.
            Nothing is persisted in that case.
    """
    if job_type not in JOB_TYPES:
        raise InvalidScheduleError(f"Invalid job type: {job_type!r}, expected one of {JOB_TYPES}")

    if job_type == JOB_TYPE_RECURRING:
        if interval_seconds is None and metadata:
            interval_seconds = metadata.get("interval_seconds")
    else:
        interval_seconds = None

    now = (clock or utcnow)()
    try:
        next_run = initial_fire_time(job_type, schedule, cfg.timezone, now, interval_seconds)
    except InvalidScheduleError:
        logger.error("Failed to create job %r: invalid %s schedule %r", name, job_type, schedule)
        raise

    job = repo.insert_job(
        cfg.database_url,
        name=name,
        job_type=job_type,
        schedule=schedule,
        task_uuid=task_uuid,
        next_run=next_run,
        interval_seconds=int(interval_seconds) if interval_seconds is not None else None,
        metadata=metadata,
    )
    logger.info("Created %s job %s (%s), next run at %s", job_type, job["uuid"], name, job["next_run"])
    return job


def get_job(cfg: SchedulerConfig, job_uuid: str) -> Optional[Dict[str, Any]]:
    return repo.get_job(cfg.database_url, job_uuid)


def cancel_job(cfg: SchedulerConfig, job_uuid: str) -> Dict[str, Any]:
    """Cancel a pending or running job. A running execution is not interrupted."""
    return _lifecycle(cfg, None).cancel(job_uuid)


def reset_job(cfg: SchedulerConfig, job_uuid: str, *, clock: Optional[Clock] = None) -> Dict[str, Any]:
    """Put a failed job back into ``pending`` with a fresh ``next_run``."""
    return _lifecycle(cfg, clock).reset(job_uuid)


def list_jobs(cfg: SchedulerConfig, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
    return repo.list_jobs(cfg.database_url, status=status)


def list_executions(
    cfg: SchedulerConfig, *, job_uuid: Optional[str] = None, limit: int = 50
) -> List[Dict[str, Any]]:
    return repo.list_executions(cfg.database_url, limit=limit, job_uuid=job_uuid)
