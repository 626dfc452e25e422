from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from agentcron.scheduler import service
from agentcron.scheduler.config import SchedulerConfig, get_config
from agentcron.scheduler.errors import SchedulerError
from agentcron.scheduler.runner import Scheduler

logger = logging.getLogger(__name__)

mcp = FastMCP("scheduler")

_SCHEDULER: Optional[Scheduler] = None


def _error(exc: Exception) -> Dict[str, Any]:
    return {"ok": False, "error": str(exc), "error_type": type(exc).__name__}


def start_background_scheduler(cfg: SchedulerConfig) -> Scheduler:
    global _SCHEDULER
    if _SCHEDULER is not None and _SCHEDULER.running:
        return _SCHEDULER

    _SCHEDULER = Scheduler(cfg)
    _SCHEDULER.start()
    return _SCHEDULER


def stop_background_scheduler() -> None:
    global _SCHEDULER
    if _SCHEDULER is not None:
        _SCHEDULER.stop()
        _SCHEDULER = None


@mcp.tool
def scheduler_health() -> Dict[str, Any]:
    cfg = get_config()
    state = _SCHEDULER.state if _SCHEDULER is not None else None
    return {
        "ok": True,
        "service": "scheduler",
        "thread_alive": bool(_SCHEDULER and _SCHEDULER.running),
        "tick_seconds": int(cfg.tick_seconds),
        "max_workers": int(cfg.max_workers),
        "timezone": cfg.timezone,
        "db": cfg.database_url.split(":", 1)[0],
        "started_at_utc": state.started_at_utc if state else None,
        "last_tick_at_utc": state.last_tick_at_utc if state else None,
        "last_tick_summary": state.last_tick_summary if state else None,
        "skipped_ticks": state.skipped_ticks if state else 0,
    }


@mcp.tool
def scheduler_list_jobs(status: Optional[str] = None) -> Dict[str, Any]:
    jobs = service.list_jobs(get_config(), status=status)
    return {"ok": True, "jobs": jobs}


@mcp.tool
def scheduler_get_job(job_id: str) -> Dict[str, Any]:
    job = service.get_job(get_config(), str(job_id))
    if not job:
        return {"ok": False, "error": "not_found"}
    return {"ok": True, "job": job}


@mcp.tool
def scheduler_create_job(
    *,
    name: str,
    job_type: str,
    schedule: str,
    task_uuid: str,
    metadata: Optional[Dict[str, Any]] = None,
    interval_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    try:
        job = service.create_job(
            get_config(),
            str(name),
            str(job_type),
            str(schedule),
            str(task_uuid),
            dict(metadata) if metadata else None,
            interval_seconds=interval_seconds,
        )
    except SchedulerError as exc:
        return _error(exc)
    return {"ok": True, "job": job}


@mcp.tool
def scheduler_cancel_job(job_id: str) -> Dict[str, Any]:
    try:
        job = service.cancel_job(get_config(), str(job_id))
    except SchedulerError as exc:
        return _error(exc)
    return {"ok": True, "job": job}


@mcp.tool
def scheduler_reset_job(job_id: str) -> Dict[str, Any]:
    try:
        job = service.reset_job(get_config(), str(job_id))
    except SchedulerError as exc:
        return _error(exc)
    return {"ok": True, "job": job}


@mcp.tool
def scheduler_list_executions(limit: int = 50, job_id: Optional[str] = None) -> Dict[str, Any]:
    runs = service.list_executions(get_config(), job_uuid=str(job_id) if job_id else None, limit=int(limit))
    return {"ok": True, "executions": runs}


def configure_logging(cfg: SchedulerConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def run() -> None:
    cfg = get_config()
    configure_logging(cfg)
    start_background_scheduler(cfg)
    try:
        mcp.run(transport="http", host=cfg.mcp_host, port=int(cfg.mcp_port))
    finally:
        stop_background_scheduler()


if __name__ == "__main__":
    run()
