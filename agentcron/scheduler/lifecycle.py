"""Job lifecycle.

States::

    pending -> running -> pending      (cron / recurring, success)
                       -> completed    (scheduled, success)
                       -> failed       (execution error or timeout)
    pending|running -> cancelled
    failed -> pending                  (explicit reset only)

Failed jobs are never retried automatically. Cancelling a running job does not
interrupt it; it only stops the job from being re-armed when the run finishes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from agentcron.scheduler import repo
from agentcron.scheduler.config import SchedulerConfig
from agentcron.scheduler.dispatcher import Dispatcher
from agentcron.scheduler.errors import (
    ExecutionError,
    InvalidScheduleError,
    InvalidTransitionError,
    JobNotFoundError,
)
from agentcron.scheduler.models import (
    JOB_TYPE_SCHEDULED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    SchedulerJob,
    utcnow,
)
from agentcron.scheduler.schedule import next_fire_time

logger = logging.getLogger(__name__)

OUTCOME_SKIPPED = "skipped"
OUTCOME_OK = "ok"
OUTCOME_FAILED = "failed"

Clock = Callable[[], datetime]


def error_result(error: BaseException | str, when: datetime) -> Dict[str, Any]:
    return {"error": str(error) or type(error).__name__, "timestamp": when.isoformat()}


class JobLifecycle:
    def __init__(
        self,
        cfg: SchedulerConfig,
        dispatcher: Dispatcher,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cfg = cfg
        self.dispatcher = dispatcher
        self.clock = clock or utcnow

    @property
    def database_url(self) -> str:
        return self.cfg.database_url

    def claim(self, job_uuid: str) -> bool:
        claimed = repo.claim_job(self.database_url, job_uuid)
        if claimed:
            logger.debug("Job %s marked as running", job_uuid)
        return claimed

    def process(self, job: SchedulerJob) -> str:
        """Claim, execute and finalize one due job.

        Store errors during finalize propagate to the caller, leaving the job
        in whatever state the last successful write produced.
        """
        if not self.claim(job.uuid):
            logger.info("Job %s is no longer pending, skipping", job.uuid)
            return OUTCOME_SKIPPED

        logger.info("Processing job: %s (%s)", job.uuid, job.name)
        try:
            result = self.dispatcher.execute(job)
        except ExecutionError as exc:
            logger.warning("Job %s failed: %s", job.uuid, exc)
            self.finalize_failure(job, exc)
            return OUTCOME_FAILED
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error executing job %s", job.uuid)
            self.finalize_failure(job, exc)
            return OUTCOME_FAILED

        status = self.finalize_success(job, result)
        return OUTCOME_FAILED if status == STATUS_FAILED else OUTCOME_OK

    def finalize_success(self, job: SchedulerJob, result: Any) -> str:
        """Record a successful run and re-arm or complete the job.

        Returns the status the job is left in.
        """
        now = self.clock()
        values: Dict[str, Any] = {"last_run": now, "result": result}

        if job.type == JOB_TYPE_SCHEDULED:
            values.update(status=STATUS_COMPLETED, next_run=None)
        else:
            try:
                next_run = next_fire_time(
                    job.type, job.schedule, self.cfg.timezone, now, job.interval_seconds
                )
            except InvalidScheduleError as exc:
                logger.error("Job %s ran but its schedule can't be re-armed: %s", job.uuid, exc)
                self.finalize_failure(job, exc)
                return STATUS_FAILED
            values.update(status=STATUS_PENDING, next_run=next_run)
            logger.debug("Next run for job %s scheduled at %s", job.uuid, next_run)

        if repo.transition(self.database_url, job.uuid, from_statuses=(STATUS_RUNNING,), values=values):
            logger.info("Job %s completed and updated (status=%s)", job.uuid, values["status"])
            return values["status"]
        return self._record_after_cancel(job, {"last_run": now, "result": result})

    def finalize_failure(self, job: SchedulerJob, error: BaseException | str) -> str:
        """Mark a running job failed. ``next_run`` is left untouched."""
        now = self.clock()
        result = error_result(error, now)
        values = {"status": STATUS_FAILED, "last_run": now, "result": result}
        if repo.transition(self.database_url, job.uuid, from_statuses=(STATUS_RUNNING,), values=values):
            return STATUS_FAILED
        return self._record_after_cancel(job, {"last_run": now, "result": result})

    def _record_after_cancel(self, job: SchedulerJob, values: Dict[str, Any]) -> str:
        # Job left running while we worked; only a cancel can do that.
        if repo.transition(self.database_url, job.uuid, from_statuses=(STATUS_CANCELLED,), values=values):
            logger.info("Job %s was cancelled while running, not re-arming", job.uuid)
            return STATUS_CANCELLED
        current = repo.get_job(self.database_url, job.uuid)
        status = current["status"] if current else None
        logger.warning("Job %s changed to %s while running, result not recorded", job.uuid, status)
        return str(status)

    def cancel(self, job_uuid: str) -> Dict[str, Any]:
        if repo.transition(
            self.database_url,
            job_uuid,
            from_statuses=(STATUS_PENDING, STATUS_RUNNING),
            values={"status": STATUS_CANCELLED},
        ):
            logger.info("Job %s cancelled", job_uuid)
            return repo.get_job(self.database_url, job_uuid)

        job = repo.get_job(self.database_url, job_uuid)
        if job is None:
            raise JobNotFoundError(f"No job with uuid {job_uuid}")
        if job["status"] == STATUS_CANCELLED:
            return job
        raise InvalidTransitionError(f"Can't cancel job {job_uuid} in status {job['status']}")

    def reset(self, job_uuid: str) -> Dict[str, Any]:
        """Re-arm a failed job from now."""
        job = repo.load_job(self.database_url, job_uuid)
        if job is None:
            raise JobNotFoundError(f"No job with uuid {job_uuid}")
        if job.status != STATUS_FAILED:
            raise InvalidTransitionError(f"Only failed jobs can be reset, job {job_uuid} is {job.status}")

        now = self.clock()
        next_run = next_fire_time(job.type, job.schedule, self.cfg.timezone, now, job.interval_seconds)
        if next_run is None:
            # a scheduled job whose instant has passed runs once more, right away
            next_run = now

        if not repo.transition(
            self.database_url,
            job_uuid,
            from_statuses=(STATUS_FAILED,),
            values={"status": STATUS_PENDING, "next_run": next_run},
        ):
            raise InvalidTransitionError(f"Job {job_uuid} changed status during reset")
        logger.info("Job %s reset, next run at %s", job_uuid, next_run)
        return repo.get_job(self.database_url, job_uuid)
