"""Job store.

Every read and write of ``scheduler_jobs`` and ``scheduler_executions`` goes
through here. No scheduling policy lives in this module: callers decide
statuses and fire times, the store only persists them.

Status changes are conditional updates (``WHERE status = ...``) so that a
transition only happens from the state the caller observed. The claim is the
mutual-exclusion point: at most one caller can move a job from ``pending`` to
``running``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agentcron.scheduler.db import get_engine, get_sessionmaker
from agentcron.scheduler.errors import StoreError
from agentcron.scheduler.models import (
    STATUS_PENDING,
    STATUS_RUNNING,
    Base,
    JobExecution,
    SchedulerJob,
    utcnow,
)


def init_db(database_url: str) -> None:
    try:
        engine = get_engine(database_url)
        Base.metadata.create_all(engine)
    except SQLAlchemyError as e:
        raise StoreError(f"Could not initialise job store: {e}") from e


@contextmanager
def _session(database_url: str) -> Iterator[Session]:
    sm = get_sessionmaker(database_url)
    try:
        with sm() as s:
            yield s
    except SQLAlchemyError as e:
        raise StoreError(str(e)) from e


def _detach(s: Session, jobs: Sequence[SchedulerJob]) -> List[SchedulerJob]:
    for j in jobs:
        s.expunge(j)
    return list(jobs)


# --------------------------------------------------
# jobs
# --------------------------------------------------


def insert_job(
    database_url: str,
    *,
    name: str,
    job_type: str,
    schedule: str,
    task_uuid: str,
    next_run: datetime,
    interval_seconds: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    with _session(database_url) as s:
        j = SchedulerJob(
            name=str(name),
            type=job_type,
            schedule=str(schedule),
            task_uuid=str(task_uuid),
            interval_seconds=interval_seconds,
            status=STATUS_PENDING,
            next_run=next_run,
            metadata_=dict(metadata) if metadata else None,
        )
        s.add(j)
        s.commit()
        return j.to_dict()


def get_job(database_url: str, job_uuid: str) -> Optional[Dict[str, Any]]:
    j = load_job(database_url, job_uuid)
    return j.to_dict() if j else None


def load_job(database_url: str, job_uuid: str) -> Optional[SchedulerJob]:
    """Like :func:`get_job` but returns the detached ORM object."""
    with _session(database_url) as s:
        j = s.execute(select(SchedulerJob).where(SchedulerJob.uuid == str(job_uuid))).scalar_one_or_none()
        if j is not None:
            s.expunge(j)
        return j


def list_jobs(database_url: str, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
    with _session(database_url) as s:
        q = select(SchedulerJob).order_by(SchedulerJob.created_at.desc(), SchedulerJob.id.desc())
        if status:
            q = q.where(SchedulerJob.status == str(status))
        jobs = s.execute(q).scalars().all()
        return [j.to_dict() for j in jobs]


def find_due_jobs(database_url: str, *, now: datetime, limit: int) -> List[SchedulerJob]:
    """Pending jobs with ``next_run <= now``, oldest ``next_run`` first.

    Read only, nothing is claimed here.
    """
    with _session(database_url) as s:
        q = (
            select(SchedulerJob)
            .where(SchedulerJob.status == STATUS_PENDING)
            .where(SchedulerJob.next_run.is_not(None))
            .where(SchedulerJob.next_run <= now)
            .order_by(SchedulerJob.next_run.asc(), SchedulerJob.id.asc())
            .limit(int(limit))
        )
        return _detach(s, s.execute(q).scalars().all())


def transition(
    database_url: str,
    job_uuid: str,
    *,
    from_statuses: Sequence[str],
    values: Dict[str, Any],
) -> bool:
    """Apply ``values`` to a job only while its status is one of ``from_statuses``.

    Returns ``True`` if the row was updated.
    """
    with _session(database_url) as s:
        res = s.execute(
            update(SchedulerJob)
            .where(SchedulerJob.uuid == str(job_uuid))
            .where(SchedulerJob.status.in_(list(from_statuses)))
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        s.commit()
        return int(res.rowcount or 0) == 1


def claim_job(database_url: str, job_uuid: str) -> bool:
    """Atomically move a job from ``pending`` to ``running``."""
    return transition(
        database_url,
        job_uuid,
        from_statuses=(STATUS_PENDING,),
        values={"status": STATUS_RUNNING},
    )


# --------------------------------------------------
# execution records
# --------------------------------------------------


def create_execution(
    database_url: str,
    *,
    job_uuid: str,
    task_uuid: str,
    conversation_uuid: str,
    instruction: str,
) -> Dict[str, Any]:
    with _session(database_url) as s:
        r = JobExecution(
            job_uuid=str(job_uuid),
            task_uuid=str(task_uuid),
            conversation_uuid=str(conversation_uuid),
            instruction=instruction,
            started_at=utcnow(),
        )
        s.add(r)
        s.commit()
        return r.to_dict()


def finish_execution(
    database_url: str,
    execution_uuid: str,
    *,
    ok: bool,
    result: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> None:
    with _session(database_url) as s:
        s.execute(
            update(JobExecution)
            .where(JobExecution.uuid == str(execution_uuid))
            .values(finished_at=utcnow(), ok=bool(ok), result=result, error=error)
            .execution_options(synchronize_session=False)
        )
        s.commit()


def list_executions(
    database_url: str, *, limit: int = 50, job_uuid: Optional[str] = None
) -> List[Dict[str, Any]]:
    with _session(database_url) as s:
        q = select(JobExecution).order_by(JobExecution.started_at.desc(), JobExecution.id.desc())
        if job_uuid:
            q = q.where(JobExecution.job_uuid == str(job_uuid))
        q = q.limit(int(limit))
        runs = s.execute(q).scalars().all()
        return [r.to_dict() for r in runs]
