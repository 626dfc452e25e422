from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


Base = declarative_base()

JOB_TYPE_CRON = "cron"
JOB_TYPE_SCHEDULED = "scheduled"
JOB_TYPE_RECURRING = "recurring"
JOB_TYPES = (JOB_TYPE_CRON, JOB_TYPE_SCHEDULED, JOB_TYPE_RECURRING)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UTCDateTime(TypeDecorator):
    """Timestamp stored as naive UTC, always returned as an aware UTC datetime.

    Naive values passed in are assumed to already be UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class SchedulerJob(Base):
    __tablename__ = "scheduler_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True, default=_new_uuid)
    task_uuid = Column(String(36), nullable=False)

    name = Column(String(256), nullable=False)
    type = Column(String(16), nullable=False)
    schedule = Column(String(256), nullable=False)  # cron expression or ISO instant
    interval_seconds = Column(Integer, nullable=True)  # period of recurring jobs

    status = Column(String(16), nullable=False, default=STATUS_PENDING)
    last_run = Column(UTCDateTime, nullable=True)
    next_run = Column(UTCDateTime, nullable=True)

    result = Column(JSON(none_as_null=True), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON(none_as_null=True), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_scheduler_jobs_status", "status"),
        Index("ix_scheduler_jobs_next_run", "next_run"),
        Index("ix_scheduler_jobs_status_next_run", "status", "next_run"),
        Index("ix_scheduler_jobs_type", "type"),
        Index("ix_scheduler_jobs_task_uuid", "task_uuid"),
    )

    @property
    def description(self) -> Optional[str]:
        meta = self.metadata_ if isinstance(self.metadata_, dict) else {}
        value = meta.get("description")
        return str(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "task_uuid": self.task_uuid,
            "name": self.name,
            "type": self.type,
            "schedule": self.schedule,
            "interval_seconds": self.interval_seconds,
            "status": self.status,
            "last_run": _iso(self.last_run),
            "next_run": _iso(self.next_run),
            "result": self.result,
            "metadata": self.metadata_,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class JobExecution(Base):
    """One fire of a job. Never reused across runs."""

    __tablename__ = "scheduler_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True, default=_new_uuid)
    job_uuid = Column(String(36), nullable=False, index=True)
    task_uuid = Column(String(36), nullable=False)
    conversation_uuid = Column(String(36), nullable=False)
    instruction = Column(Text, nullable=False)

    started_at = Column(UTCDateTime, default=utcnow, nullable=False)
    finished_at = Column(UTCDateTime, nullable=True)

    ok = Column(Boolean, nullable=True)
    result = Column(JSON(none_as_null=True), nullable=True)
    error = Column(Text, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "job_uuid": self.job_uuid,
            "task_uuid": self.task_uuid,
            "conversation_uuid": self.conversation_uuid,
            "instruction": self.instruction,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "ok": self.ok,
            "result": self.result,
            "error": self.error,
        }
