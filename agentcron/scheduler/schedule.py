"""Schedule calculator.

Turns a job's ``(type, schedule, timezone)`` into fire times. All instants
returned are aware UTC datetimes.

- ``cron``: 5-field (minute hour day month weekday) or 6-field expression with
  seconds first, evaluated in the given IANA timezone.
- ``scheduled``: a single ISO-8601 instant.
- ``recurring``: an ISO-8601 anchor instant plus a period in seconds; fires at
  ``anchor + k * period``.

ISO instants without an offset are read in the given timezone.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from croniter import croniter

from agentcron.scheduler.errors import InvalidScheduleError
from agentcron.scheduler.models import (
    JOB_TYPE_CRON,
    JOB_TYPE_RECURRING,
    JOB_TYPE_SCHEDULED,
    JOB_TYPES,
)

TimezoneLike = Union[str, tzinfo]


def _as_tz(tz: TimezoneLike) -> tzinfo:
    if isinstance(tz, tzinfo):
        return tz
    try:
        return ZoneInfo(str(tz))
    except (KeyError, ValueError) as e:
        raise InvalidScheduleError(f"Unknown timezone: {tz!r}") from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: str, tz: TimezoneLike = "UTC") -> datetime:
    """Parse an ISO-8601 instant, reading offset-less values in ``tz``."""
    raw = (value or "").strip()
    if not raw:
        raise InvalidScheduleError("Empty schedule")
    if raw[-1] in "zZ":
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise InvalidScheduleError(f"Invalid ISO-8601 instant: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_as_tz(tz))
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as e:
        raise InvalidScheduleError(f"Instant out of range in UTC: {value!r}") from e


def _cron(expression: str, start: datetime) -> croniter:
    fields = (expression or "").split()
    if len(fields) not in (5, 6):
        raise InvalidScheduleError(
            f"Cron expression must have 5 or 6 fields, got {len(fields)}: {expression!r}"
        )
    kwargs = {"second_at_beginning": True} if len(fields) == 6 else {}
    try:
        return croniter(" ".join(fields), start, **kwargs)
    except (ValueError, KeyError) as e:
        raise InvalidScheduleError(f"Invalid cron expression: {expression!r}") from e


def _period(interval_seconds: Optional[int], anchor: Optional[datetime] = None) -> timedelta:
    """Recurrence period; with ``anchor``, the first step from it must be a valid instant."""
    try:
        seconds = int(interval_seconds) if interval_seconds is not None else 0
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidScheduleError(f"Invalid recurrence period: {interval_seconds!r}") from e
    if seconds <= 0:
        raise InvalidScheduleError("Recurring jobs need a positive interval_seconds")
    try:
        period = timedelta(seconds=seconds)
        if anchor is not None:
            anchor + period  # raises OverflowError past datetime.max
    except OverflowError as e:
        raise InvalidScheduleError(f"Recurrence period out of range: {interval_seconds!r}") from e
    return period


def next_fire_time(
    job_type: str,
    schedule: str,
    tz: TimezoneLike,
    reference: datetime,
    interval_seconds: Optional[int] = None,
) -> Optional[datetime]:
    """
    First fire time strictly after ``reference``.

    Returns ``None`` for a ``scheduled`` job whose instant is not after
    ``reference``: it has no subsequent fire time.

    Raises:
        InvalidScheduleError: if ``schedule`` can't be parsed for ``job_type``
    """
    reference = _as_utc(reference)

    if job_type == JOB_TYPE_CRON:
        zone = _as_tz(tz)
        it = _cron(schedule, reference.astimezone(zone))
        try:
            candidate = _as_utc(it.get_next(datetime))
            # croniter works at second resolution, never hand back the reference itself
            while candidate <= reference:
                candidate = _as_utc(it.get_next(datetime))
        except (ValueError, KeyError, OverflowError) as e:
            raise InvalidScheduleError(f"Cron expression never fires: {schedule!r}") from e
        return candidate

    if job_type == JOB_TYPE_SCHEDULED:
        instant = parse_instant(schedule, tz)
        return instant if instant > reference else None

    if job_type == JOB_TYPE_RECURRING:
        anchor = parse_instant(schedule, tz)
        period = _period(interval_seconds)
        if anchor > reference:
            return anchor
        try:
            steps = int((reference - anchor) / period) + 1
            candidate = anchor + steps * period
            while candidate <= reference:
                candidate += period
        except OverflowError as e:
            raise InvalidScheduleError(
                f"Next occurrence of {schedule!r} every {interval_seconds}s is out of range"
            ) from e
        return candidate

    raise InvalidScheduleError(f"Invalid job type: {job_type!r}, expected one of {JOB_TYPES}")


def initial_fire_time(
    job_type: str,
    schedule: str,
    tz: TimezoneLike,
    reference: datetime,
    interval_seconds: Optional[int] = None,
) -> datetime:
    """
    ``next_run`` for a newly created job.

    Cron jobs fire at their first occurrence after ``reference``. Scheduled and
    recurring jobs fire at their instant/anchor, which may already be past-due.
    """
    if job_type == JOB_TYPE_CRON:
        return next_fire_time(job_type, schedule, tz, reference)
    if job_type == JOB_TYPE_SCHEDULED:
        return parse_instant(schedule, tz)
    if job_type == JOB_TYPE_RECURRING:
        anchor = parse_instant(schedule, tz)
        _period(interval_seconds, anchor)
        return anchor
    raise InvalidScheduleError(f"Invalid job type: {job_type!r}, expected one of {JOB_TYPES}")
