"""Scheduler error taxonomy."""

from __future__ import annotations


class SchedulerError(Exception):
    """Base scheduler exception"""


class ConfigError(SchedulerError, ValueError):
    """The scheduler configuration is invalid."""


class InvalidScheduleError(SchedulerError, ValueError):
    """A schedule string cannot be parsed for its job type.

    Raised at creation time, before anything is persisted.
    """


class ExecutionError(SchedulerError):
    """The execution endpoint failed, timed out, or could not be called."""


class StoreError(SchedulerError):
    """The job store could not be read or written."""


class JobNotFoundError(SchedulerError, LookupError):
    """No job exists with the given uuid."""


class InvalidTransitionError(SchedulerError):
    """The requested status change is not allowed from the job's current status."""
