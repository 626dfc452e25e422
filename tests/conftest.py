import threading
from datetime import datetime, timedelta, timezone

import pytest

from agentcron.scheduler import repo
from agentcron.scheduler.config import SchedulerConfig
from agentcron.scheduler.db import dispose_engine
from agentcron.scheduler.runner import Scheduler

# Monday 09:00 UTC, on a five minute boundary
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDispatcher:
    """Stands in for the execution endpoint. Records calls, optionally fails."""

    def __init__(self):
        self.calls = []
        self.error = None
        self.errors_by_name = {}
        self.on_execute = None
        self._lock = threading.Lock()

    def execute(self, job):
        with self._lock:
            self.calls.append(job.uuid)
        if self.on_execute is not None:
            self.on_execute(job)
        error = self.errors_by_name.get(job.name, self.error)
        if error is not None:
            raise error
        return {"status": "success", "job_id": job.uuid}


def parse_ts(value):
    return datetime.fromisoformat(value) if value else None


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite:///{(tmp_path / 'scheduler.db').as_posix()}"
    repo.init_db(url)
    yield url
    dispose_engine(url)


@pytest.fixture
def cfg(database_url):
    return SchedulerConfig(
        database_url=database_url,
        tick_seconds=3600,
        max_workers=2,
        api_key="test-key",
        execution_url="http://agent.test/api/agi/chat",
        execution_timeout_seconds=5,
    )


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def scheduler(cfg, dispatcher, clock):
    s = Scheduler(cfg, dispatcher=dispatcher, clock=clock)
    yield s
    s.stop(timeout=5)
