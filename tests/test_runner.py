import threading
import time
from datetime import timedelta

from agentcron.scheduler import repo, service
from agentcron.scheduler.errors import ExecutionError, StoreError
from agentcron.scheduler.runner import Scheduler

from conftest import T0, parse_ts


def _create(cfg, clock, name="job", job_type="cron", schedule="*/5 * * * *", **kwargs):
    return service.create_job(cfg, name, job_type, schedule, "task-1", {"description": name}, clock=clock, **kwargs)


def test_empty_tick_writes_nothing(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    clock.advance(minutes=1)

    summary = scheduler.run_once()

    assert summary["jobs_due"] == 0
    assert dispatcher.calls == []
    assert service.get_job(cfg, job["uuid"]) == job
    assert repo.list_executions(cfg.database_url) == []


def test_every_five_minutes(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    assert parse_ts(job["next_run"]) == T0 + timedelta(minutes=5)

    # not due yet
    clock.advance(minutes=1)
    scheduler.run_once()
    assert service.get_job(cfg, job["uuid"]) == job

    seen = []
    dispatcher.on_execute = lambda j: seen.append(service.get_job(cfg, j.uuid)["status"])
    clock.now = T0 + timedelta(minutes=5)
    summary = scheduler.run_once()

    after = service.get_job(cfg, job["uuid"])
    assert seen == ["running"]
    assert summary["ok"] == 1
    assert after["status"] == "pending"
    assert parse_ts(after["next_run"]) == T0 + timedelta(minutes=10)
    assert parse_ts(after["last_run"]) == T0 + timedelta(minutes=5)
    assert after["result"] == {"status": "success", "job_id": job["uuid"]}


def test_scheduled_job_completes_once(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock, job_type="scheduled", schedule=(T0 + timedelta(minutes=2)).isoformat())

    clock.advance(minutes=3)
    scheduler.run_once()
    after = service.get_job(cfg, job["uuid"])
    assert after["status"] == "completed"
    assert after["next_run"] is None

    clock.advance(days=1)
    scheduler.run_once()
    assert dispatcher.calls == [job["uuid"]]
    assert service.get_job(cfg, job["uuid"])["status"] == "completed"


def test_past_due_scheduled_job_fires_on_next_poll(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock, job_type="scheduled", schedule=(T0 - timedelta(hours=1)).isoformat())
    scheduler.run_once()
    assert dispatcher.calls == [job["uuid"]]


def test_recurring_job_rearms_by_period(cfg, scheduler, clock):
    job = _create(cfg, clock, job_type="recurring", schedule=T0.isoformat(), interval_seconds=600)
    assert parse_ts(job["next_run"]) == T0

    clock.advance(minutes=1)
    scheduler.run_once()
    after = service.get_job(cfg, job["uuid"])
    assert after["status"] == "pending"
    assert parse_ts(after["next_run"]) == T0 + timedelta(minutes=10)


def test_failure_path(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    dispatcher.error = ExecutionError("endpoint returned HTTP 502")

    clock.now = T0 + timedelta(minutes=5)
    summary = scheduler.run_once()

    after = service.get_job(cfg, job["uuid"])
    assert summary["failed"] == 1
    assert after["status"] == "failed"
    assert after["result"]["error"] == "endpoint returned HTTP 502"
    assert after["result"]["timestamp"]
    assert after["next_run"] == job["next_run"]
    assert parse_ts(after["last_run"]) == T0 + timedelta(minutes=5)

    # never retried automatically
    dispatcher.error = None
    clock.advance(hours=1)
    scheduler.run_once()
    assert dispatcher.calls == [job["uuid"]]


def test_unexpected_dispatch_error_fails_job(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    dispatcher.error = RuntimeError("kaboom")
    clock.now = T0 + timedelta(minutes=5)
    scheduler.run_once()
    after = service.get_job(cfg, job["uuid"])
    assert after["status"] == "failed"
    assert after["result"]["error"] == "kaboom"


def test_cancelled_job_is_not_picked_up(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    service.cancel_job(cfg, job["uuid"])

    clock.advance(hours=1)
    summary = scheduler.run_once()

    assert summary["jobs_due"] == 0
    assert dispatcher.calls == []
    assert service.get_job(cfg, job["uuid"])["status"] == "cancelled"


def test_cancel_while_running_is_not_rearmed(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    dispatcher.on_execute = lambda j: service.cancel_job(cfg, j.uuid)

    clock.now = T0 + timedelta(minutes=5)
    scheduler.run_once()

    after = service.get_job(cfg, job["uuid"])
    assert dispatcher.calls == [job["uuid"]]
    assert after["status"] == "cancelled"
    assert after["next_run"] == job["next_run"]
    assert parse_ts(after["last_run"]) == T0 + timedelta(minutes=5)
    assert after["result"]["status"] == "success"


def test_job_errors_are_isolated(cfg, scheduler, dispatcher, clock, monkeypatch):
    broken = _create(cfg, clock, name="broken")
    healthy = _create(cfg, clock, name="healthy")
    original = scheduler.lifecycle.finalize_success

    def finalize(job, result):
        if job.uuid == broken["uuid"]:
            raise StoreError("database is locked")
        return original(job, result)

    monkeypatch.setattr(scheduler.lifecycle, "finalize_success", finalize)
    clock.now = T0 + timedelta(minutes=5)
    summary = scheduler.run_once()

    assert summary["errors"] == 1
    assert summary["ok"] == 1
    # left as the last durable write made it
    assert service.get_job(cfg, broken["uuid"])["status"] == "running"
    assert service.get_job(cfg, healthy["uuid"])["status"] == "pending"


def test_running_job_never_claimed_twice(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock)
    clock.now = T0 + timedelta(minutes=5)
    claims = []
    dispatcher.on_execute = lambda j: claims.append(scheduler.lifecycle.claim(j.uuid))

    scheduler.run_once()

    assert claims == [False]
    assert dispatcher.calls == [job["uuid"]]


def test_overlapping_tick_is_skipped(cfg, scheduler, dispatcher, clock):
    _create(cfg, clock)
    clock.now = T0 + timedelta(minutes=5)
    inner = []
    dispatcher.on_execute = lambda j: inner.append(scheduler.run_once())

    scheduler.run_once()

    assert inner == [{"skipped_tick": True}]
    assert scheduler.state.skipped_ticks == 1


def test_worker_pool_is_bounded(cfg, scheduler, dispatcher, clock):
    for i in range(5):
        _create(cfg, clock, name=f"job-{i}")
    clock.now = T0 + timedelta(minutes=5)

    lock = threading.Lock()
    active = {"now": 0, "max": 0}

    def slow(job):
        with lock:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        time.sleep(0.05)
        with lock:
            active["now"] -= 1

    dispatcher.on_execute = slow
    summary = scheduler.run_once()

    assert summary["ok"] == 5
    assert 1 <= active["max"] <= cfg.max_workers


def test_max_jobs_per_tick(cfg, dispatcher, clock):
    from dataclasses import replace

    limited = Scheduler(replace(cfg, max_jobs_per_tick=2), dispatcher=dispatcher, clock=clock)
    try:
        for i in range(3):
            _create(cfg, clock, name=f"job-{i}")
        clock.now = T0 + timedelta(minutes=5)
        assert limited.run_once()["jobs_due"] == 2
        assert limited.run_once()["jobs_due"] == 1
    finally:
        limited.stop()


def test_start_polls_immediately(cfg, scheduler, dispatcher, clock):
    job = _create(cfg, clock, job_type="scheduled", schedule=(T0 - timedelta(minutes=1)).isoformat())

    scheduler.start()
    assert scheduler.running
    deadline = time.monotonic() + 5
    while not dispatcher.calls and time.monotonic() < deadline:
        time.sleep(0.02)
    scheduler.stop(timeout=5)

    assert dispatcher.calls == [job["uuid"]]
    assert not scheduler.running
    assert scheduler.state.started_at_utc is not None
    assert scheduler.state.last_tick_summary["ok"] == 1


def test_independent_schedulers(cfg, dispatcher, clock, tmp_path):
    from dataclasses import replace

    from agentcron.scheduler.db import dispose_engine

    other_url = f"sqlite:///{(tmp_path / 'other.db').as_posix()}"
    other_cfg = replace(cfg, database_url=other_url)
    repo.init_db(other_url)
    try:
        _create(other_cfg, clock)
        a = Scheduler(cfg, dispatcher=dispatcher, clock=clock)
        b = Scheduler(other_cfg, dispatcher=dispatcher, clock=clock)
        clock.now = T0 + timedelta(minutes=5)
        assert a.run_once()["jobs_due"] == 0
        assert b.run_once()["jobs_due"] == 1
        a.stop()
        b.stop()
    finally:
        dispose_engine(other_url)


def test_unrepresentable_next_run_fails_job(cfg, scheduler, dispatcher, clock):
    # stored directly, as an older row that skipped creation checks would be
    job = repo.insert_job(
        cfg.database_url,
        name="huge",
        job_type="recurring",
        schedule=T0.isoformat(),
        task_uuid="task-1",
        next_run=T0,
        interval_seconds=10**12,
    )

    clock.advance(minutes=1)
    summary = scheduler.run_once()

    after = service.get_job(cfg, job["uuid"])
    assert dispatcher.calls == [job["uuid"]]
    assert summary["errors"] == 0
    assert summary["failed"] == 1
    assert after["status"] == "failed"
    assert "out of range" in after["result"]["error"]
    assert after["next_run"] == job["next_run"]


def test_restart_refused_until_loop_exits(cfg, scheduler, dispatcher, clock):
    _create(cfg, clock, job_type="scheduled", schedule=T0.isoformat())
    entered = threading.Event()
    gate = threading.Event()

    def hold(job):
        entered.set()
        gate.wait(5)

    dispatcher.on_execute = hold
    try:
        scheduler.start()
        assert entered.wait(5)
        loop = scheduler._thread

        scheduler.stop(timeout=0.1)
        assert scheduler.running
        assert scheduler._thread is loop

        scheduler.start()
        assert scheduler._thread is loop
        assert scheduler._stop.is_set()
    finally:
        gate.set()

    scheduler.stop(timeout=5)
    assert not scheduler.running
    assert not loop.is_alive()
    assert len(dispatcher.calls) == 1
