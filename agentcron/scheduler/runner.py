from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional, Tuple

from agentcron.scheduler import repo
from agentcron.scheduler.config import SchedulerConfig
from agentcron.scheduler.dispatcher import Dispatcher, ExecutionDispatcher
from agentcron.scheduler.lifecycle import (
    OUTCOME_FAILED,
    OUTCOME_OK,
    OUTCOME_SKIPPED,
    Clock,
    JobLifecycle,
)
from agentcron.scheduler.models import SchedulerJob, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SchedulerRuntimeState:
    started_at_utc: Optional[str] = None
    last_tick_at_utc: Optional[str] = None
    last_tick_summary: Optional[Dict[str, Any]] = None
    skipped_ticks: int = 0


def _iso(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat()


class Scheduler:
    """Poll loop that feeds due jobs through the lifecycle on a worker pool.

    Each instance owns its own timer thread, stop event and pool, so several
    schedulers can live in one process (one per store).

    Ticks never overlap: the loop waits for a tick to finish before sleeping,
    and a :meth:`run_once` call made while another tick is in progress is
    skipped.
    """

    def __init__(
        self,
        cfg: SchedulerConfig,
        *,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cfg = cfg
        self.clock = clock or utcnow
        self.dispatcher = dispatcher or ExecutionDispatcher(cfg)
        self.lifecycle = JobLifecycle(cfg, self.dispatcher, clock=self.clock)
        self.state = SchedulerRuntimeState()

        self._stop = Event()
        self._tick_lock = Lock()
        self._pool_lock = Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler is already running!")
            return

        repo.init_db(self.cfg.database_url)
        self._stop.clear()
        self.state.started_at_utc = _iso(utcnow())
        self._thread = Thread(target=self._run_forever, name="scheduler-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and wait for in-flight jobs. Safe to call repeatedly.

        If the loop is still finishing a tick when ``timeout`` runs out, the
        scheduler stays ``running`` and ``start()`` refuses until a later
        ``stop()`` has joined it.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Scheduler loop still finishing a tick after %ss", timeout)
                return
            self._thread = None
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)
            logger.info("Scheduler shutdown complete")

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=int(self.cfg.max_workers), thread_name_prefix="scheduler-worker"
                )
            return self._pool

    def _run_forever(self) -> None:
        """Blocking loop: tick immediately, then once per interval."""
        logger.info(
            "Starting scheduler (tick=%ss, workers=%s, timezone=%s)",
            self.cfg.tick_seconds,
            self.cfg.max_workers,
            self.cfg.timezone,
        )
        while not self._stop.is_set():
            tick_started = time.monotonic()
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Error checking jobs")

            # Sleep for tick interval (minus time spent), but wake quickly on stop.
            elapsed = time.monotonic() - tick_started
            self._stop.wait(timeout=max(0.2, float(self.cfg.tick_seconds) - elapsed))

    def run_once(self) -> Dict[str, Any]:
        """Run one poll cycle, or skip it if another one is in progress."""
        if not self._tick_lock.acquire(blocking=False):
            self.state.skipped_ticks += 1
            logger.warning("Previous tick still in progress, skipping this one")
            return {"skipped_tick": True}
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> Dict[str, Any]:
        now = self.clock()
        self.state.last_tick_at_utc = _iso(now)
        summary = {"jobs_due": 0, "executed": 0, "ok": 0, "failed": 0, "skipped": 0, "errors": 0}

        due = repo.find_due_jobs(self.cfg.database_url, now=now, limit=int(self.cfg.max_jobs_per_tick))
        summary["jobs_due"] = len(due)
        if not due:
            logger.debug("No due jobs")
            self.state.last_tick_summary = summary
            return summary

        logger.info("Found %d due jobs", len(due))
        pool = self._get_pool()
        submitted: List[Tuple[SchedulerJob, Future]] = [
            (job, pool.submit(self.lifecycle.process, job)) for job in due
        ]

        for job, fut in submitted:
            try:
                outcome = fut.result()
            except Exception:  # noqa: BLE001
                logger.exception("Error processing job %s", job.uuid)
                summary["errors"] += 1
                continue

            if outcome == OUTCOME_SKIPPED:
                summary["skipped"] += 1
                continue
            summary["executed"] += 1
            if outcome == OUTCOME_OK:
                summary["ok"] += 1
            elif outcome == OUTCOME_FAILED:
                summary["failed"] += 1

        logger.info("Tick finished: %s", summary)
        self.state.last_tick_summary = summary
        return summary
