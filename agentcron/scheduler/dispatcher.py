from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Protocol

import requests

from agentcron.scheduler import repo
from agentcron.scheduler.config import SchedulerConfig
from agentcron.scheduler.errors import ExecutionError
from agentcron.scheduler.models import SchedulerJob, utcnow

logger = logging.getLogger(__name__)

INSTRUCTION_TEMPLATE = (
    "The system has asked you to do the following task due to the schedule: {description}. "
    "\n\n Ensure that the plan of tasks and actions is valid so you can perform it."
)


class Dispatcher(Protocol):
    def execute(self, job: SchedulerJob) -> Any: ...


def job_description(job: SchedulerJob) -> str:
    return job.description or str(job.name)


def build_instruction(job: SchedulerJob) -> str:
    return INSTRUCTION_TEMPLATE.format(description=job_description(job))


def _job_timeout(job: SchedulerJob, default: float) -> float:
    meta = job.metadata_ if isinstance(job.metadata_, dict) else {}
    raw = meta.get("timeout")
    if raw is None:
        return float(default)
    try:
        timeout = float(raw)
    except (TypeError, ValueError):
        logger.warning("Job %s has invalid metadata.timeout %r, using %ss", job.uuid, raw, default)
        return float(default)
    return timeout if timeout > 0 else float(default)


def _response_body(resp: requests.Response) -> Any:
    content_type = resp.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text or None


class ExecutionDispatcher:
    """Runs one fire of a job against the execution endpoint.

    Each call creates a fresh execution record (and conversation id), sends the
    job's instruction to the endpoint and returns the response body, which
    becomes the job's ``result``. The execution record keeps the full run
    details. It never touches the job's status or ``next_run``.
    """

    def __init__(self, cfg: SchedulerConfig, *, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self._http = session or requests

    def execute(self, job: SchedulerJob) -> Any:
        conversation_uuid = str(uuid.uuid4())
        instruction = build_instruction(job)
        execution = repo.create_execution(
            self.cfg.database_url,
            job_uuid=job.uuid,
            task_uuid=job.task_uuid,
            conversation_uuid=conversation_uuid,
            instruction=instruction,
        )
        execution_uuid = execution["uuid"]
        logger.debug("Executing job %s as execution %s", job.uuid, execution_uuid)

        try:
            body = self._call_endpoint(
                execution_uuid,
                conversation_uuid,
                instruction,
                timeout=_job_timeout(job, self.cfg.execution_timeout_seconds),
            )
        except ExecutionError as exc:
            repo.finish_execution(self.cfg.database_url, execution_uuid, ok=False, error=str(exc))
            raise

        record = {
            "status": "success",
            "execution_time": utcnow().isoformat(),
            "job_id": job.uuid,
            "task_id": job.task_uuid,
            "execution_id": execution_uuid,
            "conversation_id": conversation_uuid,
            "response": body,
        }
        repo.finish_execution(self.cfg.database_url, execution_uuid, ok=True, result=record)
        return body

    def _call_endpoint(
        self, execution_uuid: str, conversation_uuid: str, instruction: str, *, timeout: float
    ) -> Any:
        if not self.cfg.api_key:
            raise ExecutionError("No API key configured for the execution endpoint")

        payload = {
            "execution_record_id": execution_uuid,
            "conversation_id": conversation_uuid,
            "instruction_text": instruction,
            "messages": [{"role": "user", "content": instruction}],
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.cfg.api_key}",
        }
        try:
            resp = self._http.post(self.cfg.execution_url, json=payload, headers=headers, timeout=timeout)
        except requests.Timeout as e:
            raise ExecutionError(f"Execution endpoint timed out after {timeout:g}s") from e
        except requests.RequestException as e:
            raise ExecutionError(f"Execution endpoint unreachable: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise ExecutionError(f"Execution endpoint returned HTTP {resp.status_code}: {resp.text[:500]}")

        logger.info("Execution endpoint accepted execution %s", execution_uuid)
        return _response_body(resp)
