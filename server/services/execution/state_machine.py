"""Job lifecycle transitions.

    pending -> enqueued -> running -> succeeded
                                   -> failed
    failed -> running   (redelivered job is re-attempted)

Every transition mutates the job and then persists it, so the new state is
visible to other workers as soon as the call returns. `start`, `finish` and
`fail` also re-read the stored job first and refuse to touch one that another
delivery already finished. Only the worker currently
executing a job drives its start/finish/fail transitions; `enqueue` is driven
by advancement under the downstream job's lock.
"""

import time
from typing import Any

from core.logging import get_logger, log_job_transition
from .errors import InvalidTransitionError
from .models import Job, JobState
from .store import JobStore

logger = get_logger(__name__)


class JobStateMachine:
    """Applies and persists job state transitions."""

    def __init__(self, store: JobStore):
        self.store = store

    async def enqueue(self, job: Job) -> Job:
        """pending -> enqueued."""
        if not job.pending:
            raise InvalidTransitionError(job.name, job.state.value, "enqueue")
        previous = job.state
        job.state = JobState.ENQUEUED
        job.enqueued_at = time.time()
        await self._persist(job, previous)
        return job

    async def start(self, job: Job) -> Job:
        """Any state but succeeded -> running."""
        if job.succeeded:
            raise InvalidTransitionError(job.name, job.state.value, "start")
        await self._ensure_not_succeeded(job, "start")
        previous = job.state
        job.state = JobState.RUNNING
        job.started_at = time.time()
        job.finished_at = None
        job.failed_at = None
        job.error = None
        await self._persist(job, previous)
        return job

    async def finish(self, job: Job, output: Any) -> Job:
        """running -> succeeded, recording the job's output once."""
        if not job.running:
            raise InvalidTransitionError(job.name, job.state.value, "finish")
        await self._ensure_not_succeeded(job, "finish")
        previous = job.state
        job.state = JobState.SUCCEEDED
        job.output_payload = output
        job.finished_at = time.time()
        await self._persist(job, previous)
        return job

    async def fail(self, job: Job, error: BaseException) -> Job:
        """Any state but succeeded -> failed."""
        if job.succeeded:
            raise InvalidTransitionError(job.name, job.state.value, "fail",
                                         detail="succeeded jobs are immutable")
        await self._ensure_not_succeeded(job, "fail")
        previous = job.state
        job.state = JobState.FAILED
        job.failed_at = time.time()
        job.error = f"{type(error).__name__}: {error}"
        await self._persist(job, previous, error=job.error)
        return job

    async def _ensure_not_succeeded(self, job: Job, transition: str) -> None:
        """Reject the transition if another delivery already stored the job as succeeded.

        The check and the following write are two backend calls, not one atomic
        step; it narrows the window for a stale copy to overwrite a succeeded job
        rather than closing it.
        """
        stored = await self.store.find_job(job.workflow_id, job.name)
        if stored.succeeded:
            raise InvalidTransitionError(job.name, stored.state.value, transition,
                                         detail="stored job already succeeded")

    async def _persist(self, job: Job, previous: JobState, **kwargs) -> None:
        await self.store.persist_job(job.workflow_id, job)
        log_job_transition(logger, job.workflow_id, job.name,
                           previous.value, job.state.value, **kwargs)
