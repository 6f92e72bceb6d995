"""Job and workflow persistence.

Key schema:
    dag:jobs:{workflow_id}  -> HASH {job name -> Job JSON}
    dag:workflows           -> HASH {workflow id -> Workflow JSON}

Writes are plain overwrites by id; there is no compare-and-set. The enqueue
decision for a downstream job is the only write that races, and it is guarded
by the per-job lock in advancement.py.
"""

import json

from constants import WORKFLOWS_KEY, jobs_key
from core.backend import BackendError, StateBackend
from core.logging import get_logger
from .errors import JobNotFoundError, StoreError, WorkflowNotFoundError
from .models import Job, Workflow

logger = get_logger(__name__)


class JobStore:
    """Backend-agnostic store for jobs and workflows."""

    def __init__(self, backend: StateBackend):
        self.backend = backend

    async def find_job(self, workflow_id: str, name: str) -> Job:
        """Load a job by (workflow id, name).

        Raises:
            JobNotFoundError: If the workflow has no such job
            StoreError: If the backend fails or the record is corrupt
        """
        try:
            raw = await self.backend.hget(jobs_key(workflow_id), name)
        except BackendError as e:
            raise StoreError(f"Failed to load job {workflow_id}/{name}: {e}") from e

        if raw is None:
            raise JobNotFoundError(workflow_id, name)

        try:
            return Job.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Corrupt job record", workflow_id=workflow_id, job=name, error=str(e))
            raise StoreError(f"Corrupt job record {workflow_id}/{name}: {e}") from e

    async def persist_job(self, workflow_id: str, job: Job) -> None:
        """Overwrite the stored job with the given state."""
        try:
            await self.backend.hset(jobs_key(workflow_id), job.name, job.to_json())
        except BackendError as e:
            raise StoreError(f"Failed to persist job {workflow_id}/{job.name}: {e}") from e
        logger.debug("Persisted job", workflow_id=workflow_id, job=job.name,
                     state=job.state.value)

    async def persist_workflow(self, workflow: Workflow) -> None:
        """Persist the workflow record and every one of its jobs."""
        try:
            await self.backend.hset_many(
                jobs_key(workflow.id),
                {name: job.to_json() for name, job in workflow.jobs.items()},
            )
            await self.backend.hset(WORKFLOWS_KEY, workflow.id, json.dumps(workflow.to_dict()))
        except BackendError as e:
            raise StoreError(f"Failed to persist workflow {workflow.id}: {e}") from e
        logger.info("Persisted workflow", workflow_id=workflow.id, jobs=len(workflow.jobs))

    async def find_workflow(self, workflow_id: str) -> Workflow:
        """Load a workflow and all of its jobs.

        Raises:
            WorkflowNotFoundError: If no workflow record exists
        """
        try:
            raw = await self.backend.hget(WORKFLOWS_KEY, workflow_id)
            if raw is None:
                raise WorkflowNotFoundError(workflow_id)
            raw_jobs = await self.backend.hgetall(jobs_key(workflow_id))
        except BackendError as e:
            raise StoreError(f"Failed to load workflow {workflow_id}: {e}") from e

        try:
            jobs = {name: Job.from_json(value) for name, value in raw_jobs.items()}
            return Workflow.from_dict(json.loads(raw), jobs)
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Corrupt workflow record {workflow_id}: {e}") from e
