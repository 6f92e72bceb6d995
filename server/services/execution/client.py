"""Workflow client: persist, start and inspect workflows.

Starting a workflow is always an explicit caller decision; nothing in the
execution engine starts one on its own.
"""

from typing import List

from core.logging import get_logger
from .models import Job, QueueMessage, Workflow, WorkflowStatus
from .queue import QueueRuntime
from .state_machine import JobStateMachine
from .store import JobStore

logger = get_logger(__name__)


class DagClient:
    """Facade used by API routes and scripts."""

    def __init__(self, store: JobStore, queue: QueueRuntime,
                 state_machine: JobStateMachine):
        self.store = store
        self.queue = queue
        self.state_machine = state_machine

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Persist a workflow built with Workflow.add_job."""
        await self.store.persist_workflow(workflow)
        return workflow

    async def start_workflow(self, workflow_id: str) -> List[str]:
        """Enqueue every initial job that is still pending.

        Returns:
            Names of the jobs enqueued by this call
        """
        workflow = await self.store.find_workflow(workflow_id)
        enqueued = []
        for job in workflow.initial_jobs():
            if not job.pending:
                continue
            await self.enqueue_job(job)
            enqueued.append(job.name)

        logger.info("Workflow started", workflow_id=workflow_id, enqueued=enqueued)
        return enqueued

    async def enqueue_job(self, job: Job) -> None:
        """Deliver a pending job and mark it enqueued."""
        await self.queue.enqueue(job.queue, QueueMessage(job.workflow_id, job.name))
        await self.state_machine.enqueue(job)

    async def find_workflow(self, workflow_id: str) -> Workflow:
        return await self.store.find_workflow(workflow_id)

    async def find_job(self, workflow_id: str, name: str) -> Job:
        return await self.store.find_job(workflow_id, name)

    async def workflow_status(self, workflow_id: str) -> WorkflowStatus:
        workflow = await self.store.find_workflow(workflow_id)
        return workflow.status
