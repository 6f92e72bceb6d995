"""Execution coordinator: runs one (workflow id, job id) delivery.

This is the only entry point the queue needs. A delivery either:
- finds the job already succeeded and only retries advancement (a previous
  attempt finished the job but hit lock contention while enqueuing its
  outgoing jobs; business logic is never run twice), or
- resolves dependency payloads, runs the job's handler, records the outcome
  and, on success, advances the DAG.

Handler failures are persisted as `failed` before JobExecutionError is raised,
so the job's state is never ambiguous when the queue decides what to do next.
"""

import asyncio
import functools
import time

from core.logging import get_logger
from .advancement import DagAdvancer
from .errors import JobExecutionError, MissingDependency
from .models import ExecutionResult, Failed, Job, JobContext, Succeeded
from .registry import JobRegistry
from .resolver import DependencyResolver
from .state_machine import JobStateMachine
from .store import JobStore

logger = get_logger(__name__)


class ExecutionCoordinator:
    """Ties resolver, state machine, handler and advancement together."""

    def __init__(self, store: JobStore, resolver: DependencyResolver,
                 state_machine: JobStateMachine, advancer: DagAdvancer,
                 registry: JobRegistry):
        self.store = store
        self.resolver = resolver
        self.state_machine = state_machine
        self.advancer = advancer
        self.registry = registry

    async def perform(self, workflow_id: str, job_id: str) -> Succeeded:
        """Execute one job delivery.

        Returns:
            Succeeded with the job's output payload

        Raises:
            JobExecutionError: The job's handler raised (job persisted as failed)
            MissingDependency: An upstream output is missing (job persisted as failed)
            JobNotFoundError / StoreError / QueueError: Infrastructure failures
        """
        job = await self.store.find_job(workflow_id, job_id)

        if job.succeeded:
            logger.info("Job already succeeded, retrying advancement only",
                        workflow_id=workflow_id, job=job_id)
            await self.advancer.enqueue_outgoing_jobs(job)
            return Succeeded(job.output_payload)

        try:
            payloads = await self.resolver.resolve(job)
        except MissingDependency as e:
            logger.error("Dependency resolution failed", workflow_id=workflow_id,
                         job=job_id, dependency=e.dependency, reason=e.reason)
            await self.state_machine.fail(job, e)
            raise

        await self.state_machine.start(job)
        context = JobContext(
            workflow_id=workflow_id,
            job_name=job.name,
            params=job.params,
            payloads=payloads,
        )
        result = await self._execute(job, context)

        if isinstance(result, Failed):
            await self.state_machine.fail(job, result.error)
            raise JobExecutionError(workflow_id, job.name, result.error) from result.error

        await self.state_machine.finish(job, result.output)
        await self.advancer.enqueue_outgoing_jobs(job)
        return result

    async def _execute(self, job: Job, context: JobContext) -> ExecutionResult:
        """Run the job's handler, turning any exception into Failed."""
        start_time = time.time()
        try:
            handler = self.registry.get(job.klass)
            if asyncio.iscoroutinefunction(handler):
                output = await handler(context)
            else:
                loop = asyncio.get_running_loop()
                output = await loop.run_in_executor(None, functools.partial(handler, context))
        except Exception as e:
            logger.exception("Job handler failed", workflow_id=job.workflow_id,
                             job=job.name, klass=job.klass,
                             execution_time=round(time.time() - start_time, 4))
            return Failed(e)

        logger.info("Job handler completed", workflow_id=job.workflow_id, job=job.name,
                    klass=job.klass, execution_time=round(time.time() - start_time, 4))
        return Succeeded(output)
