"""Collects upstream outputs before a job runs."""

from typing import List

from core.logging import get_logger
from .errors import JobNotFoundError, MissingDependency
from .models import DependencyPayload, Job
from .store import JobStore

logger = get_logger(__name__)


class DependencyResolver:
    """Loads the output of every job in `incoming`, in order."""

    def __init__(self, store: JobStore):
        self.store = store

    async def resolve(self, job: Job) -> List[DependencyPayload]:
        """Build one payload record per upstream job.

        Upstream jobs are expected to have succeeded already; advancement only
        enqueues a job once all of its parents have. A parent that is missing,
        or that has no output because it never succeeded, is reported as a
        MissingDependency rather than handed to the job as None.

        Raises:
            MissingDependency: If an upstream job is absent or has no output
        """
        payloads = []
        for name in job.incoming:
            try:
                upstream = await self.store.find_job(job.workflow_id, name)
            except JobNotFoundError as e:
                raise MissingDependency(job.workflow_id, job.name, name, "not found") from e

            if not upstream.succeeded:
                raise MissingDependency(
                    job.workflow_id, job.name, name,
                    f"no output (state={upstream.state.value})",
                )

            payloads.append(DependencyPayload(
                id=upstream.name,
                klass=upstream.klass,
                output=upstream.output_payload,
            ))

        logger.debug("Resolved dependency payloads", workflow_id=job.workflow_id,
                     job=job.name, count=len(payloads))
        return payloads
