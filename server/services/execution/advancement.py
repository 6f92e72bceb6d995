"""Enqueue a finished job's ready downstream jobs exactly once.

Several parents of the same child can succeed at the same time and each will
try to enqueue it. The enqueue decision for a child is therefore taken under a
lock keyed by the child (not the parent), and the child is re-read inside the
critical section: whichever parent gets the lock first sees the child pending,
enqueues it and persists `enqueued`; every later parent sees `enqueued` and
skips it.

If any child's lock cannot be acquired in time, the rest of the pass is
abandoned and the whole pass for the parent is redelivered after
`advancement_retry_delay`. The redelivery lands in the coordinator's
already-succeeded path, which only re-runs this pass.
"""

from constants import enqueue_outgoing_lock_name
from core.logging import get_logger
from .errors import LockTimeoutError
from .locks import LockService
from .models import AdvancementResult, ExecutionConfig, Job, QueueMessage
from .queue import QueueRuntime
from .state_machine import JobStateMachine
from .store import JobStore

logger = get_logger(__name__)


class DagAdvancer:
    """Fans a succeeded job out to its outgoing jobs."""

    def __init__(self, store: JobStore, locks: LockService, queue: QueueRuntime,
                 state_machine: JobStateMachine, config: ExecutionConfig):
        self.store = store
        self.locks = locks
        self.queue = queue
        self.state_machine = state_machine
        self.config = config

    async def enqueue_outgoing_jobs(self, job: Job) -> AdvancementResult:
        """Enqueue every outgoing job of `job` whose dependencies have all succeeded.

        Never raises LockTimeoutError; contention turns into a rescheduled pass.
        Store and queue failures propagate.
        """
        result = AdvancementResult(job_name=job.name)

        try:
            for name in job.outgoing:
                lock_name = enqueue_outgoing_lock_name(job.workflow_id, name)
                async with self.locks.acquire(lock_name,
                                              wait_timeout=self.config.lock_wait_timeout,
                                              lease_duration=self.config.locking_duration,
                                              polling_interval=self.config.polling_interval):
                    if await self._enqueue_if_ready(job.workflow_id, name):
                        result.enqueued.append(name)
        except LockTimeoutError as e:
            await self._reschedule(job, e)
            result.rescheduled = True

        logger.info("Advanced outgoing jobs", workflow_id=job.workflow_id, job=job.name,
                    outgoing=job.outgoing, enqueued=result.enqueued,
                    rescheduled=result.rescheduled)
        return result

    async def _enqueue_if_ready(self, workflow_id: str, name: str) -> bool:
        """Critical section: re-read the downstream job and enqueue it if ready."""
        downstream = await self.store.find_job(workflow_id, name)
        if not await self._ready_to_start(downstream):
            return False

        # Push precedes the enqueued persist; a failure between the two can
        # only duplicate a delivery, never strand the child.
        await self.queue.enqueue(downstream.queue, QueueMessage(workflow_id, name))
        await self.state_machine.enqueue(downstream)
        return True

    async def _ready_to_start(self, job: Job) -> bool:
        """A job is ready while still pending and once all its parents succeeded."""
        if not job.pending:
            logger.debug("Outgoing job already past pending", workflow_id=job.workflow_id,
                         job=job.name, state=job.state.value)
            return False
        for parent_name in job.incoming:
            parent = await self.store.find_job(job.workflow_id, parent_name)
            if not parent.succeeded:
                logger.debug("Outgoing job waiting on parent", workflow_id=job.workflow_id,
                             job=job.name, parent=parent_name, parent_state=parent.state.value)
                return False
        return True

    async def _reschedule(self, job: Job, error: LockTimeoutError) -> None:
        logger.warning("Lock contention while advancing, rescheduling",
                       workflow_id=job.workflow_id, job=job.name,
                       lock_name=error.name, delay=self.config.advancement_retry_delay)
        await self.queue.schedule_after(
            self.config.advancement_retry_delay,
            job.queue,
            QueueMessage(job.workflow_id, job.name),
        )
