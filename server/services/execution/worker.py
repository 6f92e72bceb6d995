"""Queue worker.

Runs two background tasks:
- a scheduler loop that promotes due delayed messages onto their queues, and
- a consume loop that pops (workflow id, job id) messages and hands each to
  the ExecutionCoordinator, up to `concurrency` at a time.

The worker owns the redelivery policy: failed executions are redelivered with
exponential backoff until `RetryPolicy.max_attempts`, then dead-lettered.
Missing dependencies and unknown jobs are dead-lettered straight away since a
redelivery cannot fix them.
"""

import asyncio
from typing import Sequence, Set

from core.logging import get_logger
from .coordinator import ExecutionCoordinator
from .dlq import DLQHandlerProtocol
from .errors import JobNotFoundError, MissingDependency, QueueError
from .models import QueueMessage, RetryPolicy
from .queue import QueueRuntime

logger = get_logger(__name__)


class Worker:
    """Consumes execution requests and applies the redelivery policy."""

    def __init__(self, coordinator: ExecutionCoordinator, queue: QueueRuntime,
                 dlq: DLQHandlerProtocol, retry_policy: RetryPolicy,
                 queues: Sequence[str], concurrency: int = 5,
                 dequeue_timeout: float = 1.0, polling_interval: float = 0.3):
        """Initialize worker.

        Args:
            coordinator: Runs each delivered job
            queue: Queue runtime to consume from and redeliver through
            dlq: Dead letter handler for exhausted deliveries
            retry_policy: Redelivery backoff and attempt limit
            queues: Queue names to listen on, in priority order
            concurrency: Max messages processed at the same time
            dequeue_timeout: Seconds a single dequeue blocks
            polling_interval: Seconds between scheduled-message promotions
        """
        self.coordinator = coordinator
        self.queue = queue
        self.dlq = dlq
        self.retry_policy = retry_policy
        self.queues = list(queues)
        self.concurrency = concurrency
        self.dequeue_timeout = dequeue_timeout
        self.polling_interval = polling_interval

        self._running = False
        self._semaphore = asyncio.Semaphore(concurrency)
        self._loops: list = []
        self._in_flight: Set[asyncio.Task] = set()

        self._processed = 0
        self._failed = 0
        self._retried = 0
        self._dead_lettered = 0

    async def start(self) -> None:
        """Start the scheduler and consume loops."""
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        self._loops = [
            asyncio.create_task(self._scheduler_loop()),
            asyncio.create_task(self._consume_loop()),
        ]
        logger.info("Worker started", queues=self.queues, concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop consuming and wait for in-flight messages to finish."""
        self._running = False
        for task in self._loops:
            task.cancel()
        for task in self._loops:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loops = []

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Worker stopped", **self.stats)

    async def run(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.gather(*self._loops)
        finally:
            await self.stop()

    async def _scheduler_loop(self) -> None:
        """Promote due delayed messages every polling interval."""
        while self._running:
            try:
                await self.queue.promote_due()
            except QueueError as e:
                logger.error("Scheduled message promotion failed", error=str(e))
            await asyncio.sleep(self.polling_interval)

    async def _consume_loop(self) -> None:
        """Pop messages and process them concurrently."""
        while self._running:
            await self._semaphore.acquire()
            try:
                item = await self.queue.dequeue(self.queues, self.dequeue_timeout)
            except QueueError as e:
                self._semaphore.release()
                logger.error("Dequeue failed", error=str(e))
                await asyncio.sleep(self.polling_interval)
                continue

            if item is None:
                self._semaphore.release()
                continue

            task = asyncio.create_task(self._process_and_release(*item))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _process_and_release(self, queue_name: str, body: str) -> None:
        try:
            await self.process(queue_name, body)
        finally:
            self._semaphore.release()

    async def drain(self, timeout: float = 0.01) -> int:
        """Process messages one by one until the queues and due schedule are empty.

        Returns:
            Number of messages processed
        """
        count = 0
        while True:
            await self.queue.promote_due()
            item = await self.queue.dequeue(self.queues, timeout)
            if item is None:
                return count
            await self.process(*item)
            count += 1

    async def process(self, queue_name: str, body: str) -> None:
        """Run one raw message through the coordinator and apply the redelivery policy."""
        try:
            message = QueueMessage.from_json(body)
        except ValueError as e:
            self._failed += 1
            logger.error("Dropping malformed message", queue=queue_name, error=str(e))
            return

        try:
            await self.coordinator.perform(message.workflow_id, message.job_id)
            self._processed += 1
        except (MissingDependency, JobNotFoundError) as e:
            self._failed += 1
            logger.error("Fatal delivery failure", workflow_id=message.workflow_id,
                         job=message.job_id, error=str(e))
            await self._dead_letter(message, queue_name, e)
        except Exception as e:
            self._failed += 1
            logger.error("Delivery failed", workflow_id=message.workflow_id,
                         job=message.job_id, attempt=message.attempt,
                         error_type=type(e).__name__, error=str(e))
            await self._redeliver(message, queue_name, e)

    async def _redeliver(self, message: QueueMessage, queue_name: str,
                         error: Exception) -> None:
        if not self.retry_policy.should_retry(message.attempt):
            await self._dead_letter(message, queue_name, error)
            return

        delay = self.retry_policy.calculate_delay(message.attempt)
        try:
            await self.queue.schedule_after(delay, queue_name, message.next_attempt())
        except QueueError as e:
            logger.error("Redelivery could not be scheduled", workflow_id=message.workflow_id,
                         job=message.job_id, error=str(e))
            return
        self._retried += 1
        logger.info("Redelivery scheduled", workflow_id=message.workflow_id,
                    job=message.job_id, next_attempt=message.attempt + 1, delay=delay)

    async def _dead_letter(self, message: QueueMessage, queue_name: str,
                           error: Exception) -> None:
        if await self.dlq.add_failed_message(message, queue_name, error):
            self._dead_lettered += 1
        logger.warning("Delivery abandoned", workflow_id=message.workflow_id,
                       job=message.job_id, attempts=message.attempt + 1,
                       dlq_enabled=self.dlq.enabled)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        """Worker counters."""
        return {
            "running": self._running,
            "processed": self._processed,
            "failed": self._failed,
            "retried": self._retried,
            "dead_lettered": self._dead_lettered,
            "in_flight": len(self._in_flight),
        }

