"""Queue runtime over backend lists and a delay sorted set.

Immediate deliveries are pushed onto `dag:queue:{name}`. Delayed deliveries
are parked in `dag:schedule`, scored by due time, until a worker's scheduler
loop promotes them onto their queue. Delivery is at-least-once: the same
message may reach workers more than once, and the coordinator is built to
tolerate that.
"""

import json
import time
import uuid
from typing import List, Optional, Sequence, Tuple

from constants import QUEUE_KEY, SCHEDULE_KEY, queue_key
from core.backend import BackendError, StateBackend
from core.logging import get_logger
from .errors import QueueError
from .models import QueueMessage

logger = get_logger(__name__)


class QueueRuntime:
    """Delivers (workflow id, job id) execution requests to workers."""

    def __init__(self, backend: StateBackend):
        self.backend = backend

    async def enqueue(self, queue_name: str, message: QueueMessage) -> None:
        """Deliver a message as soon as a worker is free."""
        try:
            await self.backend.rpush(queue_key(queue_name), message.to_json())
        except BackendError as e:
            raise QueueError(f"Failed to enqueue on {queue_name}: {e}") from e
        logger.info("Message enqueued", queue=queue_name,
                    workflow_id=message.workflow_id, job=message.job_id,
                    attempt=message.attempt)

    async def schedule_after(self, delay: float, queue_name: str,
                             message: QueueMessage) -> None:
        """Deliver a message on `queue_name` once `delay` seconds have passed."""
        envelope = json.dumps({
            # Unique id keeps identical messages as distinct sorted-set members
            "id": str(uuid.uuid4()),
            "queue": queue_name,
            "message": message.to_json(),
        })
        due = time.time() + max(0.0, delay)
        try:
            await self.backend.zadd(SCHEDULE_KEY, envelope, due)
        except BackendError as e:
            raise QueueError(f"Failed to schedule on {queue_name}: {e}") from e
        logger.info("Message scheduled", queue=queue_name, delay=delay,
                    workflow_id=message.workflow_id, job=message.job_id,
                    attempt=message.attempt)

    async def promote_due(self, now: Optional[float] = None, limit: int = 100) -> int:
        """Move scheduled messages whose time has come onto their queues.

        Returns:
            Number of messages promoted
        """
        now = time.time() if now is None else now
        try:
            envelopes = await self.backend.zpop_due(SCHEDULE_KEY, now, limit)
            for raw in envelopes:
                envelope = json.loads(raw)
                await self.backend.rpush(queue_key(envelope["queue"]), envelope["message"])
        except BackendError as e:
            raise QueueError(f"Failed to promote scheduled messages: {e}") from e
        if envelopes:
            logger.debug("Promoted scheduled messages", count=len(envelopes))
        return len(envelopes)

    async def dequeue(self, queue_names: Sequence[str],
                      timeout: float) -> Optional[Tuple[str, str]]:
        """Pop the next raw message from the first non-empty queue.

        Returns:
            (queue name, raw message body) or None on timeout
        """
        keys = [queue_key(name) for name in queue_names]
        try:
            item = await self.backend.blpop(keys, timeout)
        except BackendError as e:
            raise QueueError(f"Failed to dequeue from {list(queue_names)}: {e}") from e
        if item is None:
            return None
        key, body = item
        return key[len(QUEUE_KEY) + 1:], body

    async def pending(self, queue_name: str) -> List[QueueMessage]:
        """Messages waiting on a queue, head first."""
        try:
            raw = await self.backend.lrange(queue_key(queue_name))
        except BackendError as e:
            raise QueueError(f"Failed to read {queue_name}: {e}") from e
        return [QueueMessage.from_json(body) for body in raw]

    async def scheduled(self) -> List[Tuple[str, QueueMessage, float]]:
        """Delayed messages as (queue name, message, due timestamp), earliest first."""
        try:
            members = await self.backend.zmembers(SCHEDULE_KEY)
        except BackendError as e:
            raise QueueError(f"Failed to read scheduled messages: {e}") from e
        result = []
        for raw, due in members:
            envelope = json.loads(raw)
            result.append((envelope["queue"], QueueMessage.from_json(envelope["message"]), due))
        return result
