"""Dead Letter Queue (DLQ) handler for deliveries the worker gave up on.

This module provides optional DLQ functionality that can be enabled/disabled
via configuration. When enabled, deliveries that exhausted their redelivery
attempts (or failed fatally) are stored for later inspection.

Usage:
    from services.execution.dlq import create_dlq_handler

    dlq = create_dlq_handler(backend, enabled=settings.dlq_enabled)
    await dlq.add_failed_message(message, queue_name, error)
"""

import json
from typing import List, Protocol

from constants import DLQ_KEY
from core.backend import BackendError, StateBackend
from core.logging import get_logger
from .errors import StoreError
from .models import DLQEntry, QueueMessage

logger = get_logger(__name__)


class DLQHandlerProtocol(Protocol):
    """Protocol for DLQ handlers (enables duck typing)."""

    async def add_failed_message(self, message: QueueMessage, queue: str,
                                 error: BaseException) -> bool:
        """Add a failed delivery to the DLQ."""
        ...

    async def list_entries(self) -> List[DLQEntry]:
        """Stored entries, oldest first."""
        ...

    @property
    def enabled(self) -> bool:
        """Whether DLQ is enabled."""
        ...


class NullDLQHandler:
    """No-op DLQ handler when DLQ is disabled.

    This follows the Null Object pattern - all operations succeed silently.
    """

    @property
    def enabled(self) -> bool:
        return False

    async def add_failed_message(self, message: QueueMessage, queue: str,
                                 error: BaseException) -> bool:
        """No-op: log and drop."""
        logger.debug("DLQ disabled, dropping failed message",
                     workflow_id=message.workflow_id, job=message.job_id, error=str(error))
        return True

    async def list_entries(self) -> List[DLQEntry]:
        return []


class DLQHandler:
    """Active DLQ handler that stores failed deliveries in the backend."""

    def __init__(self, backend: StateBackend):
        """Initialize DLQ handler.

        Args:
            backend: StateBackend used for persistence
        """
        self.backend = backend

    @property
    def enabled(self) -> bool:
        return True

    async def add_failed_message(self, message: QueueMessage, queue: str,
                                 error: BaseException) -> bool:
        """Add a failed delivery to the Dead Letter Queue.

        Args:
            message: The delivery being given up on
            queue: Queue it was consumed from
            error: Final error

        Returns:
            True if stored, False if the backend rejected the write
        """
        entry = DLQEntry.create(message, queue, error)
        try:
            await self.backend.hset(DLQ_KEY, entry.id, json.dumps(entry.to_dict()))
        except BackendError as e:
            logger.error("Failed to add message to DLQ", workflow_id=message.workflow_id,
                         job=message.job_id, error=str(e))
            return False

        logger.info("Message added to DLQ",
                    entry_id=entry.id,
                    workflow_id=entry.workflow_id,
                    job=entry.job_name,
                    attempts=entry.attempts,
                    error=entry.error[:200])
        return True

    async def list_entries(self) -> List[DLQEntry]:
        """Stored entries, oldest first."""
        try:
            raw = await self.backend.hgetall(DLQ_KEY)
        except BackendError as e:
            raise StoreError(f"Failed to read DLQ: {e}") from e
        entries = [DLQEntry.from_dict(json.loads(value)) for value in raw.values()]
        return sorted(entries, key=lambda entry: entry.created_at)


def create_dlq_handler(backend: StateBackend, enabled: bool = False) -> DLQHandlerProtocol:
    """Factory function to create appropriate DLQ handler.

    Args:
        backend: StateBackend instance
        enabled: Whether DLQ should be enabled

    Returns:
        DLQHandler if enabled, NullDLQHandler otherwise
    """
    if enabled:
        logger.info("DLQ enabled")
        return DLQHandler(backend)
    else:
        logger.debug("DLQ disabled")
        return NullDLQHandler()
