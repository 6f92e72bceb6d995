"""Lease-based distributed locks.

A lock is a backend key set with NX and a lease (PX). Acquisition polls every
`polling_interval` seconds until `wait_timeout` runs out; release deletes the
key only while it still holds this holder's token, so an expired lease that was
picked up by another worker is never released from under it.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from constants import lock_key
from core.backend import StateBackend
from core.logging import get_logger
from .errors import LockTimeoutError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LockGuard:
    """Proof of lock ownership, valid until `expires_at` (monotonic clock)."""
    name: str
    token: str
    acquired_at: float
    expires_at: float


class LockService:
    """Distributed mutual exclusion keyed by string."""

    def __init__(self, backend: StateBackend, polling_interval: float = 0.3):
        self.backend = backend
        self.polling_interval = polling_interval

    @asynccontextmanager
    async def acquire(self, name: str, wait_timeout: float, lease_duration: float,
                      polling_interval: Optional[float] = None) -> AsyncIterator[LockGuard]:
        """Hold the named lock for the body of an `async with` block.

        Args:
            name: Lock name (e.g. "enqueue_outgoing_jobs:{workflow}:{job}")
            wait_timeout: Seconds to keep polling before giving up
            lease_duration: Seconds after which the backend frees the lock
            polling_interval: Seconds between attempts; defaults to the
                service's own interval

        Yields:
            LockGuard for the held lock

        Raises:
            LockTimeoutError: If the lock is still held by someone else
                after wait_timeout
        """
        poll = self.polling_interval if polling_interval is None else polling_interval
        key = lock_key(name)
        token = str(uuid.uuid4())
        started = time.monotonic()
        deadline = started + wait_timeout

        while not await self.backend.set_if_absent(key, token, lease_duration):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Lock wait timed out", lock_name=name,
                               wait_timeout=wait_timeout)
                raise LockTimeoutError(name, wait_timeout)
            await asyncio.sleep(min(poll, remaining))

        acquired_at = time.monotonic()
        guard = LockGuard(
            name=name,
            token=token,
            acquired_at=acquired_at,
            expires_at=acquired_at + lease_duration,
        )
        logger.debug("Lock acquired", lock_name=name, token=token[:8],
                     waited=round(acquired_at - started, 4))
        try:
            yield guard
        finally:
            released = await self.backend.delete_if_equals(key, token)
            if released:
                logger.debug("Lock released", lock_name=name, token=token[:8])
            else:
                logger.warning("Lock lease expired before release", lock_name=name,
                               lease_duration=lease_duration)

    async def with_lock(self, name: str, wait_timeout: float, lease_duration: float,
                        critical_section: Callable[[], Awaitable[T]],
                        polling_interval: Optional[float] = None) -> T:
        """Run `critical_section` while holding the named lock and return its result."""
        async with self.acquire(name, wait_timeout, lease_duration, polling_interval):
            return await critical_section()
