"""Job class registry.

Maps a job's class reference (`Job.klass`) to the handler implementing its
business logic.

Usage:
    from services.execution.registry import job_registry

    @job_registry.register("FetchReport")
    async def fetch_report(ctx: JobContext) -> dict:
        return {"rows": 42}

    handler = job_registry.get("FetchReport")

Handlers take a JobContext and return the job's output payload. Both async and
plain functions are accepted; plain functions run in the default executor.

A deployed worker finds its handlers by importing the modules listed in
`DAG_JOB_MODULES` (see `load_job_modules`); importing a module runs its
`@job_registry.register` decorators.
"""

import importlib
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Union

from core.logging import get_logger
from .errors import UnknownJobClassError
from .models import JobContext

logger = get_logger(__name__)

JobHandler = Callable[[JobContext], Union[Awaitable[Any], Any]]


class JobRegistry:
    """Name -> handler lookup table."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, klass: str):
        """Decorator registering a handler under `klass`."""
        def decorator(func: JobHandler) -> JobHandler:
            self.add(klass, func)
            return func
        return decorator

    def add(self, klass: str, handler: JobHandler) -> None:
        if klass in self._handlers:
            logger.warning("Job class already registered, overwriting", klass=klass)
        self._handlers[klass] = handler
        logger.debug("Registered job class", klass=klass)

    def get(self, klass: str) -> JobHandler:
        """Look up a handler.

        Raises:
            UnknownJobClassError: If nothing is registered under `klass`
        """
        if klass not in self._handlers:
            raise UnknownJobClassError(klass, self.list())
        return self._handlers[klass]

    def has(self, klass: str) -> bool:
        return klass in self._handlers

    def list(self) -> List[str]:
        return list(self._handlers)

    def clear(self) -> None:
        """Remove every handler (for testing)."""
        self._handlers.clear()


# Process-wide registry used by the container
job_registry = JobRegistry()


def load_job_modules(modules: Sequence[str]) -> List[str]:
    """Import handler modules so their register decorators run.

    Raises:
        ImportError: If a module cannot be imported
    """
    loaded = []
    for name in modules:
        importlib.import_module(name)
        loaded.append(name)
        logger.info("Loaded job module", module=name)
    return loaded
