"""Execution engine package.

Distributed DAG job execution with:
- Per-job state machine persisted on every transition
- Dependency payload resolution before a job runs
- Exactly-once enqueue of downstream jobs under per-child Redis locks
- Rescheduled advancement on lock contention
- Queue worker with exponential redelivery and optional DLQ
"""

from .models import (
    JobState,
    WorkflowStatus,
    Job,
    Workflow,
    QueueMessage,
    DependencyPayload,
    JobContext,
    Succeeded,
    Failed,
    ExecutionResult,
    AdvancementResult,
    ExecutionConfig,
    RetryPolicy,
    DLQEntry,
)
from .errors import (
    DagExecutionError,
    StoreError,
    JobNotFoundError,
    WorkflowNotFoundError,
    QueueError,
    MissingDependency,
    JobExecutionError,
    LockTimeoutError,
    InvalidTransitionError,
    UnknownJobClassError,
)
from .store import JobStore
from .locks import LockService, LockGuard
from .queue import QueueRuntime
from .state_machine import JobStateMachine
from .resolver import DependencyResolver
from .advancement import DagAdvancer
from .registry import JobRegistry, job_registry, load_job_modules
from .coordinator import ExecutionCoordinator
from .dlq import (
    DLQHandler,
    NullDLQHandler,
    DLQHandlerProtocol,
    create_dlq_handler,
)
from .worker import Worker
from .client import DagClient

__all__ = [
    # Models
    "JobState",
    "WorkflowStatus",
    "Job",
    "Workflow",
    "QueueMessage",
    "DependencyPayload",
    "JobContext",
    "Succeeded",
    "Failed",
    "ExecutionResult",
    "AdvancementResult",
    "ExecutionConfig",
    "RetryPolicy",
    "DLQEntry",
    # Errors
    "DagExecutionError",
    "StoreError",
    "JobNotFoundError",
    "WorkflowNotFoundError",
    "QueueError",
    "MissingDependency",
    "JobExecutionError",
    "LockTimeoutError",
    "InvalidTransitionError",
    "UnknownJobClassError",
    # Adapters
    "JobStore",
    "LockService",
    "LockGuard",
    "QueueRuntime",
    # Protocol
    "JobStateMachine",
    "DependencyResolver",
    "DagAdvancer",
    "JobRegistry",
    "job_registry",
    "load_job_modules",
    "ExecutionCoordinator",
    # DLQ
    "DLQHandler",
    "NullDLQHandler",
    "DLQHandlerProtocol",
    "create_dlq_handler",
    # Runtime
    "Worker",
    "DagClient",
]
