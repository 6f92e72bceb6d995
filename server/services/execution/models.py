"""Execution engine state models.

Jobs follow a Conductor-style task lifecycle. All persisted models are
JSON-serializable so they can live in Redis hashes and travel through queues.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Sequence, Union

from constants import DEFAULT_QUEUE, KEY_SEPARATOR
from core.config import Settings


class JobState(str, Enum):
    """Job execution states.

    State transitions:
        PENDING -> ENQUEUED -> RUNNING -> SUCCEEDED
                                      -> FAILED
        FAILED -> RUNNING (redelivery re-attempts the job)
    """
    PENDING = "pending"        # Created, waiting for its dependencies
    ENQUEUED = "enqueued"      # Handed to the queue, waiting for a worker
    RUNNING = "running"        # Worker executing
    SUCCEEDED = "succeeded"    # Success, output recorded
    FAILED = "failed"          # Business logic or dependency failure


class WorkflowStatus(str, Enum):
    """Workflow status, derived from the states of its jobs."""
    PENDING = "pending"        # No job has been enqueued yet
    RUNNING = "running"        # At least one job enqueued, running or done
    SUCCEEDED = "succeeded"    # Every job succeeded
    FAILED = "failed"          # At least one job failed


@dataclass
class Job:
    """One node of a workflow DAG plus its lifecycle state."""
    workflow_id: str
    name: str
    klass: str
    incoming: List[str] = field(default_factory=list)
    outgoing: List[str] = field(default_factory=list)
    queue: str = DEFAULT_QUEUE
    params: Dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.PENDING
    output_payload: Any = None
    error: Optional[str] = None
    enqueued_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self.state == JobState.PENDING

    @property
    def enqueued(self) -> bool:
        return self.state == JobState.ENQUEUED

    @property
    def running(self) -> bool:
        return self.state == JobState.RUNNING

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.state == JobState.FAILED

    @property
    def finished(self) -> bool:
        """True once the job reached a terminal state."""
        return self.succeeded or self.failed

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "klass": self.klass,
            "incoming": self.incoming,
            "outgoing": self.outgoing,
            "queue": self.queue,
            "params": self.params,
            "state": self.state.value,
            "output_payload": self.output_payload,
            "error": self.error,
            "enqueued_at": self.enqueued_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create from dict (Redis deserialization)."""
        return cls(
            workflow_id=data["workflow_id"],
            name=data["name"],
            klass=data["klass"],
            incoming=list(data.get("incoming", [])),
            outgoing=list(data.get("outgoing", [])),
            queue=data.get("queue") or DEFAULT_QUEUE,
            params=data.get("params") or {},
            state=JobState(data.get("state", JobState.PENDING.value)),
            output_payload=data.get("output_payload"),
            error=data.get("error"),
            enqueued_at=data.get("enqueued_at"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            failed_at=data.get("failed_at"),
        )

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Job":
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


@dataclass
class Workflow:
    """A named DAG of jobs.

    Built incrementally; each job may only depend on jobs declared before it,
    and edges are written on both ends so incoming/outgoing always agree:

        wf = Workflow.create()
        wf.add_job("fetch", "FetchJob")
        wf.add_job("parse", "ParseJob", after=["fetch"])
    """
    id: str
    jobs: Dict[str, Job] = field(default_factory=dict)
    default_queue: str = DEFAULT_QUEUE
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, workflow_id: Optional[str] = None,
               default_queue: str = DEFAULT_QUEUE) -> "Workflow":
        """Factory with a generated id."""
        if workflow_id is not None and KEY_SEPARATOR in workflow_id:
            raise ValueError(f"Workflow id may not contain '{KEY_SEPARATOR}': '{workflow_id}'")
        return cls(id=workflow_id or str(uuid.uuid4()), default_queue=default_queue)

    def add_job(self, name: str, klass: str, after: Sequence[str] = (),
                queue: Optional[str] = None,
                params: Optional[Dict[str, Any]] = None) -> Job:
        """Declare a job that runs after every job named in `after`."""
        if KEY_SEPARATOR in name:
            raise ValueError(f"Job name may not contain '{KEY_SEPARATOR}': '{name}'")
        if name in self.jobs:
            raise ValueError(f"Duplicate job name: '{name}'")
        unknown = [parent for parent in after if parent not in self.jobs]
        if unknown:
            raise ValueError(
                f"Job '{name}' depends on unknown jobs {unknown}. "
                f"Known jobs: {list(self.jobs)}"
            )

        job = Job(
            workflow_id=self.id,
            name=name,
            klass=klass,
            queue=queue or self.default_queue,
            params=dict(params or {}),
        )
        for parent in after:
            if parent in job.incoming:
                continue
            job.incoming.append(parent)
            self.jobs[parent].outgoing.append(name)

        self.jobs[name] = job
        return job

    def initial_jobs(self) -> List[Job]:
        """Jobs with no dependencies, in declaration order."""
        return [job for job in self.jobs.values() if not job.incoming]

    @property
    def status(self) -> WorkflowStatus:
        """Derive the workflow status from its jobs."""
        jobs = list(self.jobs.values())
        if any(job.failed for job in jobs):
            return WorkflowStatus.FAILED
        if jobs and all(job.succeeded for job in jobs):
            return WorkflowStatus.SUCCEEDED
        if any(not job.pending for job in jobs):
            return WorkflowStatus.RUNNING
        return WorkflowStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        """Workflow record. Jobs are stored separately, keyed by name."""
        return {
            "id": self.id,
            "default_queue": self.default_queue,
            "created_at": self.created_at,
            "job_names": list(self.jobs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], jobs: Dict[str, Job]) -> "Workflow":
        """Rebuild from the workflow record and its loaded jobs."""
        ordered = {name: jobs[name] for name in data.get("job_names", []) if name in jobs}
        # Jobs persisted without a workflow record update still belong to it
        for name, job in jobs.items():
            ordered.setdefault(name, job)
        return cls(
            id=data["id"],
            jobs=ordered,
            default_queue=data.get("default_queue") or DEFAULT_QUEUE,
            created_at=data.get("created_at", time.time()),
        )


@dataclass
class QueueMessage:
    """Execution request delivered to a worker."""
    workflow_id: str
    job_id: str
    attempt: int = 0

    def next_attempt(self) -> "QueueMessage":
        return QueueMessage(self.workflow_id, self.job_id, self.attempt + 1)

    def to_json(self) -> str:
        return json.dumps({
            "workflow_id": self.workflow_id,
            "job_id": self.job_id,
            "attempt": self.attempt,
        })

    @classmethod
    def from_json(cls, json_str: str) -> "QueueMessage":
        """Parse a queue body. Raises ValueError on malformed input."""
        try:
            data = json.loads(json_str)
            return cls(
                workflow_id=str(data["workflow_id"]),
                job_id=str(data["job_id"]),
                attempt=int(data.get("attempt", 0)),
            )
        except (TypeError, KeyError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed queue message: {json_str!r}") from e


@dataclass(frozen=True)
class DependencyPayload:
    """Output of one upstream job, handed to the job that depends on it."""
    id: str
    klass: str
    output: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "class": self.klass, "output": self.output}


@dataclass(frozen=True)
class JobContext:
    """Everything a job handler receives."""
    workflow_id: str
    job_name: str
    params: Dict[str, Any]
    payloads: List[DependencyPayload]

    def payload_for(self, job_name: str) -> Any:
        """Output of the named upstream job."""
        for payload in self.payloads:
            if payload.id == job_name:
                return payload.output
        raise KeyError(job_name)


@dataclass(frozen=True)
class Succeeded:
    """Business logic returned normally."""
    output: Any = None


@dataclass(frozen=True)
class Failed:
    """Business logic raised."""
    error: BaseException


ExecutionResult = Union[Succeeded, Failed]


@dataclass
class AdvancementResult:
    """Outcome of one pass over a job's outgoing jobs."""
    job_name: str
    enqueued: List[str] = field(default_factory=list)
    rescheduled: bool = False


@dataclass(frozen=True)
class ExecutionConfig:
    """Immutable timing configuration for coordinator and advancement."""
    polling_interval: float = 0.3
    locking_duration: float = 2.0
    lock_wait_timeout: float = 2.0
    advancement_retry_delay: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExecutionConfig":
        return cls(
            polling_interval=settings.polling_interval,
            locking_duration=settings.locking_duration,
            lock_wait_timeout=settings.lock_wait_timeout,
            advancement_retry_delay=settings.advancement_retry_delay,
        )


@dataclass
class RetryPolicy:
    """Redelivery configuration for failed executions.

    Implements exponential backoff with configurable limits.
    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 60.0          # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next delivery.

        Args:
            attempt: Attempt that just failed (0-indexed)

        Returns:
            Delay in seconds before next attempt
        """
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """True while another delivery is allowed after `attempt` failed."""
        return attempt + 1 < self.max_attempts

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


@dataclass
class DLQEntry:
    """Dead Letter Queue entry for a delivery the worker gave up on."""
    id: str
    workflow_id: str
    job_name: str
    queue: str
    error: str
    attempts: int
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "job_name": self.job_name,
            "queue": self.queue,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DLQEntry":
        """Create from dict."""
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            job_name=data["job_name"],
            queue=data.get("queue", DEFAULT_QUEUE),
            error=data["error"],
            attempts=data.get("attempts", 0),
            created_at=data.get("created_at", time.time()),
        )

    @classmethod
    def create(cls, message: QueueMessage, queue: str, error: BaseException) -> "DLQEntry":
        """Factory method to create DLQ entry from a failed delivery."""
        return cls(
            id=str(uuid.uuid4()),
            workflow_id=message.workflow_id,
            job_name=message.job_id,
            queue=queue,
            error=f"{type(error).__name__}: {error}",
            attempts=message.attempt + 1,
        )
