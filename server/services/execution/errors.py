"""Execution engine exception hierarchy."""

from typing import Optional


class DagExecutionError(Exception):
    """Base exception for all execution engine errors."""


class StoreError(DagExecutionError):
    """Job or workflow state could not be read or persisted."""


class JobNotFoundError(StoreError):
    """No job with the given name exists in the workflow."""

    def __init__(self, workflow_id: str, job_name: str):
        self.workflow_id = workflow_id
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' not found in workflow {workflow_id}")


class WorkflowNotFoundError(StoreError):
    """No workflow with the given id exists."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class QueueError(DagExecutionError):
    """A message could not be pushed or scheduled."""


class MissingDependency(DagExecutionError):
    """An upstream job's output could not be located while resolving payloads."""

    def __init__(self, workflow_id: str, job_name: str, dependency: str, reason: str):
        self.workflow_id = workflow_id
        self.job_name = job_name
        self.dependency = dependency
        self.reason = reason
        super().__init__(
            f"[{workflow_id}] Job '{job_name}' is missing dependency '{dependency}': {reason}"
        )


class JobExecutionError(DagExecutionError):
    """A job's business logic failed. The original exception is `error`."""

    def __init__(self, workflow_id: str, job_name: str, error: BaseException):
        self.workflow_id = workflow_id
        self.job_name = job_name
        self.error = error
        super().__init__(
            f"[{workflow_id}] Job '{job_name}' failed: {type(error).__name__}: {error}"
        )


class LockTimeoutError(DagExecutionError):
    """A lock could not be acquired within its wait window."""

    def __init__(self, name: str, wait_timeout: float):
        self.name = name
        self.wait_timeout = wait_timeout
        super().__init__(f"Could not acquire lock {name} within {wait_timeout}s")


class InvalidTransitionError(DagExecutionError):
    """A job state transition was attempted from a state that does not allow it."""

    def __init__(self, job_name: str, from_state: str, transition: str,
                 detail: Optional[str] = None):
        self.job_name = job_name
        self.from_state = from_state
        self.transition = transition
        message = f"Cannot {transition} job '{job_name}' in state {from_state}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class UnknownJobClassError(DagExecutionError):
    """No handler is registered for a job's class reference."""

    def __init__(self, klass: str, available: list):
        self.klass = klass
        self.available = available
        super().__init__(f"Unknown job class: '{klass}'. Available classes: {available}")
