"""Centralized constants for Redis key layout and queue names.

This module provides a single source of truth for key prefixes shared by the
store, lock, queue and DLQ adapters, so that every worker in the fleet agrees on
where job state lives.
"""

# =============================================================================
# QUEUES
# =============================================================================

DEFAULT_QUEUE = "dag_jobs"

# =============================================================================
# REDIS KEY LAYOUT
# =============================================================================

KEY_PREFIX = "dag"
KEY_SEPARATOR = ":"

# dag:jobs:{workflow_id} -> HASH {job name -> job JSON}
JOBS_KEY = f"{KEY_PREFIX}:jobs"

# dag:workflows -> HASH {workflow id -> workflow JSON}
WORKFLOWS_KEY = f"{KEY_PREFIX}:workflows"

# dag:queue:{queue name} -> LIST of message JSON (FIFO: push right, pop left)
QUEUE_KEY = f"{KEY_PREFIX}:queue"

# dag:schedule -> ZSET {envelope JSON -> due timestamp}
SCHEDULE_KEY = f"{KEY_PREFIX}:schedule"

# dag:lock:{name} -> STRING (lock token, PX lease)
LOCK_KEY = f"{KEY_PREFIX}:lock"

# dag:dlq -> HASH {entry id -> DLQ entry JSON}
DLQ_KEY = f"{KEY_PREFIX}:dlq"

# Lock namespace used when enqueuing a job's outgoing (downstream) jobs
ENQUEUE_OUTGOING_LOCK = "enqueue_outgoing_jobs"


def jobs_key(workflow_id: str) -> str:
    """Hash key holding every job of a workflow."""
    return f"{JOBS_KEY}:{workflow_id}"


def queue_key(queue_name: str) -> str:
    """List key backing a named queue."""
    return f"{QUEUE_KEY}:{queue_name}"


def lock_key(name: str) -> str:
    """String key backing a named lock."""
    return f"{LOCK_KEY}:{name}"


def enqueue_outgoing_lock_name(workflow_id: str, job_name: str) -> str:
    """Lock name guarding the enqueue decision for one downstream job.

    Workflow ids and job names never contain KEY_SEPARATOR, so distinct
    (workflow, job) pairs always map to distinct names.
    """
    return f"{ENQUEUE_OUTGOING_LOCK}{KEY_SEPARATOR}{workflow_id}{KEY_SEPARATOR}{job_name}"
