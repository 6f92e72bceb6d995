"""Shared fixtures: an in-memory backend wired into every execution component."""

import pytest

from core.backend import StateBackend
from core.config import Settings
from services.execution import (
    DagAdvancer,
    DagClient,
    DependencyResolver,
    ExecutionConfig,
    ExecutionCoordinator,
    JobRegistry,
    JobState,
    JobStateMachine,
    JobStore,
    LockService,
    QueueRuntime,
    RetryPolicy,
    Worker,
    Workflow,
    create_dlq_handler,
)


@pytest.fixture
def settings():
    return Settings(
        redis_enabled=False,
        polling_interval=0.01,
        locking_duration=1.0,
        lock_wait_timeout=0.05,
        advancement_retry_delay=0.0,
        max_attempts=3,
        retry_initial_delay=0.0,
        dlq_enabled=True,
        dequeue_timeout=0.01,
    )


@pytest.fixture
async def backend(settings):
    backend = StateBackend(settings)
    await backend.startup()
    yield backend
    await backend.shutdown()


@pytest.fixture
def config(settings):
    return ExecutionConfig.from_settings(settings)


@pytest.fixture
def store(backend):
    return JobStore(backend)


@pytest.fixture
def locks(backend, settings):
    return LockService(backend, polling_interval=settings.polling_interval)


@pytest.fixture
def queue(backend):
    return QueueRuntime(backend)


@pytest.fixture
def state_machine(store):
    return JobStateMachine(store)


@pytest.fixture
def resolver(store):
    return DependencyResolver(store)


@pytest.fixture
def advancer(store, locks, queue, state_machine, config):
    return DagAdvancer(store, locks, queue, state_machine, config)


@pytest.fixture
def registry():
    registry = JobRegistry()

    @registry.register("Echo")
    async def echo(ctx):
        return {
            "job": ctx.job_name,
            "params": ctx.params,
            "inputs": [payload.to_dict() for payload in ctx.payloads],
        }

    @registry.register("Boom")
    async def boom(ctx):
        raise RuntimeError("boom")

    @registry.register("SyncUpper")
    def sync_upper(ctx):
        return ctx.params["text"].upper()

    return registry


@pytest.fixture
def coordinator(store, resolver, state_machine, advancer, registry):
    return ExecutionCoordinator(store, resolver, state_machine, advancer, registry)


@pytest.fixture
def dlq(backend, settings):
    return create_dlq_handler(backend, enabled=settings.dlq_enabled)


@pytest.fixture
def retry_policy(settings):
    return RetryPolicy.from_settings(settings)


@pytest.fixture
def worker(coordinator, queue, dlq, retry_policy, settings):
    return Worker(
        coordinator=coordinator,
        queue=queue,
        dlq=dlq,
        retry_policy=retry_policy,
        queues=settings.worker_queues,
        concurrency=settings.worker_concurrency,
        dequeue_timeout=settings.dequeue_timeout,
        polling_interval=settings.polling_interval,
    )


@pytest.fixture
def client(store, queue, state_machine):
    return DagClient(store, queue, state_machine)


@pytest.fixture
def diamond():
    """A -> {B, C} -> D"""
    wf = Workflow.create("wf-diamond")
    wf.add_job("A", "Echo")
    wf.add_job("B", "Echo", after=["A"])
    wf.add_job("C", "Echo", after=["A"])
    wf.add_job("D", "Echo", after=["B", "C"])
    return wf


@pytest.fixture
def fan_in():
    """{A, B} -> C"""
    wf = Workflow.create("wf-fan-in")
    wf.add_job("A", "Echo")
    wf.add_job("B", "Echo")
    wf.add_job("C", "Echo", after=["A", "B"])
    return wf


@pytest.fixture
def succeed(store):
    """Persist a job as succeeded without running it."""
    async def _succeed(workflow, name, output=None):
        job = await store.find_job(workflow.id, name)
        job.state = JobState.SUCCEEDED
        job.output_payload = output
        await store.persist_job(workflow.id, job)
        return job
    return _succeed
