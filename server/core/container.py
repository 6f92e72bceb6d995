"""Dependency injection container for the worker."""

from dependency_injector import containers, providers

from core.config import Settings
from core.backend import StateBackend
from services.execution import (
    DagAdvancer,
    DagClient,
    DependencyResolver,
    ExecutionConfig,
    ExecutionCoordinator,
    JobStateMachine,
    JobStore,
    LockService,
    QueueRuntime,
    RetryPolicy,
    Worker,
    create_dlq_handler,
    job_registry,
)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Immutable execution timing, built once from settings
    execution_config = providers.Singleton(
        ExecutionConfig.from_settings,
        settings=settings
    )

    retry_policy = providers.Singleton(
        RetryPolicy.from_settings,
        settings=settings
    )

    # Backend (Redis when enabled, in-memory otherwise)
    backend = providers.Singleton(
        StateBackend,
        settings=settings
    )

    # Adapters
    store = providers.Singleton(
        JobStore,
        backend=backend
    )

    locks = providers.Singleton(
        LockService,
        backend=backend,
        polling_interval=settings.provided.polling_interval
    )

    queue = providers.Singleton(
        QueueRuntime,
        backend=backend
    )

    dlq = providers.Singleton(
        create_dlq_handler,
        backend=backend,
        enabled=settings.provided.dlq_enabled
    )

    registry = providers.Object(job_registry)

    # Execution protocol
    state_machine = providers.Singleton(
        JobStateMachine,
        store=store
    )

    resolver = providers.Singleton(
        DependencyResolver,
        store=store
    )

    advancer = providers.Singleton(
        DagAdvancer,
        store=store,
        locks=locks,
        queue=queue,
        state_machine=state_machine,
        config=execution_config
    )

    coordinator = providers.Singleton(
        ExecutionCoordinator,
        store=store,
        resolver=resolver,
        state_machine=state_machine,
        advancer=advancer,
        registry=registry
    )

    worker = providers.Singleton(
        Worker,
        coordinator=coordinator,
        queue=queue,
        dlq=dlq,
        retry_policy=retry_policy,
        queues=settings.provided.worker_queues,
        concurrency=settings.provided.worker_concurrency,
        dequeue_timeout=settings.provided.dequeue_timeout,
        polling_interval=settings.provided.polling_interval
    )

    client = providers.Singleton(
        DagClient,
        store=store,
        queue=queue,
        state_machine=state_machine
    )


# Global container instance
container = Container()
