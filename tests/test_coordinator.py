"""Execution coordinator: one (workflow id, job id) delivery end to end."""

import pytest

from constants import enqueue_outgoing_lock_name, lock_key
from services.execution import (
    JobExecutionError,
    JobNotFoundError,
    JobState,
    MissingDependency,
    QueueMessage,
    Succeeded,
    UnknownJobClassError,
    Workflow,
)


async def test_runs_handler_and_enqueues_children(coordinator, store, queue, diamond):
    await store.persist_workflow(diamond)

    result = await coordinator.perform(diamond.id, "A")

    assert result == Succeeded({"job": "A", "params": {}, "inputs": []})
    a = await store.find_job(diamond.id, "A")
    assert a.succeeded
    assert a.output_payload == result.output
    assert [m.job_id for m in await queue.pending("dag_jobs")] == ["B", "C"]


async def test_handler_receives_upstream_payloads(coordinator, store, fan_in, succeed):
    fan_in.jobs["C"].params = {"limit": 5}
    await store.persist_workflow(fan_in)
    await succeed(fan_in, "A", 1)
    await succeed(fan_in, "B", 2)

    result = await coordinator.perform(fan_in.id, "C")

    assert result.output == {
        "job": "C",
        "params": {"limit": 5},
        "inputs": [
            {"id": "A", "class": "Echo", "output": 1},
            {"id": "B", "class": "Echo", "output": 2},
        ],
    }


async def test_sync_handler_runs_in_executor(coordinator, store):
    wf = Workflow.create("wf-sync")
    wf.add_job("A", "SyncUpper", params={"text": "hello"})
    await store.persist_workflow(wf)

    result = await coordinator.perform(wf.id, "A")

    assert result.output == "HELLO"


async def test_failure_is_persisted_and_wrapped(coordinator, store, queue):
    wf = Workflow.create("wf-boom")
    wf.add_job("A", "Boom")
    wf.add_job("B", "Echo", after=["A"])
    await store.persist_workflow(wf)

    with pytest.raises(JobExecutionError) as exc_info:
        await coordinator.perform(wf.id, "A")

    assert isinstance(exc_info.value.error, RuntimeError)
    assert exc_info.value.__cause__ is exc_info.value.error
    a = await store.find_job(wf.id, "A")
    assert a.state == JobState.FAILED
    assert a.error == "RuntimeError: boom"
    assert a.output_payload is None
    assert await queue.pending("dag_jobs") == []
    assert (await store.find_job(wf.id, "B")).pending


async def test_unknown_class_fails_the_job(coordinator, store):
    wf = Workflow.create("wf-unknown")
    wf.add_job("A", "NoSuchJob")
    await store.persist_workflow(wf)

    with pytest.raises(JobExecutionError) as exc_info:
        await coordinator.perform(wf.id, "A")

    assert isinstance(exc_info.value.error, UnknownJobClassError)
    assert (await store.find_job(wf.id, "A")).failed


async def test_succeeded_job_only_retries_advancement(coordinator, store, queue, registry,
                                                      diamond, succeed):
    calls = []

    @registry.register("Echo")
    async def counting(ctx):
        calls.append(ctx.job_name)
        return "fresh"

    await store.persist_workflow(diamond)
    await succeed(diamond, "A", "original")

    result = await coordinator.perform(diamond.id, "A")

    assert calls == []
    assert result == Succeeded("original")
    assert (await store.find_job(diamond.id, "A")).output_payload == "original"
    assert [m.job_id for m in await queue.pending("dag_jobs")] == ["B", "C"]


async def test_duplicate_delivery_runs_business_logic_once(coordinator, store, queue,
                                                           registry, diamond):
    calls = []

    @registry.register("Echo")
    async def counting(ctx):
        calls.append(ctx.job_name)
        return len(calls)

    await store.persist_workflow(diamond)

    first = await coordinator.perform(diamond.id, "A")
    second = await coordinator.perform(diamond.id, "A")

    assert calls == ["A"]
    assert first == second == Succeeded(1)
    assert len(await queue.pending("dag_jobs")) == 2


async def test_missing_dependency_fails_job_and_propagates(coordinator, store, fan_in,
                                                           succeed, registry):
    calls = []

    @registry.register("Echo")
    async def counting(ctx):
        calls.append(ctx.job_name)

    await store.persist_workflow(fan_in)
    await succeed(fan_in, "A", 1)

    with pytest.raises(MissingDependency) as exc_info:
        await coordinator.perform(fan_in.id, "C")

    assert exc_info.value.dependency == "B"
    assert calls == []
    c = await store.find_job(fan_in.id, "C")
    assert c.failed
    assert c.started_at is None


async def test_unknown_job_raises_not_found(coordinator, store, diamond):
    await store.persist_workflow(diamond)
    with pytest.raises(JobNotFoundError):
        await coordinator.perform(diamond.id, "Z")


async def test_lock_contention_does_not_fail_the_job(coordinator, store, queue, backend,
                                                     fan_in, succeed):
    await store.persist_workflow(fan_in)
    await succeed(fan_in, "A", 1)
    await backend.set_if_absent(lock_key(enqueue_outgoing_lock_name(fan_in.id, "C")),
                                "other-worker", ttl=5.0)

    result = await coordinator.perform(fan_in.id, "B")

    assert isinstance(result, Succeeded)
    assert (await store.find_job(fan_in.id, "B")).succeeded
    [(_, message, _)] = await queue.scheduled()
    assert message == QueueMessage(fan_in.id, "B")
