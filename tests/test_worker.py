"""Worker redelivery policy, dead-lettering and full workflow runs."""

import asyncio

from constants import enqueue_outgoing_lock_name, lock_key, queue_key
from services.execution import (
    NullDLQHandler,
    QueueMessage,
    Worker,
    Workflow,
    WorkflowStatus,
)


async def wait_for_status(client, workflow_id, status, timeout=2.0):
    async def poll():
        while await client.workflow_status(workflow_id) != status:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


async def test_diamond_runs_to_completion(worker, client, store, diamond):
    await client.create_workflow(diamond)
    await client.start_workflow(diamond.id)

    processed = await worker.drain()

    assert processed == 4
    assert await client.workflow_status(diamond.id) == WorkflowStatus.SUCCEEDED
    d = await store.find_job(diamond.id, "D")
    assert [payload["id"] for payload in d.output_payload["inputs"]] == ["B", "C"]
    assert worker.stats["processed"] == 4
    assert worker.stats["failed"] == 0


async def test_failed_job_redelivered_then_dead_lettered(worker, client, store, dlq):
    wf = Workflow.create("wf-boom")
    wf.add_job("A", "Boom")
    await client.create_workflow(wf)
    await client.start_workflow(wf.id)

    processed = await worker.drain()

    assert processed == 3
    assert worker.stats["retried"] == 2
    assert worker.stats["dead_lettered"] == 1
    [entry] = await dlq.list_entries()
    assert entry.workflow_id == wf.id
    assert entry.job_name == "A"
    assert entry.attempts == 3
    assert entry.error.startswith("JobExecutionError")
    assert (await store.find_job(wf.id, "A")).failed
    assert await client.workflow_status(wf.id) == WorkflowStatus.FAILED


async def test_flaky_job_succeeds_on_redelivery(worker, client, store, registry):
    attempts = []

    @registry.register("Flaky")
    async def flaky(ctx):
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("upstream unavailable")
        return "ok"

    wf = Workflow.create("wf-flaky")
    wf.add_job("A", "Flaky")
    wf.add_job("B", "Echo", after=["A"])
    await client.create_workflow(wf)
    await client.start_workflow(wf.id)

    await worker.drain()

    assert len(attempts) == 2
    assert (await store.find_job(wf.id, "A")).output_payload == "ok"
    assert await client.workflow_status(wf.id) == WorkflowStatus.SUCCEEDED


async def test_missing_dependency_dead_lettered_without_retry(worker, queue, store, dlq,
                                                              fan_in, succeed):
    await store.persist_workflow(fan_in)
    await succeed(fan_in, "A", 1)
    await queue.enqueue("dag_jobs", QueueMessage(fan_in.id, "C"))

    assert await worker.drain() == 1

    assert worker.stats["retried"] == 0
    [entry] = await dlq.list_entries()
    assert entry.job_name == "C"
    assert entry.error.startswith("MissingDependency")
    assert (await store.find_job(fan_in.id, "C")).failed


async def test_unknown_job_dead_lettered(worker, queue, dlq):
    await queue.enqueue("dag_jobs", QueueMessage("no-such-workflow", "A"))

    await worker.drain()

    [entry] = await dlq.list_entries()
    assert entry.error.startswith("JobNotFoundError")


async def test_malformed_message_dropped(worker, backend, dlq):
    await backend.rpush(queue_key("dag_jobs"), "not a message")

    assert await worker.drain() == 1

    assert worker.stats["failed"] == 1
    assert await dlq.list_entries() == []


async def test_disabled_dlq_drops_exhausted_delivery(coordinator, queue, retry_policy, client):
    worker = Worker(coordinator, queue, NullDLQHandler(), retry_policy,
                    queues=["dag_jobs"], dequeue_timeout=0.01, polling_interval=0.01)
    wf = Workflow.create("wf-no-dlq")
    wf.add_job("A", "Boom")
    await client.create_workflow(wf)
    await client.start_workflow(wf.id)

    assert await worker.drain() == 3
    assert await queue.pending("dag_jobs") == []
    assert await queue.scheduled() == []


async def test_contended_advancement_eventually_enqueues(worker, client, store, backend,
                                                         registry, fan_in):
    runs = []

    @registry.register("Echo")
    async def counting(ctx):
        runs.append(ctx.job_name)
        return ctx.job_name

    await client.create_workflow(fan_in)
    # Another worker holds C's lock for a short lease
    await backend.set_if_absent(lock_key(enqueue_outgoing_lock_name(fan_in.id, "C")),
                                "other-worker", ttl=0.15)
    await client.start_workflow(fan_in.id)

    await worker.drain()

    assert sorted(runs) == ["A", "B", "C"]
    assert await client.workflow_status(fan_in.id) == WorkflowStatus.SUCCEEDED


async def test_background_loops_run_workflow(worker, client, diamond):
    await client.create_workflow(diamond)
    await worker.start()
    try:
        assert worker.is_running
        await client.start_workflow(diamond.id)
        await wait_for_status(client, diamond.id, WorkflowStatus.SUCCEEDED)
    finally:
        await worker.stop()

    assert not worker.is_running
    assert worker.stats["processed"] == 4
    assert worker.stats["in_flight"] == 0
