"""Workflow builder, derived status and serialization of execution models."""

import pytest

from services.execution import (
    DependencyPayload,
    DLQEntry,
    Job,
    JobContext,
    JobState,
    QueueMessage,
    RetryPolicy,
    Workflow,
    WorkflowStatus,
)


class TestWorkflowBuilder:

    def test_edges_written_on_both_ends_in_declaration_order(self, diamond):
        assert diamond.jobs["A"].outgoing == ["B", "C"]
        assert diamond.jobs["D"].incoming == ["B", "C"]
        assert diamond.jobs["B"].incoming == ["A"]
        assert diamond.jobs["B"].outgoing == ["D"]
        assert diamond.jobs["C"].outgoing == ["D"]

    def test_initial_jobs(self, diamond, fan_in):
        assert [job.name for job in diamond.initial_jobs()] == ["A"]
        assert [job.name for job in fan_in.initial_jobs()] == ["A", "B"]

    def test_duplicate_name_rejected(self):
        wf = Workflow.create()
        wf.add_job("A", "Echo")
        with pytest.raises(ValueError, match="Duplicate"):
            wf.add_job("A", "Echo")

    def test_unknown_parent_rejected(self):
        wf = Workflow.create()
        with pytest.raises(ValueError, match="unknown"):
            wf.add_job("B", "Echo", after=["A"])
        assert "B" not in wf.jobs

    def test_key_separator_rejected_in_names(self):
        with pytest.raises(ValueError, match="may not contain"):
            Workflow.create("wf:1")
        wf = Workflow.create("wf-1")
        with pytest.raises(ValueError, match="may not contain"):
            wf.add_job("extract:users", "Echo")
        assert wf.jobs == {}

    def test_queue_defaults_to_workflow_default(self):
        wf = Workflow.create(default_queue="reports")
        wf.add_job("A", "Echo")
        wf.add_job("B", "Echo", queue="priority")
        assert wf.jobs["A"].queue == "reports"
        assert wf.jobs["B"].queue == "priority"

    def test_repeated_parent_wired_once(self):
        wf = Workflow.create()
        wf.add_job("A", "Echo")
        wf.add_job("B", "Echo", after=["A", "A"])
        assert wf.jobs["B"].incoming == ["A"]
        assert wf.jobs["A"].outgoing == ["B"]


class TestWorkflowStatus:

    def test_pending_when_nothing_moved(self, diamond):
        assert diamond.status == WorkflowStatus.PENDING

    def test_running_once_any_job_left_pending(self, diamond):
        diamond.jobs["A"].state = JobState.ENQUEUED
        assert diamond.status == WorkflowStatus.RUNNING

    def test_failed_wins(self, diamond):
        diamond.jobs["A"].state = JobState.SUCCEEDED
        diamond.jobs["B"].state = JobState.FAILED
        assert diamond.status == WorkflowStatus.FAILED

    def test_succeeded_when_all_succeeded(self, diamond):
        for job in diamond.jobs.values():
            job.state = JobState.SUCCEEDED
        assert diamond.status == WorkflowStatus.SUCCEEDED


class TestJob:

    def test_predicates(self):
        job = Job(workflow_id="wf", name="A", klass="Echo")
        assert job.pending and not job.finished
        job.state = JobState.FAILED
        assert job.failed and job.finished
        job.state = JobState.SUCCEEDED
        assert job.succeeded and job.finished and not job.running

    def test_json_keeps_state_and_output(self):
        job = Job(workflow_id="wf", name="A", klass="Echo", incoming=["X"],
                  params={"n": 1}, state=JobState.SUCCEEDED,
                  output_payload={"rows": [1, 2]})
        restored = Job.from_json(job.to_json())
        assert restored == job
        assert restored.state is JobState.SUCCEEDED


class TestQueueMessage:

    def test_next_attempt(self):
        message = QueueMessage("wf", "A")
        assert message.next_attempt() == QueueMessage("wf", "A", attempt=1)

    @pytest.mark.parametrize("body", ["not json", "{}", '{"workflow_id": "wf"}', "[]"])
    def test_malformed_raises_value_error(self, body):
        with pytest.raises(ValueError):
            QueueMessage.from_json(body)


class TestPayloads:

    def test_payload_record_uses_class_key(self):
        payload = DependencyPayload(id="A", klass="Echo", output=42)
        assert payload.to_dict() == {"id": "A", "class": "Echo", "output": 42}

    def test_context_payload_lookup(self):
        ctx = JobContext(
            workflow_id="wf",
            job_name="C",
            params={},
            payloads=[DependencyPayload("A", "Echo", 1), DependencyPayload("B", "Echo", 2)],
        )
        assert ctx.payload_for("B") == 2
        with pytest.raises(KeyError):
            ctx.payload_for("Z")


class TestRetryPolicy:

    def test_exponential_delay_capped(self):
        policy = RetryPolicy(max_attempts=10, initial_delay=1.0, max_delay=5.0,
                             backoff_multiplier=2.0)
        assert [policy.calculate_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_should_retry_counts_total_attempts(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(0)
        assert policy.should_retry(1)
        assert not policy.should_retry(2)


def test_dlq_entry_from_message():
    entry = DLQEntry.create(QueueMessage("wf", "A", attempt=2), "dag_jobs", RuntimeError("x"))
    assert entry.attempts == 3
    assert entry.error == "RuntimeError: x"
    assert DLQEntry.from_dict(entry.to_dict()) == entry
