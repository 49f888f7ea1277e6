"""Tests for the execution record lifecycle around workflow runs."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from generous.service.errors import (
    AuthenticationError,
    ExecutionPersistenceError,
    NotFoundError,
    QuotaExceededError,
    ToolDeniedError,
    ValidationError,
    WorkflowDisabledError,
)
from generous.service.executors import ToolOutcome
from generous.service.quota import MemoryUsageCounters, QuotaService
from generous.service.runs import ABANDONED_ERROR, WorkflowRunService
from generous.service.triggers import sign_webhook_payload
from generous.service.workflow import ExecutionStatus, ExecutionTrigger, TriggerType
from generous.storage.memory import MemoryStore


class EchoExecutor:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def invoke(self, tool_id, params):
        self.calls.append((tool_id, params))
        if tool_id in self.failing:
            return ToolOutcome.failure(f"{tool_id} failed")
        return ToolOutcome.ok({"echo": params})


class FlakyStore(MemoryStore):
    """Refuses to write terminal execution statuses."""

    def update_execution(self, execution_id, **updates):
        if updates.get("status") in ("completed", "failed"):
            raise RuntimeError("database went away")
        return super().update_execution(execution_id, **updates)


async def _no_sleep(_delay):
    return None


@pytest.fixture
def store():
    return MemoryStore(persist=False)


def _service(store, executor=None, **kwargs):
    kwargs.setdefault("sleep", _no_sleep)
    return WorkflowRunService(
        store, executor or EchoExecutor(), QuotaService(MemoryUsageCounters()), **kwargs
    )


def _workflow(store, *, nodes=None, **kwargs):
    owner = store.create_user("owner@example.com")
    return store.create_workflow(
        owner.id,
        "demo",
        nodes=nodes if nodes is not None else [{"id": "a", "toolId": "weather"}],
        **kwargs,
    )


async def test_run_records_pending_running_then_terminal(store):
    workflow = _workflow(store)
    service = _service(store)

    outcome = await service.run(workflow, ExecutionTrigger(user_id=workflow.owner_id))

    record = store.get_execution(outcome.execution_id)
    assert record.status == "completed"
    assert record.started_at is not None
    assert record.completed_at is not None
    assert record.node_results["a"]["status"] == "success"
    assert record.metadata["user_id"] == workflow.owner_id
    assert record.triggered_by == "manual"


async def test_failed_node_marks_execution_failed(store):
    workflow = _workflow(store)
    outcome = await _service(store, EchoExecutor(failing={"weather"})).run(
        workflow, ExecutionTrigger()
    )

    record = store.get_execution(outcome.execution_id)
    assert record.status == "failed"
    assert record.error is None
    assert record.node_results["a"]["error"] == "weather failed"


async def test_disabled_workflow_is_refused_without_a_record(store):
    workflow = _workflow(store, is_enabled=False)
    with pytest.raises(WorkflowDisabledError):
        await _service(store).run(workflow, ExecutionTrigger())
    assert store.list_executions(workflow.id) == ([], 0)


async def test_terminal_write_failure_carries_the_result():
    store = FlakyStore(persist=False)
    workflow = _workflow(store)

    with pytest.raises(ExecutionPersistenceError) as excinfo:
        await _service(store).run(workflow, ExecutionTrigger())

    err = excinfo.value
    assert err.status_code == 500
    assert err.result.status is ExecutionStatus.COMPLETED
    assert store.get_execution(err.execution_id).status == "running"


async def test_toolspace_policy_is_checked_before_recording(store):
    workflow = _workflow(store, nodes=[{"id": "a", "toolId": "@stripe/refund"}])
    toolspace = store.create_toolspace(workflow.owner_id, "limited", tools=["weather"])
    workflow = store.update_workflow(workflow.id, toolspace_id=toolspace.id)
    executor = EchoExecutor()

    with pytest.raises(ToolDeniedError):
        await _service(store, executor).run(workflow, ExecutionTrigger())
    assert executor.calls == []
    assert store.list_executions(workflow.id)[1] == 0


async def test_quota_is_checked_before_recording_and_usage_is_metered(store):
    workflow = _workflow(store)
    toolspace = store.create_toolspace(
        workflow.owner_id, "metered", tools=["*"], quotas={"maxRequestsPerDay": 1}
    )
    workflow = store.update_workflow(workflow.id, toolspace_id=toolspace.id)
    service = _service(store)

    await service.run(workflow, ExecutionTrigger(user_id=workflow.owner_id))
    usage = store.list_tool_usage(toolspace_id=toolspace.id)
    assert len(usage) == 1
    assert usage[0].workflow_id == workflow.id

    with pytest.raises(QuotaExceededError):
        await service.run(workflow, ExecutionTrigger(user_id=workflow.owner_id))
    assert store.list_executions(workflow.id)[1] == 1


async def test_quota_exhausted_mid_run_fails_the_run_without_retry(store):
    def clock():
        return datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)

    workflow = _workflow(
        store,
        nodes=[
            {"id": "a", "toolId": "weather"},
            {
                "id": "b",
                "toolId": "weather",
                "retryConfig": {"maxRetries": 3, "delayMs": 1000},
            },
        ],
    )
    toolspace = store.create_toolspace(
        workflow.owner_id, "tight", tools=["*"], quotas={"maxRequestsPerMinute": 1}
    )
    workflow = store.update_workflow(workflow.id, toolspace_id=toolspace.id)
    executor = EchoExecutor()
    sleeps = []

    async def record_sleep(delay):
        sleeps.append(delay)

    service = WorkflowRunService(
        store,
        executor,
        QuotaService(MemoryUsageCounters(clock=clock), clock=clock),
        sleep=record_sleep,
    )
    outcome = await service.run(workflow, ExecutionTrigger(user_id=workflow.owner_id))

    assert outcome.result.status is ExecutionStatus.FAILED
    assert outcome.result.error == "Rate limit exceeded: 1 requests per minute"
    assert list(outcome.result.node_results) == ["a"]
    assert len(executor.calls) == 1
    assert sleeps == []
    record = store.get_execution(outcome.execution_id)
    assert record.status == "failed"
    assert record.error == "Rate limit exceeded: 1 requests per minute"
    assert "b" not in record.node_results


async def test_missing_toolspace_is_not_found(store):
    workflow = _workflow(store)
    toolspace = store.create_toolspace(workflow.owner_id, "gone")
    workflow = store.update_workflow(workflow.id, toolspace_id=toolspace.id)
    store.toolspaces.pop(toolspace.id)

    with pytest.raises(NotFoundError):
        await _service(store).run(workflow, ExecutionTrigger())


def test_stale_running_execution_is_abandoned_on_read(store):
    workflow = _workflow(store)
    stale = store.create_execution(workflow.id)
    store.update_execution(
        stale.id, status="running", started_at=datetime.now(timezone.utc) - timedelta(hours=3)
    )
    fresh = store.create_execution(workflow.id)
    store.update_execution(fresh.id, status="running", started_at=datetime.now(timezone.utc))

    service = _service(store, stale_after_seconds=3600)
    records, total = service.list_executions(workflow.id)

    by_id = {r.id: r for r in records}
    assert total == 2
    assert by_id[stale.id].status == "failed"
    assert by_id[stale.id].error == ABANDONED_ERROR
    assert by_id[fresh.id].status == "running"
    assert store.get_execution(stale.id).status == "failed"
    assert service.get_execution("missing") is None


async def test_webhook_run_passes_payload_as_variable(store):
    workflow = _workflow(
        store, nodes=[{"id": "a", "toolId": "notify", "inputs": {"body": "$var.webhookPayload"}}]
    )
    hook = store.create_webhook(workflow.id, url="wh-abc", secret="s3cret")
    executor = EchoExecutor()
    body = json.dumps({"event": "push"}).encode()

    outcome = await _service(store, executor).run_webhook(
        "wh-abc", body, "sha256=" + sign_webhook_payload(body, "s3cret")
    )

    assert outcome.result.status is ExecutionStatus.COMPLETED
    assert executor.calls == [("notify", {"body": {"event": "push"}})]
    record = store.get_execution(outcome.execution_id)
    assert record.triggered_by == TriggerType.WEBHOOK.value
    assert record.metadata["webhook_id"] == hook.id
    assert store.get_webhook_for_workflow(workflow.id).last_triggered is not None


async def test_webhook_rejects_bad_signature_and_unknown_url(store):
    workflow = _workflow(store)
    store.create_webhook(workflow.id, url="wh-abc", secret="s3cret")
    service = _service(store)

    with pytest.raises(AuthenticationError):
        await service.run_webhook("wh-abc", b"{}", "sha256=deadbeef")
    with pytest.raises(NotFoundError):
        await service.run_webhook("wh-nope", b"{}", None)


async def test_webhook_without_signature_and_invalid_json(store):
    workflow = _workflow(
        store, nodes=[{"id": "a", "toolId": "notify", "inputs": {"body": "$var.webhookPayload"}}]
    )
    store.create_webhook(workflow.id, url="wh-abc", secret="s3cret")
    executor = EchoExecutor()

    await _service(store, executor).run_webhook("wh-abc", b"not json", None)
    assert executor.calls == [("notify", {"body": {"raw": "not json"}})]


async def test_disabled_webhook_is_rejected_with_bad_request(store):
    workflow = _workflow(store)
    store.create_webhook(workflow.id, url="wh-abc", secret="s3cret")
    store.webhooks[workflow.id].is_enabled = False
    executor = EchoExecutor()

    with pytest.raises(ValidationError) as excinfo:
        await _service(store, executor).run_webhook("wh-abc", b"{}", None)
    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "webhook is disabled"
    assert executor.calls == []
    assert store.list_executions(workflow.id)[1] == 0


async def test_due_jobs_run_and_advance(store):
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    workflow = _workflow(
        store, nodes=[{"id": "a", "toolId": "tick", "inputs": {"cron": "$var.cronExpression"}}]
    )
    store.upsert_scheduled_job(workflow.id, "*/5 * * * *", next_run=now - timedelta(minutes=1))
    disabled = _workflow_for(store, workflow.owner_id, is_enabled=False)
    store.upsert_scheduled_job(disabled.id, "* * * * *", next_run=now - timedelta(minutes=2))
    executor = EchoExecutor()

    results = await _service(store, executor, clock=lambda: now).run_due_jobs()

    assert [r["workflow_id"] for r in results] == [disabled.id, workflow.id]
    assert results[0]["status"] == "error"
    assert results[0]["error"] == "workflow is disabled"
    assert results[1]["status"] == "completed"
    assert executor.calls == [("tick", {"cron": "*/5 * * * *"})]
    assert store.get_scheduled_job(workflow.id).next_run == now + timedelta(minutes=5)
    assert store.get_scheduled_job(disabled.id).next_run == now + timedelta(minutes=1)
    assert store.get_execution(results[1]["execution_id"]).triggered_by == "scheduled"


def _workflow_for(store, owner_id, **kwargs):
    return store.create_workflow(owner_id, "other", nodes=[{"id": "x", "toolId": "noop"}], **kwargs)
