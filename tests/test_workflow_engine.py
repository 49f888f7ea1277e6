"""Tests for workflow execution ordering, failure propagation, and retries."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from generous.service.errors import QuotaExceededError, ToolDeniedError
from generous.service.executors import ToolOutcome
from generous.service.graph import WorkflowDefinition
from generous.service.workflow import (
    ExecutionStatus,
    ExecutionTrigger,
    NodeStatus,
    TriggerType,
    WorkflowEngine,
)


class RecordingExecutor:
    """Returns scripted outcomes per tool id and records every call."""

    def __init__(self, outcomes: Dict[str, Any] | None = None):
        self.outcomes = outcomes or {}
        self.calls: List[tuple[str, Dict[str, Any]]] = []

    async def invoke(self, tool_id: str, params: Dict[str, Any]) -> ToolOutcome:
        self.calls.append((tool_id, params))
        scripted = self.outcomes.get(tool_id)
        if isinstance(scripted, list):
            scripted = scripted.pop(0)
        if isinstance(scripted, Exception):
            raise scripted
        if isinstance(scripted, ToolOutcome):
            return scripted
        return ToolOutcome.ok({"tool": tool_id, "params": params})


class FixedClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now


async def _no_sleep(_delay: float) -> None:
    return None


def _definition(nodes, edges=(), variables=None) -> WorkflowDefinition:
    return WorkflowDefinition.from_record(
        {"id": "wf", "name": "wf", "nodes": nodes, "edges": list(edges), "variables": variables or {}}
    )


def _engine(definition, executor, **kwargs) -> WorkflowEngine:
    kwargs.setdefault("sleep", _no_sleep)
    return WorkflowEngine(definition, executor, **kwargs)


async def test_all_nodes_succeed():
    definition = _definition(
        [
            {"id": "a", "toolId": "first"},
            {"id": "b", "toolId": "second"},
            {"id": "c", "toolId": "third"},
        ],
        edges=[{"source": "a", "target": "b"}, {"source": "b", "target": "c"}],
    )
    executor = RecordingExecutor()
    result = await _engine(definition, executor).execute()

    assert result.status is ExecutionStatus.COMPLETED
    assert result.error is None
    assert [c[0] for c in executor.calls] == ["first", "second", "third"]
    assert all(r.status is NodeStatus.SUCCESS for r in result.node_results.values())
    assert len(result.node_results) == 3


async def test_failure_skips_dependents_but_not_independent_branch():
    definition = _definition(
        [
            {"id": "a", "toolId": "broken"},
            {"id": "b", "toolId": "after-a"},
            {"id": "c", "toolId": "independent"},
        ],
        edges=[{"source": "a", "target": "b"}],
    )
    executor = RecordingExecutor({"broken": ToolOutcome.failure("boom")})
    result = await _engine(definition, executor).execute()

    assert result.status is ExecutionStatus.FAILED
    assert result.error is None
    assert result.node_results["a"].status is NodeStatus.FAILED
    assert result.node_results["a"].error == "boom"
    assert result.node_results["b"].status is NodeStatus.SKIPPED
    assert "upstream node 'a' failed" in result.node_results["b"].error
    assert result.node_results["c"].status is NodeStatus.SUCCESS
    assert [c[0] for c in executor.calls] == ["broken", "independent"]


async def test_skip_propagates_transitively():
    definition = _definition(
        [
            {"id": "a", "toolId": "broken"},
            {"id": "b", "toolId": "x"},
            {"id": "c", "toolId": "y", "inputs": {"v": {"$ref": "b.value"}}},
        ],
        edges=[{"source": "a", "target": "b"}],
    )
    executor = RecordingExecutor({"broken": ToolOutcome.failure("boom")})
    result = await _engine(definition, executor).execute()

    assert result.node_results["b"].status is NodeStatus.SKIPPED
    assert result.node_results["c"].status is NodeStatus.SKIPPED
    assert "upstream node 'b' skipped" in result.node_results["c"].error


async def test_cycle_fails_without_invoking_anything():
    definition = _definition(
        [{"id": "a", "toolId": "x"}, {"id": "b", "toolId": "y"}],
        edges=[{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
    )
    executor = RecordingExecutor()
    result = await _engine(definition, executor).execute()

    assert result.status is ExecutionStatus.FAILED
    assert result.error == "cyclic graph"
    assert result.node_results == {}
    assert executor.calls == []


async def test_structural_error_aborts_run():
    definition = _definition(
        [{"id": "a", "toolId": "x"}],
        edges=[{"source": "a", "target": "missing"}],
    )
    executor = RecordingExecutor()
    result = await _engine(definition, executor).execute()

    assert result.status is ExecutionStatus.FAILED
    assert "unknown node 'missing'" in result.error
    assert executor.calls == []


async def test_inputs_resolve_variables_and_upstream_outputs():
    definition = _definition(
        [
            {"id": "lookup", "toolId": "lookup", "inputs": {"city": "$var.city"}},
            {
                "id": "report",
                "toolId": "report",
                "inputs": {
                    "temp": {"$ref": "lookup.data.temp"},
                    "missing": {"$ref": "lookup.data.nope"},
                    "literal": [1, "two"],
                },
            },
        ],
        variables={"city": "Oslo"},
    )
    executor = RecordingExecutor({"lookup": ToolOutcome.ok({"data": {"temp": 7}})})
    result = await _engine(definition, executor).execute(
        ExecutionTrigger(type=TriggerType.MANUAL, variables={"city": "Bergen"})
    )

    assert result.status is ExecutionStatus.COMPLETED
    assert executor.calls[0] == ("lookup", {"city": "Bergen"})
    assert executor.calls[1] == ("report", {"temp": 7, "missing": None, "literal": [1, "two"]})


async def test_unknown_variable_fails_node():
    definition = _definition([{"id": "a", "toolId": "x", "inputs": {"v": "$var.nope"}}])
    executor = RecordingExecutor()
    result = await _engine(definition, executor).execute()

    assert result.node_results["a"].status is NodeStatus.FAILED
    assert result.node_results["a"].error == "unknown variable 'nope'"
    assert executor.calls == []


async def test_reference_to_unknown_node_fails_node():
    definition = _definition([{"id": "a", "toolId": "x", "inputs": {"v": {"$ref": "ghost.out"}}}])
    result = await _engine(definition, RecordingExecutor()).execute()

    assert result.node_results["a"].error == "reference to unknown node 'ghost'"


async def test_type_mismatch_is_a_warning_only():
    definition = _definition([{"id": "a", "toolId": "x", "inputs": {"n": "$var.n"}}], variables={"n": 1})
    executor = RecordingExecutor()
    result = await _engine(definition, executor).execute(ExecutionTrigger(variables={"n": "one"}))

    assert result.status is ExecutionStatus.COMPLETED
    assert executor.calls[0][1] == {"n": "one"}


async def test_disabled_node_is_skipped_and_blocks_dependents():
    definition = _definition(
        [{"id": "a", "toolId": "x", "disabled": True}, {"id": "b", "toolId": "y"}],
        edges=[{"source": "a", "target": "b"}],
    )
    executor = RecordingExecutor()
    result = await _engine(definition, executor).execute()

    assert result.node_results["a"].status is NodeStatus.SKIPPED
    assert result.node_results["a"].error == "node is disabled"
    assert result.node_results["b"].status is NodeStatus.SKIPPED
    assert result.status is ExecutionStatus.COMPLETED
    assert executor.calls == []


async def test_retry_until_success_with_backoff():
    delays: List[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    definition = _definition(
        [
            {
                "id": "a",
                "toolId": "flaky",
                "retryConfig": {"maxRetries": 3, "delayMs": 100, "backoffMultiplier": 2},
            }
        ]
    )
    executor = RecordingExecutor(
        {
            "flaky": [
                ToolOutcome.failure("try again"),
                RuntimeError("transport"),
                ToolOutcome.ok("done"),
            ]
        }
    )
    result = await _engine(definition, executor, sleep=record_sleep).execute()

    node = result.node_results["a"]
    assert node.status is NodeStatus.SUCCESS
    assert node.output == "done"
    assert node.attempts == 3
    assert delays == pytest.approx([0.1, 0.2])


async def test_retries_capped_at_three():
    definition = _definition([{"id": "a", "toolId": "bad", "retryConfig": {"maxRetries": 9, "delayMs": 0}}])
    executor = RecordingExecutor({"bad": ToolOutcome.failure("nope")})
    result = await _engine(definition, executor).execute()

    assert result.node_results["a"].attempts == 4
    assert len(executor.calls) == 4


@pytest.mark.parametrize(
    "denial",
    [
        QuotaExceededError("Rate limit exceeded: 1 requests per minute"),
        ToolDeniedError('Tool "@stripe/refund" is not allowed in this toolspace'),
    ],
)
async def test_toolspace_denial_ends_run_without_retry(denial):
    delays: List[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    definition = _definition(
        [
            {"id": "a", "toolId": "first"},
            {"id": "b", "toolId": "gated", "retryConfig": {"maxRetries": 3, "delayMs": 1000}},
            {"id": "c", "toolId": "independent"},
        ]
    )
    executor = RecordingExecutor({"gated": denial})
    engine = _engine(definition, executor, sleep=record_sleep)
    seen: List[tuple] = []
    engine.on(lambda event: seen.append((event.type, event.node_id)))

    result = await engine.execute()

    assert result.status is ExecutionStatus.FAILED
    assert result.error == str(denial)
    assert list(result.node_results) == ["a"]
    assert [c[0] for c in executor.calls] == ["first", "gated"]
    assert delays == []
    assert seen[-1] == ("execution:fail", "b")


async def test_executor_cannot_mutate_resolved_inputs():
    class MutatingExecutor(RecordingExecutor):
        async def invoke(self, tool_id, params):
            params["items"].append("mutated")
            return await super().invoke(tool_id, params)

    definition = _definition(
        [
            {"id": "a", "toolId": "x", "inputs": {"items": "$var.items"}},
            {"id": "b", "toolId": "y", "inputs": {"items": "$var.items"}},
        ],
        variables={"items": ["one"]},
    )
    executor = MutatingExecutor()
    await _engine(definition, executor).execute()

    # Each node gets its own copy of the variable, so b sees one mutation, not two
    assert executor.calls[1][1]["items"] == ["one", "mutated"]


async def test_error_messages_are_sanitized():
    definition = _definition([{"id": "a", "toolId": "db"}])
    executor = RecordingExecutor(
        {"db": ToolOutcome.failure("failed: SELECT password FROM users WHERE id = 1")}
    )
    result = await _engine(definition, executor).execute()

    assert "SELECT" not in result.node_results["a"].error


async def test_events_emitted_in_order_and_unsubscribe():
    definition = _definition(
        [{"id": "a", "toolId": "ok"}, {"id": "b", "toolId": "bad"}, {"id": "c", "toolId": "z"}],
        edges=[{"source": "b", "target": "c"}],
    )
    executor = RecordingExecutor({"bad": ToolOutcome.failure("x")})
    engine = _engine(definition, executor, execution_id="exec-1")
    seen: List[tuple] = []
    engine.on(lambda event: seen.append((event.type, event.node_id)))

    def broken_handler(event):
        raise ValueError("handler bug")

    unsubscribe = engine.on(broken_handler)
    await engine.execute()
    unsubscribe()

    assert seen == [
        ("execution:start", None),
        ("node:start", "a"),
        ("node:complete", "a"),
        ("node:start", "b"),
        ("node:fail", "b"),
        ("node:skip", "c"),
        ("execution:fail", None),
    ]


async def test_round_trip_definition_gives_identical_results():
    record = {
        "id": "wf",
        "name": "wf",
        "nodes": [
            {"id": "a", "toolId": "first", "inputs": {"q": "$var.q"}},
            {"id": "b", "toolId": "second", "inputs": {"prev": {"$ref": "a.params"}}},
        ],
        "edges": [{"source": "a", "target": "b"}],
        "variables": {"q": "hello"},
    }
    original = WorkflowDefinition.from_record(record)
    restored = WorkflowDefinition.from_record(original.to_record())

    first = await WorkflowEngine(original, RecordingExecutor(), clock=FixedClock()).execute()
    second = await WorkflowEngine(restored, RecordingExecutor(), clock=FixedClock()).execute()

    assert first.node_results_dict() == second.node_results_dict()
