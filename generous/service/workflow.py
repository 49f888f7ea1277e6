from __future__ import annotations

import asyncio
import copy
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from generous.logging import get_logger, sanitize_error_message
from generous.service.errors import CyclicGraphError, QuotaExceededError, ToolDeniedError
from generous.service.executors import ToolExecutor, ToolOutcome
from generous.service.graph import (
    NodeOutputRef,
    ToolNode,
    VariableRef,
    WorkflowDefinition,
    get_value_at_path,
    parse_reference,
)

EVENT_TYPES = (
    "execution:start",
    "execution:complete",
    "execution:fail",
    "node:start",
    "node:complete",
    "node:fail",
    "node:skip",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class NodeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionTrigger:
    type: TriggerType = TriggerType.MANUAL
    user_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeResult:
    node_id: str
    status: NodeStatus
    started_at: datetime
    completed_at: datetime
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "NodeResult":
        return cls(
            node_id=raw["node_id"],
            status=NodeStatus(raw["status"]),
            started_at=_parse_datetime(raw.get("started_at")),
            completed_at=_parse_datetime(raw.get("completed_at")),
            output=raw.get("output"),
            error=raw.get("error"),
            attempts=int(raw.get("attempts", 0)),
        )


@dataclass
class ExecutionResult:
    status: ExecutionStatus
    node_results: Dict[str, NodeResult]
    started_at: datetime
    completed_at: datetime
    error: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed_nodes(self) -> List[str]:
        return [nid for nid, r in self.node_results.items() if r.status is NodeStatus.FAILED]

    def node_results_dict(self) -> Dict[str, Dict[str, Any]]:
        return {nid: r.to_dict() for nid, r in self.node_results.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "node_results": self.node_results_dict(),
            "error": self.error,
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
        }


@dataclass(frozen=True)
class WorkflowEvent:
    type: str
    execution_id: str
    timestamp: datetime
    node_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


EventHandler = Callable[[WorkflowEvent], Any]


class InputResolutionError(Exception):
    """A node's bindings could not be resolved; fails that node only."""


class WorkflowEngine:
    """Runs one workflow definition against an injected tool executor.

    Nodes run one at a time in topological order. A failed node never aborts
    the run: its dependents are skipped and independent branches continue.
    The engine holds no permission logic; a gated executor is injected when
    a toolspace applies.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        executor: ToolExecutor,
        *,
        execution_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.definition = definition
        self.executor = executor
        self.execution_id = execution_id or str(uuid.uuid4())
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep
        self._handlers: List[EventHandler] = []
        self.logger = get_logger(__name__)

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to engine events; returns an unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(
        self,
        event_type: str,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = WorkflowEvent(
            type=event_type,
            execution_id=self.execution_id,
            timestamp=self._clock(),
            node_id=node_id,
            data=data,
        )
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as exc:
                self.logger.warning(
                    "workflow_event_handler_failed",
                    event=event_type,
                    node=node_id,
                    error=str(exc),
                )

    def _resolve_variables(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        declared = {var.name: var for var in self.definition.variables}
        resolved = {name: copy.deepcopy(var.default_value) for name, var in declared.items()}
        for name, value in (overrides or {}).items():
            var = declared.get(name)
            if var is not None and not var.type.accepts(value):
                self.logger.warning(
                    "workflow_variable_type_mismatch",
                    workflow_id=self.definition.id,
                    variable=name,
                    expected=var.type.value,
                    actual=type(value).__name__,
                )
            resolved[name] = value
        return resolved

    def _resolve_inputs(
        self,
        value: Any,
        results: Dict[str, NodeResult],
        variables: Dict[str, Any],
    ) -> Any:
        ref = parse_reference(value)
        if isinstance(ref, VariableRef):
            if ref.name not in variables:
                raise InputResolutionError(f"unknown variable '{ref.name}'")
            return copy.deepcopy(variables[ref.name])
        if isinstance(ref, NodeOutputRef):
            if self.definition.get_node(ref.node_id) is None:
                raise InputResolutionError(f"reference to unknown node '{ref.node_id}'")
            upstream = results.get(ref.node_id)
            if upstream is None or upstream.status is not NodeStatus.SUCCESS:
                raise InputResolutionError(f"node '{ref.node_id}' has no successful output")
            return copy.deepcopy(get_value_at_path(upstream.output, ref.path))
        if isinstance(value, dict):
            return {k: self._resolve_inputs(v, results, variables) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_inputs(v, results, variables) for v in value]
        return value

    async def _invoke_with_retry(
        self, node: ToolNode, params: Dict[str, Any]
    ) -> Tuple[ToolOutcome, int]:
        """Invoke with the node's retry policy (hard cap of three retries)."""
        max_retries = node.retry.effective_max_retries
        attempt = 0
        while True:
            try:
                outcome = await self.executor.invoke(node.tool_id, copy.deepcopy(params))
            except (ToolDeniedError, QuotaExceededError):
                raise
            except Exception as exc:
                self.logger.warning(
                    "workflow_node_invoke_error",
                    node=node.id,
                    tool_id=node.tool_id,
                    attempt=attempt + 1,
                    error_type=type(exc).__name__,
                )
                outcome = ToolOutcome.failure(str(exc) or type(exc).__name__)
            if outcome.success or attempt >= max_retries:
                return outcome, attempt + 1
            delay = node.retry.delay_seconds(attempt)
            self.logger.warning(
                "workflow_node_retry",
                node=node.id,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_ms=int(delay * 1000),
                error=outcome.error,
            )
            await self._sleep(delay)
            attempt += 1

    def _finish_node(
        self,
        node: ToolNode,
        status: NodeStatus,
        started_at: datetime,
        *,
        output: Any = None,
        error: Optional[str] = None,
        attempts: int = 0,
    ) -> NodeResult:
        result = NodeResult(
            node_id=node.id,
            status=status,
            started_at=started_at,
            completed_at=self._clock(),
            output=output,
            error=error,
            attempts=attempts,
        )
        if status is NodeStatus.SUCCESS:
            self._emit("node:complete", node.id, {"output": output})
        elif status is NodeStatus.FAILED:
            self.logger.warning(
                "workflow_node_failed",
                workflow_id=self.definition.id,
                execution_id=self.execution_id,
                node=node.id,
                tool_id=node.tool_id,
                error=error,
            )
            self._emit("node:fail", node.id, {"error": error})
        else:
            self._emit("node:skip", node.id, {"reason": error})
        return result

    async def _run_node(
        self,
        node: ToolNode,
        results: Dict[str, NodeResult],
        variables: Dict[str, Any],
    ) -> NodeResult:
        started_at = self._clock()
        if node.disabled:
            return self._finish_node(node, NodeStatus.SKIPPED, started_at, error="node is disabled")
        for upstream_id in self.definition.upstream_of(node.id):
            upstream = results.get(upstream_id)
            if upstream is None or upstream.status is not NodeStatus.SUCCESS:
                state = upstream.status.value if upstream else "did not run"
                return self._finish_node(
                    node,
                    NodeStatus.SKIPPED,
                    started_at,
                    error=f"upstream node '{upstream_id}' {state}",
                )

        self._emit("node:start", node.id, {"tool_id": node.tool_id})
        try:
            params = self._resolve_inputs(node.inputs, results, variables)
        except InputResolutionError as exc:
            return self._finish_node(node, NodeStatus.FAILED, started_at, error=str(exc))

        outcome, attempts = await self._invoke_with_retry(node, params)
        if outcome.success:
            return self._finish_node(
                node, NodeStatus.SUCCESS, started_at, output=outcome.output, attempts=attempts
            )
        return self._finish_node(
            node,
            NodeStatus.FAILED,
            started_at,
            error=sanitize_error_message(outcome.error or "tool execution failed"),
            attempts=attempts,
        )

    def _abort(
        self, error: str, started_at: datetime, variables: Dict[str, Any]
    ) -> ExecutionResult:
        self.logger.warning(
            "workflow_definition_invalid",
            workflow_id=self.definition.id,
            execution_id=self.execution_id,
            error=error,
        )
        self._emit("execution:fail", data={"error": error})
        return ExecutionResult(
            status=ExecutionStatus.FAILED,
            node_results={},
            started_at=started_at,
            completed_at=self._clock(),
            error=error,
            variables=variables,
        )

    def _deny(
        self,
        node: ToolNode,
        exc: Exception,
        results: Dict[str, NodeResult],
        started_at: datetime,
        variables: Dict[str, Any],
    ) -> ExecutionResult:
        """End the run when the toolspace refuses a node's tool.

        The refused node was never invoked, so it gets no NodeResult and the
        remaining nodes are not attempted.
        """
        error = str(exc)
        self.logger.warning(
            "workflow_node_denied",
            workflow_id=self.definition.id,
            execution_id=self.execution_id,
            node=node.id,
            tool_id=node.tool_id,
            error_type=type(exc).__name__,
            error=error,
        )
        self._emit("execution:fail", node.id, {"error": error})
        return ExecutionResult(
            status=ExecutionStatus.FAILED,
            node_results=dict(results),
            started_at=started_at,
            completed_at=self._clock(),
            error=error,
            variables=variables,
        )

    async def execute(self, trigger: Optional[ExecutionTrigger] = None) -> ExecutionResult:
        trigger = trigger or ExecutionTrigger()
        started_at = self._clock()
        wall_start = time.monotonic()
        variables = self._resolve_variables(trigger.variables)
        self.logger.info(
            "workflow_execution_started",
            workflow_id=self.definition.id,
            execution_id=self.execution_id,
            trigger=trigger.type.value,
            user_id=trigger.user_id,
            nodes=len(self.definition.nodes),
        )
        self._emit("execution:start", data={"trigger": trigger.type.value})

        errors = self.definition.structural_errors()
        if errors:
            return self._abort(errors[0], started_at, variables)
        try:
            order = self.definition.topological_order()
        except CyclicGraphError:
            return self._abort("cyclic graph", started_at, variables)

        results: Dict[str, NodeResult] = {}
        for node_id in order:
            node = self.definition.get_node(node_id)
            try:
                results[node_id] = await self._run_node(node, results, variables)
            except (ToolDeniedError, QuotaExceededError) as exc:
                return self._deny(node, exc, results, started_at, variables)

        failed = [nid for nid, r in results.items() if r.status is NodeStatus.FAILED]
        status = ExecutionStatus.FAILED if failed else ExecutionStatus.COMPLETED
        result = ExecutionResult(
            status=status,
            node_results=results,
            started_at=started_at,
            completed_at=self._clock(),
            variables=variables,
        )
        self.logger.info(
            "workflow_execution_finished",
            workflow_id=self.definition.id,
            execution_id=self.execution_id,
            status=status.value,
            failed_nodes=failed,
            duration_ms=int((time.monotonic() - wall_start) * 1000),
        )
        if failed:
            self._emit("execution:fail", data={"failed_nodes": failed})
        else:
            self._emit("execution:complete", data={"status": status.value})
        return result
