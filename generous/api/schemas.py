from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from generous.service.toolspace import parse_tool_patterns
from generous.service.workflow import NodeResult

# Maximum nested JSON depth accepted in graph and params payloads
MAX_JSON_DEPTH = 20
# Maximum array items per nested list
MAX_ARRAY_ITEMS = 1000
MAX_NODES = 500


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON payloads.

    Raises:
        ValueError: If depth or list length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validated_json(value: Any) -> Any:
    if value is None:
        return None
    _validate_json_depth(value)
    return value


class CamelModel(BaseModel):
    """Wire models speak camelCase; Python code uses the snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ErrorBody(BaseModel):
    error: str
    code: str
    details: Optional[Any] = None


# Workflows


class WorkflowCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, max_length=MAX_NODES)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    variables: Union[Dict[str, Any], List[Dict[str, Any]]] = Field(default_factory=dict)
    dashboard_id: Optional[str] = None
    toolspace_id: Optional[str] = None
    is_enabled: bool = True

    @field_validator("nodes", "edges", "variables")
    @classmethod
    def _bounded(cls, value: Any) -> Any:
        return _validated_json(value)


class WorkflowUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)
    nodes: Optional[List[Dict[str, Any]]] = Field(default=None, max_length=MAX_NODES)
    edges: Optional[List[Dict[str, Any]]] = None
    variables: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = None
    dashboard_id: Optional[str] = None
    toolspace_id: Optional[str] = None
    is_enabled: Optional[bool] = None

    @field_validator("nodes", "edges", "variables")
    @classmethod
    def _bounded(cls, value: Any) -> Any:
        return _validated_json(value)


class WorkflowResponse(CamelModel):
    id: str
    name: str
    owner_id: str
    description: Optional[str] = None
    dashboard_id: Optional[str] = None
    toolspace_id: Optional[str] = None
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    variables: Union[Dict[str, Any], List[Dict[str, Any]]] = Field(default_factory=dict)
    trigger_config: Optional[Dict[str, Any]] = None
    is_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Any) -> "WorkflowResponse":
        return cls(
            id=record.id,
            name=record.name,
            owner_id=record.owner_id,
            description=record.description,
            dashboard_id=record.dashboard_id,
            toolspace_id=record.toolspace_id,
            nodes=record.nodes,
            edges=record.edges,
            variables=record.variables,
            trigger_config=record.trigger_config,
            is_enabled=record.is_enabled,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class WorkflowListResponse(CamelModel):
    workflows: List[WorkflowResponse]


# Executions


class ExecuteRequest(CamelModel):
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("variables")
    @classmethod
    def _bounded(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validated_json(value) or {}


class NodeResultBody(CamelModel):
    node_id: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = 0

    @classmethod
    def from_result(cls, result: NodeResult) -> "NodeResultBody":
        return cls(
            node_id=result.node_id,
            status=result.status.value,
            started_at=result.started_at,
            completed_at=result.completed_at,
            output=result.output,
            error=result.error,
            attempts=result.attempts,
        )


def node_result_bodies(raw: Optional[Dict[str, Any]]) -> Dict[str, NodeResultBody]:
    """Convert stored node results (snake_case dicts) into response bodies."""
    bodies: Dict[str, NodeResultBody] = {}
    for node_id, value in (raw or {}).items():
        result = value if isinstance(value, NodeResult) else NodeResult.from_dict(value)
        bodies[node_id] = NodeResultBody.from_result(result)
    return bodies


class ExecutionResponse(CamelModel):
    execution_id: str
    status: str
    node_results: Dict[str, NodeResultBody] = Field(default_factory=dict)
    error: Optional[str] = None


class ExecutionRecordResponse(CamelModel):
    id: str
    workflow_id: str
    status: str
    triggered_by: str
    triggered_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    node_results: Dict[str, NodeResultBody] = Field(default_factory=dict)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Any) -> "ExecutionRecordResponse":
        return cls(
            id=record.id,
            workflow_id=record.workflow_id,
            status=record.status,
            triggered_by=record.triggered_by,
            triggered_at=record.triggered_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            node_results=node_result_bodies(record.node_results),
            error=record.error,
            metadata=record.metadata or {},
        )


class ExecutionListResponse(CamelModel):
    executions: List[ExecutionRecordResponse]
    total: int
    limit: int
    offset: int


# Schedules and triggers


class ScheduleRequest(CamelModel):
    type: Literal["cron", "webhook"]
    cron_expression: Optional[str] = Field(default=None, max_length=120)
    timezone: str = Field(default="UTC", max_length=64)


class CronScheduleBody(CamelModel):
    id: str
    cron_expression: str
    timezone: str
    is_enabled: bool
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class WebhookBody(CamelModel):
    id: str
    url: str
    secret: str
    is_enabled: bool
    last_triggered: Optional[datetime] = None


class ScheduleResponse(CamelModel):
    workflow_id: str
    cron: Optional[CronScheduleBody] = None
    webhook: Optional[WebhookBody] = None


class WebhookTriggerResponse(CamelModel):
    success: bool
    execution_id: str
    status: str


class CronJobResultBody(CamelModel):
    job_id: str
    workflow_id: str
    execution_id: Optional[str] = None
    status: str
    error: Optional[str] = None


class CronRunResponse(CamelModel):
    processed: int
    results: List[CronJobResultBody]
    timestamp: datetime


# Toolspaces


def _coerce_tools(value: Any) -> Any:
    if isinstance(value, str):
        return parse_tool_patterns(value)
    return value


class ToolspaceCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)
    dashboard_id: Optional[str] = None
    tools: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    permissions: Dict[str, Optional[bool]] = Field(default_factory=dict)
    quotas: Dict[str, Optional[float]] = Field(default_factory=dict)

    @field_validator("tools", mode="before")
    @classmethod
    def _split_tools(cls, value: Any) -> Any:
        return _coerce_tools(value)


class ToolspaceUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)
    dashboard_id: Optional[str] = None
    tools: Optional[List[str]] = Field(default=None, max_length=MAX_ARRAY_ITEMS)
    permissions: Optional[Dict[str, Optional[bool]]] = None
    quotas: Optional[Dict[str, Optional[float]]] = None

    @field_validator("tools", mode="before")
    @classmethod
    def _split_tools(cls, value: Any) -> Any:
        return _coerce_tools(value)


class ToolspaceResponse(CamelModel):
    id: str
    name: str
    owner_id: str
    description: Optional[str] = None
    dashboard_id: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    permissions: Dict[str, Any] = Field(default_factory=dict)
    quotas: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Any) -> "ToolspaceResponse":
        return cls(
            id=record.id,
            name=record.name,
            owner_id=record.owner_id,
            description=record.description,
            dashboard_id=record.dashboard_id,
            tools=list(record.tools or []),
            permissions=record.permissions or {},
            quotas=record.quotas or {},
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ToolspaceListResponse(CamelModel):
    toolspaces: List[ToolspaceResponse]


class ToolExecuteRequest(CamelModel):
    tool_id: Optional[str] = Field(default=None, max_length=200)
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params")
    @classmethod
    def _bounded(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validated_json(value) or {}


class RemainingQuotaBody(CamelModel):
    requests_per_minute: Optional[int] = None
    requests_per_hour: Optional[int] = None
    requests_per_day: Optional[int] = None
    tokens_per_day: Optional[int] = None
    cost_cents_per_day: Optional[float] = None


class ToolUsageBody(CamelModel):
    execution_time_ms: int
    tokens_used: int
    cost_cents: int
    remaining: Optional[RemainingQuotaBody] = None


class ToolExecuteResponse(CamelModel):
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    usage: ToolUsageBody


class UsageBucketBody(CamelModel):
    count: int = 0
    tokens: int = 0
    cost_cents: float = 0.0


class QuotaStatusResponse(CamelModel):
    toolspace_id: str
    quotas: Dict[str, Any] = Field(default_factory=dict)
    usage: Dict[str, UsageBucketBody] = Field(default_factory=dict)
    remaining: RemainingQuotaBody


class ToolCostBody(CamelModel):
    cost_cents: int = 0
    tokens: int = 0
    calls: int = 0


class UsageSummaryResponse(CamelModel):
    toolspace_id: str
    total_cost_cents: int
    total_cost_display: str
    total_tokens: int
    total_calls: int
    by_tool: Dict[str, ToolCostBody] = Field(default_factory=dict)


class CostEstimateRequest(CamelModel):
    tool_id: str = Field(..., min_length=1, max_length=200)
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params")
    @classmethod
    def _bounded(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validated_json(value) or {}


class CostEstimateResponse(CamelModel):
    tool_id: str
    estimated_tokens: int
    estimated_cost_cents: int
    estimated_cost_display: str
    is_external: bool
    note: str


class QuotaResetResponse(CamelModel):
    toolspace_id: str
    cleared_keys: int
