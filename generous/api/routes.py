from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from generous.api.schemas import (
    CostEstimateRequest,
    CostEstimateResponse,
    CronJobResultBody,
    CronRunResponse,
    CronScheduleBody,
    ExecuteRequest,
    ExecutionListResponse,
    ExecutionRecordResponse,
    ExecutionResponse,
    QuotaResetResponse,
    QuotaStatusResponse,
    RemainingQuotaBody,
    ScheduleRequest,
    ScheduleResponse,
    ToolCostBody,
    ToolExecuteRequest,
    ToolExecuteResponse,
    ToolspaceCreateRequest,
    ToolspaceListResponse,
    ToolspaceResponse,
    ToolspaceUpdateRequest,
    ToolUsageBody,
    UsageBucketBody,
    UsageSummaryResponse,
    WebhookBody,
    WebhookTriggerResponse,
    WorkflowCreateRequest,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowUpdateRequest,
    node_result_bodies,
)
from generous.logging import get_logger
from generous.service.auth import AuthContext
from generous.service.cost import aggregate_costs, estimate_cost, format_cost
from generous.service.executors import MeteredToolExecutor
from generous.service.graph import WorkflowDefinition
from generous.service.quota import QuotaConfig
from generous.service.runtime import get_runtime
from generous.service.toolspace import ToolspaceConfig, ToolspaceGate, ToolspacePermissions
from generous.service.triggers import (
    generate_webhook_credentials,
    next_run_time,
    validate_cron_expression,
)
from generous.service.workflow import ExecutionStatus, ExecutionTrigger, TriggerType

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

MAX_EXECUTION_PAGE = 100
_NULLABLE_WORKFLOW_FIELDS = {"description", "dashboard_id", "toolspace_id"}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def _get_owned_workflow(runtime, workflow_id: str, principal: AuthContext):
    workflow = runtime.store.get_workflow(workflow_id)
    if not workflow:
        raise _http_error("not_found", "workflow not found", status_code=404)
    if workflow.owner_id != principal.user_id:
        raise _http_error("forbidden", "workflow is owned by another user", status_code=403)
    return workflow


def _get_owned_toolspace(runtime, toolspace_id: str, principal: AuthContext):
    toolspace = runtime.store.get_toolspace(toolspace_id)
    if not toolspace:
        raise _http_error("not_found", "toolspace not found", status_code=404)
    if toolspace.owner_id != principal.user_id:
        raise _http_error("forbidden", "toolspace is owned by another user", status_code=403)
    return toolspace


def _check_graph_shape(name: str, nodes, edges, variables) -> None:
    # Node shapes are checked on save; structure and cycles are reported per run
    WorkflowDefinition.from_record(
        {"name": name, "nodes": nodes, "edges": edges, "variables": variables}
    )


def _schedule_response(runtime, workflow_id: str) -> ScheduleResponse:
    job = runtime.store.get_scheduled_job(workflow_id)
    hook = runtime.store.get_webhook_for_workflow(workflow_id)
    return ScheduleResponse(
        workflow_id=workflow_id,
        cron=CronScheduleBody(
            id=job.id,
            cron_expression=job.cron_expression,
            timezone=job.timezone,
            is_enabled=job.is_enabled,
            last_run=job.last_run,
            next_run=job.next_run,
        )
        if job
        else None,
        webhook=WebhookBody(
            id=hook.id,
            url=hook.url,
            secret=hook.secret,
            is_enabled=hook.is_enabled,
            last_triggered=hook.last_triggered,
        )
        if hook
        else None,
    )


# Workflows


@router.get("/workflows", response_model=WorkflowListResponse, tags=["workflows"])
async def list_workflows(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    records = runtime.store.list_workflows(principal.user_id)
    return WorkflowListResponse(workflows=[WorkflowResponse.from_record(r) for r in records])


@router.post("/workflows", response_model=WorkflowResponse, status_code=201, tags=["workflows"])
async def create_workflow(body: WorkflowCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    _check_graph_shape(body.name, body.nodes, body.edges, body.variables)
    if body.toolspace_id:
        _get_owned_toolspace(runtime, body.toolspace_id, principal)
    record = runtime.store.create_workflow(
        principal.user_id,
        body.name,
        nodes=body.nodes,
        edges=body.edges,
        variables=body.variables,
        description=body.description,
        dashboard_id=body.dashboard_id,
        toolspace_id=body.toolspace_id,
        is_enabled=body.is_enabled,
    )
    logger.info("workflow_created", workflow_id=record.id, user_id=principal.user_id)
    return WorkflowResponse.from_record(record)


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse, tags=["workflows"])
async def get_workflow(
    workflow_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    return WorkflowResponse.from_record(_get_owned_workflow(runtime, workflow_id, principal))


@router.patch("/workflows/{workflow_id}", response_model=WorkflowResponse, tags=["workflows"])
async def update_workflow(
    body: WorkflowUpdateRequest,
    workflow_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    current = _get_owned_workflow(runtime, workflow_id, principal)
    updates = {
        key: value
        for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key in _NULLABLE_WORKFLOW_FIELDS
    }
    if not updates:
        return WorkflowResponse.from_record(current)
    if {"nodes", "edges", "variables"} & set(updates):
        _check_graph_shape(
            updates.get("name", current.name),
            updates.get("nodes", current.nodes),
            updates.get("edges", current.edges),
            updates.get("variables", current.variables),
        )
    if updates.get("toolspace_id"):
        _get_owned_toolspace(runtime, updates["toolspace_id"], principal)
    record = runtime.store.update_workflow(workflow_id, **updates)
    if not record:
        raise _http_error("not_found", "workflow not found", status_code=404)
    logger.info("workflow_updated", workflow_id=workflow_id, fields=sorted(updates))
    return WorkflowResponse.from_record(record)


@router.delete("/workflows/{workflow_id}", status_code=204, tags=["workflows"])
async def delete_workflow(
    workflow_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _get_owned_workflow(runtime, workflow_id, principal)
    runtime.store.delete_workflow(workflow_id)
    logger.info("workflow_deleted", workflow_id=workflow_id, user_id=principal.user_id)
    return None


# Executions


@router.post(
    "/workflows/{workflow_id}/execute", response_model=ExecutionResponse, tags=["executions"]
)
async def execute_workflow(
    body: Optional[ExecuteRequest] = None,
    workflow_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    workflow = _get_owned_workflow(runtime, workflow_id, principal)
    trigger = ExecutionTrigger(
        type=TriggerType.MANUAL,
        user_id=principal.user_id,
        variables=body.variables if body else {},
    )
    outcome = await runtime.runs.run(workflow, trigger)
    return ExecutionResponse(
        execution_id=outcome.execution_id,
        status=outcome.result.status.value,
        node_results=node_result_bodies(outcome.result.node_results),
        error=outcome.result.error,
    )


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=ExecutionListResponse,
    tags=["executions"],
)
async def list_executions(
    workflow_id: str = Path(..., max_length=255),
    limit: int = Query(50, ge=1, le=MAX_EXECUTION_PAGE),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _get_owned_workflow(runtime, workflow_id, principal)
    records, total = runtime.runs.list_executions(workflow_id, limit=limit, offset=offset)
    return ExecutionListResponse(
        executions=[ExecutionRecordResponse.from_record(r) for r in records],
        total=total,
        limit=limit,
        offset=offset,
    )


# Schedules


@router.post(
    "/workflows/{workflow_id}/schedule", response_model=ScheduleResponse, tags=["schedules"]
)
async def create_schedule(
    body: ScheduleRequest,
    workflow_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _get_owned_workflow(runtime, workflow_id, principal)
    if body.type == "cron":
        expression = validate_cron_expression(body.cron_expression)
        runtime.store.upsert_scheduled_job(
            workflow_id,
            expression,
            timezone=body.timezone,
            next_run=next_run_time(expression),
        )
        trigger_config = {"type": "cron", "cronExpression": expression, "timezone": body.timezone}
    else:
        hook = runtime.store.get_webhook_for_workflow(workflow_id)
        if not hook:
            url, secret = generate_webhook_credentials()
            hook = runtime.store.create_webhook(workflow_id, url=url, secret=secret)
        trigger_config = {"type": "webhook", "webhookUrl": hook.url}
    runtime.store.update_workflow(workflow_id, trigger_config=trigger_config)
    logger.info("workflow_schedule_set", workflow_id=workflow_id, trigger_type=body.type)
    return _schedule_response(runtime, workflow_id)


@router.get(
    "/workflows/{workflow_id}/schedule", response_model=ScheduleResponse, tags=["schedules"]
)
async def get_schedule(
    workflow_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _get_owned_workflow(runtime, workflow_id, principal)
    return _schedule_response(runtime, workflow_id)


@router.delete(
    "/workflows/{workflow_id}/schedule", response_model=ScheduleResponse, tags=["schedules"]
)
async def delete_schedule(
    workflow_id: str = Path(..., max_length=255),
    trigger_type: Literal["cron", "webhook", "both"] = Query("both", alias="type"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _get_owned_workflow(runtime, workflow_id, principal)
    if trigger_type in ("cron", "both"):
        runtime.store.delete_scheduled_job(workflow_id)
    if trigger_type in ("webhook", "both"):
        runtime.store.delete_webhook(workflow_id)
    remaining = _schedule_response(runtime, workflow_id)
    if remaining.cron:
        trigger_config = {
            "type": "cron",
            "cronExpression": remaining.cron.cron_expression,
            "timezone": remaining.cron.timezone,
        }
    elif remaining.webhook:
        trigger_config = {"type": "webhook", "webhookUrl": remaining.webhook.url}
    else:
        trigger_config = None
    runtime.store.update_workflow(workflow_id, trigger_config=trigger_config)
    logger.info("workflow_schedule_removed", workflow_id=workflow_id, trigger_type=trigger_type)
    return remaining


# Triggers


@router.post("/webhooks/{url}", response_model=WebhookTriggerResponse, tags=["triggers"])
async def trigger_webhook(
    request: Request,
    url: str = Path(..., max_length=255),
    x_webhook_signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
):
    runtime = get_runtime()
    body = await request.body()
    outcome = await runtime.runs.run_webhook(url, body, x_webhook_signature)
    return WebhookTriggerResponse(
        success=outcome.result.status is ExecutionStatus.COMPLETED,
        execution_id=outcome.execution_id,
        status=outcome.result.status.value,
    )


@router.get("/cron", response_model=CronRunResponse, tags=["triggers"])
async def run_cron(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    secret = runtime.settings.cron_secret
    if secret and not hmac.compare_digest(authorization or "", f"Bearer {secret}"):
        raise _http_error("unauthorized", "invalid cron secret", status_code=401)
    results = await runtime.runs.run_due_jobs()
    return CronRunResponse(
        processed=len(results),
        results=[CronJobResultBody(**entry) for entry in results],
        timestamp=datetime.now(timezone.utc),
    )


# Toolspaces


@router.get("/toolspaces", response_model=ToolspaceListResponse, tags=["toolspaces"])
async def list_toolspaces(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    records = runtime.store.list_toolspaces(principal.user_id)
    return ToolspaceListResponse(toolspaces=[ToolspaceResponse.from_record(r) for r in records])


@router.post("/toolspaces", response_model=ToolspaceResponse, status_code=201, tags=["toolspaces"])
async def create_toolspace(body: ToolspaceCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    record = runtime.store.create_toolspace(
        principal.user_id,
        body.name,
        dashboard_id=body.dashboard_id,
        description=body.description,
        tools=body.tools,
        permissions=ToolspacePermissions.from_record(body.permissions).to_record(),
        quotas=QuotaConfig.from_record(body.quotas).to_record(),
    )
    logger.info("toolspace_created", toolspace_id=record.id, user_id=principal.user_id)
    return ToolspaceResponse.from_record(record)


@router.get("/toolspaces/{toolspace_id}", response_model=ToolspaceResponse, tags=["toolspaces"])
async def get_toolspace(
    toolspace_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    return ToolspaceResponse.from_record(_get_owned_toolspace(runtime, toolspace_id, principal))


@router.patch("/toolspaces/{toolspace_id}", response_model=ToolspaceResponse, tags=["toolspaces"])
async def update_toolspace(
    body: ToolspaceUpdateRequest,
    toolspace_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    current = _get_owned_toolspace(runtime, toolspace_id, principal)
    updates = body.model_dump(exclude_unset=True)
    if "permissions" in updates:
        updates["permissions"] = ToolspacePermissions.from_record(updates["permissions"]).to_record()
    if "quotas" in updates:
        updates["quotas"] = QuotaConfig.from_record(updates["quotas"]).to_record()
    if not updates:
        return ToolspaceResponse.from_record(current)
    record = runtime.store.update_toolspace(toolspace_id, **updates)
    if not record:
        raise _http_error("not_found", "toolspace not found", status_code=404)
    logger.info("toolspace_updated", toolspace_id=toolspace_id, fields=sorted(updates))
    return ToolspaceResponse.from_record(record)


@router.post(
    "/toolspaces/{toolspace_id}/execute", response_model=ToolExecuteResponse, tags=["toolspaces"]
)
async def execute_tool(
    body: ToolExecuteRequest,
    toolspace_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    if not body.tool_id:
        raise _http_error("validation_error", "toolId is required", status_code=400)
    toolspace = _get_owned_toolspace(runtime, toolspace_id, principal)
    config = ToolspaceConfig.from_record(toolspace.config_record())
    gate = ToolspaceGate(
        config,
        runtime.quotas,
        user_id=principal.user_id,
        toolspace_id=toolspace.id,
        dashboard_id=toolspace.dashboard_id,
        usage_store=runtime.store,
    )
    outcome = await MeteredToolExecutor(runtime.tool_executor, gate).invoke(
        body.tool_id, body.params
    )
    remaining = await runtime.quotas.get_remaining_quota(
        principal.user_id, toolspace.id, config.quotas
    )
    usage = outcome.usage or {}
    return ToolExecuteResponse(
        success=outcome.success,
        result=outcome.output,
        error=outcome.error,
        usage=ToolUsageBody(
            execution_time_ms=usage.get("execution_time_ms", 0),
            tokens_used=usage.get("tokens_used", 0),
            cost_cents=usage.get("cost_cents", 0),
            remaining=RemainingQuotaBody(**remaining.as_dict()),
        ),
    )


@router.post(
    "/toolspaces/{toolspace_id}/estimate",
    response_model=CostEstimateResponse,
    tags=["toolspaces"],
)
async def estimate_tool_cost(
    body: CostEstimateRequest,
    toolspace_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _get_owned_toolspace(runtime, toolspace_id, principal)
    estimate = estimate_cost(body.tool_id, body.params)
    return CostEstimateResponse(
        tool_id=body.tool_id,
        estimated_tokens=estimate.estimated_tokens,
        estimated_cost_cents=estimate.estimated_cost_cents,
        estimated_cost_display=format_cost(estimate.estimated_cost_cents),
        is_external=estimate.is_external,
        note=estimate.note,
    )


@router.get(
    "/toolspaces/{toolspace_id}/quota", response_model=QuotaStatusResponse, tags=["toolspaces"]
)
async def get_quota_status(
    toolspace_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    toolspace = _get_owned_toolspace(runtime, toolspace_id, principal)
    quotas = QuotaConfig.from_record(toolspace.quotas)
    stats = await runtime.quotas.get_usage_stats(principal.user_id, toolspace.id)
    remaining = await runtime.quotas.get_remaining_quota(principal.user_id, toolspace.id, quotas)
    return QuotaStatusResponse(
        toolspace_id=toolspace.id,
        quotas=quotas.to_record(),
        usage={
            period: UsageBucketBody(
                count=snap.count, tokens=snap.tokens, cost_cents=snap.cost_cents
            )
            for period, snap in stats.items()
        },
        remaining=RemainingQuotaBody(**remaining.as_dict()),
    )


@router.delete(
    "/toolspaces/{toolspace_id}/quota", response_model=QuotaResetResponse, tags=["toolspaces"]
)
async def reset_quota_usage(
    toolspace_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    toolspace = _get_owned_toolspace(runtime, toolspace_id, principal)
    cleared = await runtime.quotas.reset_usage(principal.user_id, toolspace.id)
    return QuotaResetResponse(toolspace_id=toolspace.id, cleared_keys=cleared)


@router.get(
    "/toolspaces/{toolspace_id}/usage", response_model=UsageSummaryResponse, tags=["toolspaces"]
)
async def get_usage_summary(
    toolspace_id: str = Path(..., max_length=255),
    limit: int = Query(1000, ge=1, le=10000),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    toolspace = _get_owned_toolspace(runtime, toolspace_id, principal)
    rows = runtime.store.list_tool_usage(
        toolspace_id=toolspace.id, user_id=principal.user_id, limit=limit
    )
    summary = aggregate_costs(rows)
    return UsageSummaryResponse(
        toolspace_id=toolspace.id,
        total_cost_cents=summary.total_cost_cents,
        total_cost_display=format_cost(summary.total_cost_cents),
        total_tokens=summary.total_tokens,
        total_calls=summary.total_calls,
        by_tool={
            tool_id: ToolCostBody(cost_cents=t.cost_cents, tokens=t.tokens, calls=t.calls)
            for tool_id, t in summary.by_tool.items()
        },
    )
