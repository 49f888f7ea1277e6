from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from generous.logging import get_logger, log_execution_summary
from generous.service.errors import (
    AuthenticationError,
    ExecutionPersistenceError,
    NotFoundError,
    ServerError,
    ServiceError,
    ValidationError,
    WorkflowDisabledError,
)
from generous.service.executors import MeteredToolExecutor, ToolExecutor
from generous.service.graph import WorkflowDefinition
from generous.service.quota import QuotaService
from generous.service.toolspace import ToolspaceConfig, ToolspaceGate
from generous.service.triggers import next_run_time, verify_webhook_signature
from generous.service.workflow import (
    ExecutionResult,
    ExecutionStatus,
    ExecutionTrigger,
    TriggerType,
    WorkflowEngine,
)
from generous.storage.errors import StorageError
from generous.storage.models import ExecutionRecord, WorkflowRecord

logger = get_logger(__name__)

ABANDONED_ERROR = "execution abandoned"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunOutcome:
    execution_id: str
    result: ExecutionResult


class WorkflowRunService:
    """Owns the execution record lifecycle around one engine run.

    The record is written three times: created ``pending``, moved to
    ``running``, then to its terminal status. The writes are not atomic with
    the run; records stuck in ``running`` past ``stale_after_seconds`` are
    failed the next time they are read.
    """

    def __init__(
        self,
        store: Any,
        executor: ToolExecutor,
        quotas: QuotaService,
        *,
        stale_after_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.quotas = quotas
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock or _utcnow
        self._sleep = sleep

    def build_gate(self, workflow: WorkflowRecord, user_id: str) -> Optional[ToolspaceGate]:
        if not workflow.toolspace_id:
            return None
        toolspace = self.store.get_toolspace(workflow.toolspace_id)
        if not toolspace:
            raise NotFoundError(
                "toolspace not found", detail={"toolspace_id": workflow.toolspace_id}
            )
        return ToolspaceGate(
            ToolspaceConfig.from_record(toolspace.config_record()),
            self.quotas,
            user_id=user_id,
            toolspace_id=toolspace.id,
            dashboard_id=workflow.dashboard_id or toolspace.dashboard_id,
            workflow_id=workflow.id,
            usage_store=self.store,
        )

    async def _preflight(
        self, definition: WorkflowDefinition, gate: Optional[ToolspaceGate]
    ) -> ToolExecutor:
        """Refuse the run up front (403/429) rather than record a doomed execution."""
        if gate is None:
            return self.executor
        for node in definition.nodes:
            if not node.disabled:
                gate.check_policy(node.tool_id)
        await gate.check_quota()
        return MeteredToolExecutor(self.executor, gate)

    async def run(
        self,
        workflow: WorkflowRecord,
        trigger: ExecutionTrigger,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RunOutcome:
        if not workflow.is_enabled:
            raise WorkflowDisabledError("workflow is disabled", detail={"workflow_id": workflow.id})
        # Loaded fresh per run; edits never reach an in-flight execution
        definition = WorkflowDefinition.from_record(workflow.definition_record())
        gate = self.build_gate(workflow, trigger.user_id or workflow.owner_id)
        executor = await self._preflight(definition, gate)

        try:
            record = self.store.create_execution(
                workflow.id,
                triggered_by=trigger.type.value,
                metadata={"user_id": trigger.user_id, **(metadata or {})},
            )
        except Exception as exc:
            logger.error(
                "execution_record_create_failed",
                workflow_id=workflow.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("failed to record execution") from exc

        try:
            if self.store.update_execution(
                record.id, status=ExecutionStatus.RUNNING.value, started_at=self._clock()
            ) is None:
                raise StorageError("execution record vanished")
        except Exception as exc:
            logger.error(
                "execution_record_start_failed",
                workflow_id=workflow.id,
                execution_id=record.id,
                error=str(exc),
            )
            raise ExecutionPersistenceError(
                "failed to mark execution running", execution_id=record.id, cause=exc
            ) from exc

        engine = WorkflowEngine(
            definition,
            executor,
            execution_id=record.id,
            clock=self._clock,
            sleep=self._sleep,
        )
        result = await engine.execute(trigger)

        try:
            updated = self.store.update_execution(
                record.id,
                status=result.status.value,
                completed_at=result.completed_at,
                node_results=result.node_results_dict(),
                error=result.error,
            )
            if updated is None:
                raise StorageError("execution record vanished")
        except Exception as exc:
            logger.error(
                "execution_record_finish_failed",
                workflow_id=workflow.id,
                execution_id=record.id,
                status=result.status.value,
                error=str(exc),
            )
            raise ExecutionPersistenceError(
                "failed to persist execution result",
                execution_id=record.id,
                result=result,
                cause=exc,
            ) from exc

        log_execution_summary(
            workflow.id,
            record.id,
            {nid: r.status.value for nid, r in result.node_results.items()},
            logger=logger,
        )
        return RunOutcome(execution_id=record.id, result=result)

    def _reap_if_stale(self, record: ExecutionRecord, now: datetime) -> ExecutionRecord:
        if record.status not in (ExecutionStatus.RUNNING.value, ExecutionStatus.PENDING.value):
            return record
        since = record.started_at or record.triggered_at
        if since is None or now - since < self.stale_after:
            return record
        logger.warning(
            "execution_abandoned",
            execution_id=record.id,
            workflow_id=record.workflow_id,
            status=record.status,
        )
        updated = self.store.update_execution(
            record.id,
            status=ExecutionStatus.FAILED.value,
            completed_at=now,
            error=ABANDONED_ERROR,
        )
        return updated or record

    def list_executions(
        self, workflow_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[ExecutionRecord], int]:
        records, total = self.store.list_executions(workflow_id, limit=limit, offset=offset)
        now = self._clock()
        return [self._reap_if_stale(r, now) for r in records], total

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self.store.get_execution(execution_id)
        if record is None:
            return None
        return self._reap_if_stale(record, self._clock())

    async def run_webhook(
        self, url: str, body: bytes, signature: Optional[str]
    ) -> RunOutcome:
        hook = self.store.get_webhook_by_url(url)
        if not hook:
            raise NotFoundError("webhook not found")
        if not hook.is_enabled:
            raise ValidationError("webhook is disabled", detail={"webhook_id": hook.id})
        if signature and not verify_webhook_signature(body, signature, hook.secret):
            logger.warning("webhook_signature_invalid", webhook_id=hook.id)
            raise AuthenticationError("invalid webhook signature")
        workflow = self.store.get_workflow(hook.workflow_id)
        if not workflow:
            raise NotFoundError("workflow not found")
        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            payload = {"raw": body.decode("utf-8", errors="replace")}
        self.store.touch_webhook(hook.id, self._clock())
        trigger = ExecutionTrigger(
            type=TriggerType.WEBHOOK,
            user_id=workflow.owner_id,
            variables={"webhookPayload": payload},
        )
        return await self.run(workflow, trigger, metadata={"webhook_id": hook.id})

    async def run_due_jobs(self) -> List[Dict[str, Any]]:
        """Run every enabled scheduled job whose next run time has passed."""
        now = self._clock()
        results: List[Dict[str, Any]] = []
        for job in self.store.list_due_jobs(now):
            entry: Dict[str, Any] = {"job_id": job.id, "workflow_id": job.workflow_id}
            try:
                workflow = self.store.get_workflow(job.workflow_id)
                if not workflow:
                    raise NotFoundError("workflow not found")
                trigger = ExecutionTrigger(
                    type=TriggerType.SCHEDULED,
                    user_id=workflow.owner_id,
                    variables={"cronExpression": job.cron_expression, "scheduledAt": now.isoformat()},
                )
                outcome = await self.run(workflow, trigger, metadata={"scheduled_job_id": job.id})
                entry.update(execution_id=outcome.execution_id, status=outcome.result.status.value)
            except ExecutionPersistenceError as exc:
                entry.update(execution_id=exc.execution_id, status="error", error=exc.message)
            except ServiceError as exc:
                entry.update(status="error", error=exc.message)
            finally:
                self.store.mark_job_run(job.id, last_run=now, next_run=next_run_time(job.cron_expression, now))
            results.append(entry)
        logger.info("scheduled_jobs_processed", processed=len(results))
        return results
