from __future__ import annotations

import copy
import json
import threading
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from generous.logging import get_logger
from generous.storage.errors import ConstraintViolation, StorageError
from generous.storage.models import (
    ExecutionRecord,
    ScheduledJob,
    Session,
    ToolspaceRecord,
    ToolUsageRecord,
    User,
    Webhook,
    WorkflowRecord,
    new_id,
    utcnow,
)

T = TypeVar("T")

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "expires_at",
    "triggered_at",
    "started_at",
    "completed_at",
    "last_run",
    "next_run",
    "last_triggered",
}

_WORKFLOW_MUTABLE = {
    "name",
    "description",
    "nodes",
    "edges",
    "variables",
    "dashboard_id",
    "toolspace_id",
    "trigger_config",
    "is_enabled",
}
_TOOLSPACE_MUTABLE = {"name", "description", "dashboard_id", "tools", "permissions", "quotas"}
_EXECUTION_MUTABLE = {"status", "started_at", "completed_at", "node_results", "error", "metadata"}


def _serialize(record: Any) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _deserialize(cls: Type[T], raw: Dict[str, Any]) -> T:
    known = {f.name for f in fields(cls)}
    values = {}
    for key, value in raw.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        values[key] = value
    return cls(**values)


class MemoryStore:
    """In-memory store with an optional JSON snapshot under ``fs_root/state``.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self, fs_root: str = "/tmp/generous", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.workflows: Dict[str, WorkflowRecord] = {}
        self.executions: Dict[str, ExecutionRecord] = {}
        self.toolspaces: Dict[str, ToolspaceRecord] = {}
        self.tool_usage: List[ToolUsageRecord] = []
        self.scheduled_jobs: Dict[str, ScheduledJob] = {}
        self.webhooks: Dict[str, Webhook] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [_serialize(u) for u in self.users.values()],
            "sessions": [_serialize(s) for s in self.sessions.values()],
            "workflows": [_serialize(w) for w in self.workflows.values()],
            "executions": [_serialize(e) for e in self.executions.values()],
            "toolspaces": [_serialize(t) for t in self.toolspaces.values()],
            "tool_usage": [_serialize(u) for u in self.tool_usage],
            "scheduled_jobs": [_serialize(j) for j in self.scheduled_jobs.values()],
            "webhooks": [_serialize(h) for h in self.webhooks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except Exception as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: _deserialize(User, u) for u in data.get("users", [])}
        self.sessions = {s["id"]: _deserialize(Session, s) for s in data.get("sessions", [])}
        self.workflows = {
            w["id"]: _deserialize(WorkflowRecord, w) for w in data.get("workflows", [])
        }
        self.executions = {
            e["id"]: _deserialize(ExecutionRecord, e) for e in data.get("executions", [])
        }
        self.toolspaces = {
            t["id"]: _deserialize(ToolspaceRecord, t) for t in data.get("toolspaces", [])
        }
        self.tool_usage = [_deserialize(ToolUsageRecord, u) for u in data.get("tool_usage", [])]
        self.scheduled_jobs = {
            j["workflow_id"]: _deserialize(ScheduledJob, j)
            for j in data.get("scheduled_jobs", [])
        }
        self.webhooks = {
            h["workflow_id"]: _deserialize(Webhook, h) for h in data.get("webhooks", [])
        }
        return True

    # users / sessions
    def create_user(self, email: str, handle: Optional[str] = None) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=new_id(), email=email, handle=handle)
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return copy.deepcopy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.deepcopy(user)

    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
            self.sessions[sess.id] = sess
            self._persist_state()
            return copy.deepcopy(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return copy.deepcopy(self.sessions.get(session_id))

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    # workflows
    def create_workflow(
        self,
        owner_id: str,
        name: str,
        *,
        nodes: Optional[List[Dict[str, Any]]] = None,
        edges: Optional[List[Dict[str, Any]]] = None,
        variables: Any = None,
        description: Optional[str] = None,
        dashboard_id: Optional[str] = None,
        toolspace_id: Optional[str] = None,
        trigger_config: Optional[Dict[str, Any]] = None,
        is_enabled: bool = True,
    ) -> WorkflowRecord:
        with self._data_lock:
            if toolspace_id and toolspace_id not in self.toolspaces:
                raise ConstraintViolation("toolspace does not exist", {"toolspace_id": toolspace_id})
            record = WorkflowRecord(
                id=new_id(),
                name=name,
                owner_id=owner_id,
                nodes=copy.deepcopy(nodes or []),
                edges=copy.deepcopy(edges or []),
                variables=copy.deepcopy(variables if variables is not None else {}),
                description=description,
                dashboard_id=dashboard_id,
                toolspace_id=toolspace_id,
                trigger_config=copy.deepcopy(trigger_config),
                is_enabled=is_enabled,
            )
            self.workflows[record.id] = record
            self._persist_state()
            return copy.deepcopy(record)

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        with self._data_lock:
            return copy.deepcopy(self.workflows.get(workflow_id))

    def list_workflows(self, owner_id: str) -> List[WorkflowRecord]:
        with self._data_lock:
            owned = [w for w in self.workflows.values() if w.owner_id == owner_id]
            owned.sort(key=lambda w: w.updated_at, reverse=True)
            return copy.deepcopy(owned)

    def update_workflow(self, workflow_id: str, **updates: Any) -> Optional[WorkflowRecord]:
        unknown = set(updates) - _WORKFLOW_MUTABLE
        if unknown:
            raise ValueError(f"unknown workflow fields: {sorted(unknown)}")
        with self._data_lock:
            record = self.workflows.get(workflow_id)
            if not record:
                return None
            toolspace_id = updates.get("toolspace_id")
            if toolspace_id and toolspace_id not in self.toolspaces:
                raise ConstraintViolation("toolspace does not exist", {"toolspace_id": toolspace_id})
            for key, value in updates.items():
                setattr(record, key, copy.deepcopy(value))
            record.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(record)

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._data_lock:
            if self.workflows.pop(workflow_id, None) is None:
                return False
            self.executions = {
                eid: e for eid, e in self.executions.items() if e.workflow_id != workflow_id
            }
            self.scheduled_jobs.pop(workflow_id, None)
            self.webhooks.pop(workflow_id, None)
            self._persist_state()
            return True

    # executions
    def create_execution(
        self,
        workflow_id: str,
        *,
        triggered_by: str = "manual",
        metadata: Optional[Dict[str, Any]] = None,
        status: str = "pending",
    ) -> ExecutionRecord:
        with self._data_lock:
            if workflow_id not in self.workflows:
                raise ConstraintViolation("workflow does not exist", {"workflow_id": workflow_id})
            record = ExecutionRecord(
                id=new_id(),
                workflow_id=workflow_id,
                status=status,
                triggered_by=triggered_by,
                metadata=copy.deepcopy(metadata or {}),
            )
            self.executions[record.id] = record
            self._persist_state()
            return copy.deepcopy(record)

    def update_execution(self, execution_id: str, **updates: Any) -> Optional[ExecutionRecord]:
        unknown = set(updates) - _EXECUTION_MUTABLE
        if unknown:
            raise ValueError(f"unknown execution fields: {sorted(unknown)}")
        with self._data_lock:
            record = self.executions.get(execution_id)
            if not record:
                return None
            for key, value in updates.items():
                setattr(record, key, copy.deepcopy(value))
            self._persist_state()
            return copy.deepcopy(record)

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._data_lock:
            return copy.deepcopy(self.executions.get(execution_id))

    def list_executions(
        self, workflow_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[ExecutionRecord], int]:
        with self._data_lock:
            matches = [e for e in self.executions.values() if e.workflow_id == workflow_id]
            matches.sort(key=lambda e: e.triggered_at, reverse=True)
            return copy.deepcopy(matches[offset : offset + limit]), len(matches)

    # toolspaces
    def create_toolspace(
        self,
        owner_id: str,
        name: str,
        *,
        dashboard_id: Optional[str] = None,
        description: Optional[str] = None,
        tools: Optional[List[str]] = None,
        permissions: Optional[Dict[str, Any]] = None,
        quotas: Optional[Dict[str, Any]] = None,
    ) -> ToolspaceRecord:
        with self._data_lock:
            record = ToolspaceRecord(
                id=new_id(),
                name=name,
                owner_id=owner_id,
                dashboard_id=dashboard_id,
                description=description,
                tools=list(tools or []),
                permissions=dict(permissions or {}),
                quotas=dict(quotas or {}),
            )
            self.toolspaces[record.id] = record
            self._persist_state()
            return copy.deepcopy(record)

    def get_toolspace(self, toolspace_id: str) -> Optional[ToolspaceRecord]:
        with self._data_lock:
            return copy.deepcopy(self.toolspaces.get(toolspace_id))

    def list_toolspaces(self, owner_id: str) -> List[ToolspaceRecord]:
        with self._data_lock:
            owned = [t for t in self.toolspaces.values() if t.owner_id == owner_id]
            owned.sort(key=lambda t: t.created_at, reverse=True)
            return copy.deepcopy(owned)

    def update_toolspace(self, toolspace_id: str, **updates: Any) -> Optional[ToolspaceRecord]:
        unknown = set(updates) - _TOOLSPACE_MUTABLE
        if unknown:
            raise ValueError(f"unknown toolspace fields: {sorted(unknown)}")
        with self._data_lock:
            record = self.toolspaces.get(toolspace_id)
            if not record:
                return None
            for key, value in updates.items():
                setattr(record, key, copy.deepcopy(value))
            record.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(record)

    # tool usage
    def create_tool_usage(
        self,
        *,
        user_id: str,
        tool_id: str,
        toolspace_id: Optional[str] = None,
        dashboard_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        execution_time_ms: int = 0,
        tokens_used: int = 0,
        cost_cents: int = 0,
        status: str = "success",
    ) -> ToolUsageRecord:
        with self._data_lock:
            record = ToolUsageRecord(
                id=new_id(),
                user_id=user_id,
                tool_id=tool_id,
                toolspace_id=toolspace_id,
                dashboard_id=dashboard_id,
                workflow_id=workflow_id,
                execution_time_ms=execution_time_ms,
                tokens_used=tokens_used,
                cost_cents=cost_cents,
                status=status,
            )
            self.tool_usage.append(record)
            self._persist_state()
            return copy.deepcopy(record)

    def list_tool_usage(
        self,
        *,
        toolspace_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ToolUsageRecord]:
        with self._data_lock:
            rows = [
                u
                for u in self.tool_usage
                if (toolspace_id is None or u.toolspace_id == toolspace_id)
                and (user_id is None or u.user_id == user_id)
            ]
            rows.sort(key=lambda u: u.created_at, reverse=True)
            return copy.deepcopy(rows[:limit])

    # schedules / webhooks
    def upsert_scheduled_job(
        self,
        workflow_id: str,
        cron_expression: str,
        *,
        timezone: str = "UTC",
        next_run: Optional[datetime] = None,
    ) -> ScheduledJob:
        with self._data_lock:
            if workflow_id not in self.workflows:
                raise ConstraintViolation("workflow does not exist", {"workflow_id": workflow_id})
            existing = self.scheduled_jobs.get(workflow_id)
            job = ScheduledJob(
                id=existing.id if existing else new_id(),
                workflow_id=workflow_id,
                cron_expression=cron_expression,
                timezone=timezone,
                next_run=next_run,
                last_run=existing.last_run if existing else None,
            )
            self.scheduled_jobs[workflow_id] = job
            self._persist_state()
            return copy.deepcopy(job)

    def get_scheduled_job(self, workflow_id: str) -> Optional[ScheduledJob]:
        with self._data_lock:
            return copy.deepcopy(self.scheduled_jobs.get(workflow_id))

    def delete_scheduled_job(self, workflow_id: str) -> bool:
        with self._data_lock:
            if self.scheduled_jobs.pop(workflow_id, None) is None:
                return False
            self._persist_state()
            return True

    def list_due_jobs(self, now: datetime) -> List[ScheduledJob]:
        with self._data_lock:
            due = [
                j
                for j in self.scheduled_jobs.values()
                if j.is_enabled and j.next_run is not None and j.next_run <= now
            ]
            due.sort(key=lambda j: j.next_run)
            return copy.deepcopy(due)

    def mark_job_run(self, job_id: str, *, last_run: datetime, next_run: datetime) -> None:
        with self._data_lock:
            for job in self.scheduled_jobs.values():
                if job.id == job_id:
                    job.last_run = last_run
                    job.next_run = next_run
                    self._persist_state()
                    return

    def create_webhook(self, workflow_id: str, *, url: str, secret: str) -> Webhook:
        with self._data_lock:
            if workflow_id not in self.workflows:
                raise ConstraintViolation("workflow does not exist", {"workflow_id": workflow_id})
            if any(h.url == url for h in self.webhooks.values()):
                raise ConstraintViolation("webhook url already exists", {"field": "url"})
            hook = Webhook(id=new_id(), workflow_id=workflow_id, url=url, secret=secret)
            self.webhooks[workflow_id] = hook
            self._persist_state()
            return copy.deepcopy(hook)

    def get_webhook_for_workflow(self, workflow_id: str) -> Optional[Webhook]:
        with self._data_lock:
            return copy.deepcopy(self.webhooks.get(workflow_id))

    def get_webhook_by_url(self, url: str) -> Optional[Webhook]:
        with self._data_lock:
            hook = next((h for h in self.webhooks.values() if h.url == url), None)
            return copy.deepcopy(hook)

    def delete_webhook(self, workflow_id: str) -> bool:
        with self._data_lock:
            if self.webhooks.pop(workflow_id, None) is None:
                return False
            self._persist_state()
            return True

    def touch_webhook(self, webhook_id: str, at: datetime) -> None:
        with self._data_lock:
            for hook in self.webhooks.values():
                if hook.id == webhook_id:
                    hook.last_triggered = at
                    self._persist_state()
                    return
