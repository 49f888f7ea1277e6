from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, user_id: str, ttl_minutes: int = 60 * 24) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )


@dataclass
class WorkflowRecord:
    """Stored workflow; ``variables`` is the name -> default mapping form."""

    id: str
    name: str
    owner_id: str
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)
    variables: Any = field(default_factory=dict)
    description: Optional[str] = None
    dashboard_id: Optional[str] = None
    toolspace_id: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = None
    is_enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def definition_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "nodes": self.nodes,
            "edges": self.edges,
            "variables": self.variables,
        }


@dataclass
class ExecutionRecord:
    id: str
    workflow_id: str
    status: str = "pending"
    triggered_by: str = "manual"
    triggered_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    node_results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolspaceRecord:
    id: str
    name: str
    owner_id: str
    dashboard_id: Optional[str] = None
    description: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    permissions: Dict[str, Any] = field(default_factory=dict)
    quotas: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def config_record(self) -> Dict[str, Any]:
        return {"tools": self.tools, "permissions": self.permissions, "quotas": self.quotas}


@dataclass
class ToolUsageRecord:
    id: str
    user_id: str
    tool_id: str
    toolspace_id: Optional[str] = None
    dashboard_id: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_time_ms: int = 0
    tokens_used: int = 0
    cost_cents: int = 0
    status: str = "success"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ScheduledJob:
    id: str
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    is_enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Webhook:
    id: str
    workflow_id: str
    url: str
    secret: str
    is_enabled: bool = True
    last_triggered: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
