from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from generous.logging import get_logger
from generous.storage.errors import ConstraintViolation
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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS toolspace (
        id UUID PRIMARY KEY,
        owner_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        dashboard_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        tools JSONB NOT NULL DEFAULT '[]',
        permissions JSONB NOT NULL DEFAULT '{}',
        quotas JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow (
        id UUID PRIMARY KEY,
        owner_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        dashboard_id TEXT,
        toolspace_id UUID REFERENCES toolspace(id) ON DELETE SET NULL,
        name TEXT NOT NULL,
        description TEXT,
        nodes JSONB NOT NULL DEFAULT '[]',
        edges JSONB NOT NULL DEFAULT '[]',
        variables JSONB NOT NULL DEFAULT '{}',
        trigger_config JSONB,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_execution (
        id UUID PRIMARY KEY,
        workflow_id UUID NOT NULL REFERENCES workflow(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        triggered_by TEXT NOT NULL,
        triggered_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        node_results JSONB,
        error TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_execution_wf_idx ON workflow_execution (workflow_id, triggered_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS tool_usage (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        toolspace_id UUID,
        dashboard_id TEXT,
        workflow_id UUID,
        tool_id TEXT NOT NULL,
        execution_time_ms INTEGER NOT NULL DEFAULT 0,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost_cents INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_job (
        id UUID PRIMARY KEY,
        workflow_id UUID NOT NULL UNIQUE REFERENCES workflow(id) ON DELETE CASCADE,
        cron_expression TEXT NOT NULL,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        last_run TIMESTAMPTZ,
        next_run TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook (
        id UUID PRIMARY KEY,
        workflow_id UUID NOT NULL UNIQUE REFERENCES workflow(id) ON DELETE CASCADE,
        url TEXT NOT NULL UNIQUE,
        secret TEXT NOT NULL,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        last_triggered TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

_WORKFLOW_COLUMNS = {
    "name": False,
    "description": False,
    "nodes": True,
    "edges": True,
    "variables": True,
    "dashboard_id": False,
    "toolspace_id": False,
    "trigger_config": True,
    "is_enabled": False,
}
_TOOLSPACE_COLUMNS = {
    "name": False,
    "description": False,
    "dashboard_id": False,
    "tools": True,
    "permissions": True,
    "quotas": True,
}
_EXECUTION_COLUMNS = {
    "status": False,
    "started_at": False,
    "completed_at": False,
    "node_results": True,
    "error": False,
    "metadata": True,
}


def _json_value(raw: Any, default: Any = None) -> Any:
    if raw is None:
        return default
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return default
    return raw


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _update_clause(
    updates: Dict[str, Any], columns: Dict[str, bool]
) -> Tuple[str, List[Any]]:
    unknown = set(updates) - set(columns)
    if unknown:
        raise ValueError(f"unknown fields: {sorted(unknown)}")
    assignments = []
    params: List[Any] = []
    for key, value in updates.items():
        assignments.append(f"{key} = %s")
        params.append(_dump(value) if columns[key] else value)
    return ", ".join(assignments), params


class PostgresStore:
    """Postgres-backed store for workflows, executions, toolspaces and usage."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=len(_SCHEMA))

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _workflow(row: Dict[str, Any]) -> WorkflowRecord:
        return WorkflowRecord(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]),
            nodes=_json_value(row.get("nodes"), []),
            edges=_json_value(row.get("edges"), []),
            variables=_json_value(row.get("variables"), {}),
            description=row.get("description"),
            dashboard_id=row.get("dashboard_id"),
            toolspace_id=str(row["toolspace_id"]) if row.get("toolspace_id") else None,
            trigger_config=_json_value(row.get("trigger_config")),
            is_enabled=row.get("is_enabled", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _execution(row: Dict[str, Any]) -> ExecutionRecord:
        return ExecutionRecord(
            id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            status=row["status"],
            triggered_by=row["triggered_by"],
            triggered_at=row.get("triggered_at") or utcnow(),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            node_results=_json_value(row.get("node_results")),
            error=row.get("error"),
            metadata=_json_value(row.get("metadata"), {}),
        )

    @staticmethod
    def _toolspace(row: Dict[str, Any]) -> ToolspaceRecord:
        return ToolspaceRecord(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]),
            dashboard_id=row.get("dashboard_id"),
            description=row.get("description"),
            tools=_json_value(row.get("tools"), []),
            permissions=_json_value(row.get("permissions"), {}),
            quotas=_json_value(row.get("quotas"), {}),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _usage(row: Dict[str, Any]) -> ToolUsageRecord:
        return ToolUsageRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tool_id=row["tool_id"],
            toolspace_id=str(row["toolspace_id"]) if row.get("toolspace_id") else None,
            dashboard_id=row.get("dashboard_id"),
            workflow_id=str(row["workflow_id"]) if row.get("workflow_id") else None,
            execution_time_ms=row.get("execution_time_ms", 0),
            tokens_used=row.get("tokens_used", 0),
            cost_cents=row.get("cost_cents", 0),
            status=row.get("status", "success"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _job(row: Dict[str, Any]) -> ScheduledJob:
        return ScheduledJob(
            id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            cron_expression=row["cron_expression"],
            timezone=row.get("timezone") or "UTC",
            is_enabled=row.get("is_enabled", True),
            last_run=row.get("last_run"),
            next_run=row.get("next_run"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _webhook(row: Dict[str, Any]) -> Webhook:
        return Webhook(
            id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            url=row["url"],
            secret=row["secret"],
            is_enabled=row.get("is_enabled", True),
            last_triggered=row.get("last_triggered"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users / sessions
    def create_user(self, email: str, handle: Optional[str] = None) -> User:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (id, email, handle) VALUES (%s, %s, %s) RETURNING *",
                    (user_id, email, handle),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user(row) if row else None

    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO auth_session (id, user_id, created_at, expires_at) VALUES (%s, %s, %s, %s)",
                    (sess.id, sess.user_id, sess.created_at, sess.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM auth_session WHERE id = %s", (session_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # not a UUID, so it cannot be a session id
            return None
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workflow (id, owner_id, dashboard_id, toolspace_id, name, description,
                                          nodes, edges, variables, trigger_config, is_enabled)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        owner_id,
                        dashboard_id,
                        toolspace_id,
                        name,
                        description,
                        _dump(nodes or []),
                        _dump(edges or []),
                        _dump(variables if variables is not None else {}),
                        _dump(trigger_config),
                        is_enabled,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "workflow owner or toolspace missing",
                {"owner_id": owner_id, "toolspace_id": toolspace_id},
            )
        return self._workflow(row)

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM workflow WHERE id = %s", (workflow_id,)).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return self._workflow(row) if row else None

    def list_workflows(self, owner_id: str) -> List[WorkflowRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow WHERE owner_id = %s ORDER BY updated_at DESC", (owner_id,)
            ).fetchall()
        return [self._workflow(r) for r in rows]

    def update_workflow(self, workflow_id: str, **updates: Any) -> Optional[WorkflowRecord]:
        if not updates:
            return self.get_workflow(workflow_id)
        clause, params = _update_clause(updates, _WORKFLOW_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE workflow SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, workflow_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("toolspace does not exist", {"toolspace_id": updates.get("toolspace_id")})
        return self._workflow(row) if row else None

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM workflow WHERE id = %s", (workflow_id,))
            return cur.rowcount > 0

    # executions
    def create_execution(
        self,
        workflow_id: str,
        *,
        triggered_by: str = "manual",
        metadata: Optional[Dict[str, Any]] = None,
        status: str = "pending",
    ) -> ExecutionRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workflow_execution (id, workflow_id, status, triggered_by, metadata)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), workflow_id, status, triggered_by, _dump(metadata or {})),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("workflow does not exist", {"workflow_id": workflow_id})
        return self._execution(row)

    def update_execution(self, execution_id: str, **updates: Any) -> Optional[ExecutionRecord]:
        clause, params = _update_clause(updates, _EXECUTION_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE workflow_execution SET {clause} WHERE id = %s RETURNING *",
                (*params, execution_id),
            ).fetchone()
        return self._execution(row) if row else None

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_execution WHERE id = %s", (execution_id,)
            ).fetchone()
        return self._execution(row) if row else None

    def list_executions(
        self, workflow_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[ExecutionRecord], int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_execution WHERE workflow_id = %s
                ORDER BY triggered_at DESC LIMIT %s OFFSET %s
                """,
                (workflow_id, limit, offset),
            ).fetchall()
            total = conn.execute(
                "SELECT count(*) AS total FROM workflow_execution WHERE workflow_id = %s",
                (workflow_id,),
            ).fetchone()
        return [self._execution(r) for r in rows], int(total["total"]) if total else 0

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO toolspace (id, owner_id, dashboard_id, name, description, tools, permissions, quotas)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    new_id(),
                    owner_id,
                    dashboard_id,
                    name,
                    description,
                    _dump(tools or []),
                    _dump(permissions or {}),
                    _dump(quotas or {}),
                ),
            ).fetchone()
        return self._toolspace(row)

    def get_toolspace(self, toolspace_id: str) -> Optional[ToolspaceRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM toolspace WHERE id = %s", (toolspace_id,)).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return self._toolspace(row) if row else None

    def list_toolspaces(self, owner_id: str) -> List[ToolspaceRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM toolspace WHERE owner_id = %s ORDER BY created_at DESC", (owner_id,)
            ).fetchall()
        return [self._toolspace(r) for r in rows]

    def update_toolspace(self, toolspace_id: str, **updates: Any) -> Optional[ToolspaceRecord]:
        if not updates:
            return self.get_toolspace(toolspace_id)
        clause, params = _update_clause(updates, _TOOLSPACE_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE toolspace SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, toolspace_id),
            ).fetchone()
        return self._toolspace(row) if row else None

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO tool_usage (id, user_id, toolspace_id, dashboard_id, workflow_id, tool_id,
                                        execution_time_ms, tokens_used, cost_cents, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    new_id(),
                    user_id,
                    toolspace_id,
                    dashboard_id,
                    workflow_id,
                    tool_id,
                    execution_time_ms,
                    tokens_used,
                    cost_cents,
                    status,
                ),
            ).fetchone()
        return self._usage(row)

    def list_tool_usage(
        self,
        *,
        toolspace_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ToolUsageRecord]:
        clauses = []
        params: List[Any] = []
        if toolspace_id is not None:
            clauses.append("toolspace_id = %s")
            params.append(toolspace_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tool_usage {where} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [self._usage(r) for r in rows]

    # schedules / webhooks
    def upsert_scheduled_job(
        self,
        workflow_id: str,
        cron_expression: str,
        *,
        timezone: str = "UTC",
        next_run: Optional[datetime] = None,
    ) -> ScheduledJob:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO scheduled_job (id, workflow_id, cron_expression, timezone, next_run)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (workflow_id) DO UPDATE
                    SET cron_expression = EXCLUDED.cron_expression,
                        timezone = EXCLUDED.timezone,
                        next_run = EXCLUDED.next_run,
                        is_enabled = TRUE
                    RETURNING *
                    """,
                    (new_id(), workflow_id, cron_expression, timezone, next_run),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("workflow does not exist", {"workflow_id": workflow_id})
        return self._job(row)

    def get_scheduled_job(self, workflow_id: str) -> Optional[ScheduledJob]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_job WHERE workflow_id = %s", (workflow_id,)
            ).fetchone()
        return self._job(row) if row else None

    def delete_scheduled_job(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM scheduled_job WHERE workflow_id = %s", (workflow_id,))
            return cur.rowcount > 0

    def list_due_jobs(self, now: datetime) -> List[ScheduledJob]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_job
                WHERE is_enabled AND next_run IS NOT NULL AND next_run <= %s
                ORDER BY next_run
                """,
                (now,),
            ).fetchall()
        return [self._job(r) for r in rows]

    def mark_job_run(self, job_id: str, *, last_run: datetime, next_run: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_job SET last_run = %s, next_run = %s WHERE id = %s",
                (last_run, next_run, job_id),
            )

    def create_webhook(self, workflow_id: str, *, url: str, secret: str) -> Webhook:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM webhook WHERE workflow_id = %s", (workflow_id,))
                row = conn.execute(
                    """
                    INSERT INTO webhook (id, workflow_id, url, secret)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), workflow_id, url, secret),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("webhook url already exists", {"field": "url"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("workflow does not exist", {"workflow_id": workflow_id})
        return self._webhook(row)

    def get_webhook_for_workflow(self, workflow_id: str) -> Optional[Webhook]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhook WHERE workflow_id = %s", (workflow_id,)
            ).fetchone()
        return self._webhook(row) if row else None

    def get_webhook_by_url(self, url: str) -> Optional[Webhook]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM webhook WHERE url = %s", (url,)).fetchone()
        return self._webhook(row) if row else None

    def delete_webhook(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM webhook WHERE workflow_id = %s", (workflow_id,))
            return cur.rowcount > 0

    def touch_webhook(self, webhook_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webhook SET last_triggered = %s WHERE id = %s", (at, webhook_id)
            )
