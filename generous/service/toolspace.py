from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from generous.logging import get_logger
from generous.service.cost import calculate_cost, estimate_cost, is_external_tool, payload_tokens
from generous.service.errors import QuotaExceededError, ToolDeniedError
from generous.service.quota import QuotaConfig, QuotaService

if TYPE_CHECKING:
    from generous.service.executors import ToolOutcome

logger = get_logger(__name__)

OPERATION_TYPES = ("read", "write", "delete", "external")
_OPERATION_FLAGS = {
    "read": "allow_read",
    "write": "allow_write",
    "delete": "allow_delete",
    "external": "allow_external_api",
}
_PERMISSION_KEYS = {
    "allow_read": "allowRead",
    "allow_write": "allowWrite",
    "allow_delete": "allowDelete",
    "allow_external_api": "allowExternalApi",
}
_CATEGORY_PREFIXES = (
    ("get", "Read"),
    ("list", "Read"),
    ("search", "Read"),
    ("create", "Write"),
    ("add", "Write"),
    ("update", "Write"),
    ("delete", "Delete"),
    ("remove", "Delete"),
)


@dataclass(frozen=True)
class ToolspacePermissions:
    """Named permission flags. ``None`` means unset, which allows."""

    allow_read: Optional[bool] = None
    allow_write: Optional[bool] = None
    allow_delete: Optional[bool] = None
    allow_external_api: Optional[bool] = None

    @classmethod
    def from_record(cls, raw: Optional[Mapping[str, Any]]) -> "ToolspacePermissions":
        if not raw:
            return cls()
        values = {}
        for attr, camel in _PERMISSION_KEYS.items():
            value = raw.get(camel, raw.get(attr))
            values[attr] = None if value is None else bool(value)
        return cls(**values)

    def to_record(self) -> Dict[str, bool]:
        return {
            camel: getattr(self, attr)
            for attr, camel in _PERMISSION_KEYS.items()
            if getattr(self, attr) is not None
        }

    def allows(self, operation_type: str) -> bool:
        try:
            flag = _OPERATION_FLAGS[operation_type]
        except KeyError:
            raise ValueError(f"unknown operation type '{operation_type}'")
        return getattr(self, flag) is not False


@dataclass(frozen=True)
class ToolspaceConfig:
    tools: Tuple[str, ...] = ()
    permissions: ToolspacePermissions = field(default_factory=ToolspacePermissions)
    quotas: QuotaConfig = field(default_factory=QuotaConfig)

    @classmethod
    def from_record(cls, raw: Optional[Mapping[str, Any]]) -> "ToolspaceConfig":
        if not raw:
            return cls()
        tools = raw.get("tools") or ()
        if isinstance(tools, str):
            tools = parse_tool_patterns(tools)
        return cls(
            tools=tuple(str(t) for t in tools),
            permissions=ToolspacePermissions.from_record(raw.get("permissions")),
            quotas=QuotaConfig.from_record(raw.get("quotas")),
        )


def match_tool_pattern(tool_id: str, pattern: str) -> bool:
    """Match a tool id against one toolspace pattern.

    ``*`` matches everything; ``prefix/*`` matches the bare prefix and anything
    below it; ``*/suffix`` mirrors that; ``prefix/*/suffix`` needs the id to
    start with ``prefix/`` and end with ``/suffix``. Patterns with more than one
    wildcard never match.
    """
    if pattern == "*" or pattern == tool_id:
        return True
    if pattern.count("*") != 1:
        return False
    if pattern.endswith("/*"):
        prefix = pattern[:-2]
        return tool_id == prefix or tool_id.startswith(prefix + "/")
    if pattern.startswith("*/"):
        suffix = pattern[2:]
        return tool_id == suffix or tool_id.endswith("/" + suffix)
    if "/*/" in pattern:
        prefix, suffix = pattern.split("/*/", 1)
        return (
            len(tool_id) > len(prefix) + len(suffix) + 2
            and tool_id.startswith(prefix + "/")
            and tool_id.endswith("/" + suffix)
        )
    return False


def is_tool_allowed(tool_id: str, patterns: Iterable[str]) -> bool:
    patterns = list(patterns or ())
    # An unconfigured toolspace is unrestricted
    if not patterns:
        return True
    return any(match_tool_pattern(tool_id, p) for p in patterns)


def has_permission(
    permissions: Optional[Union[ToolspacePermissions, Mapping[str, Any]]], operation_type: str
) -> bool:
    if permissions is None:
        return True
    if not isinstance(permissions, ToolspacePermissions):
        permissions = ToolspacePermissions.from_record(permissions)
    return permissions.allows(operation_type)


def validate_tool_execution(
    tool_id: str,
    config: Optional[Union[ToolspaceConfig, Mapping[str, Any]]],
    operation_type: str = "read",
) -> Optional[str]:
    """Return why ``tool_id`` may not run in this toolspace, or ``None``. Pure."""
    if config is None:
        return None
    if not isinstance(config, ToolspaceConfig):
        config = ToolspaceConfig.from_record(config)
    if not is_tool_allowed(tool_id, config.tools):
        return f'Tool "{tool_id}" is not allowed in this toolspace'
    if not has_permission(config.permissions, operation_type):
        return f'Operation "{operation_type}" is not allowed in this toolspace'
    return None


def parse_tool_patterns(text: str) -> list[str]:
    return [p.strip() for p in re.split(r"[,\n]", text or "") if p.strip()]


def categorize_tool_id(tool_id: str) -> str:
    if is_external_tool(tool_id):
        return tool_id.split("/", 1)[0]
    lowered = tool_id.lower()
    for prefix, category in _CATEGORY_PREFIXES:
        if lowered.startswith(prefix):
            return category
    return "Other"


def operation_type_for(tool_id: str) -> str:
    if is_external_tool(tool_id):
        return "external"
    category = categorize_tool_id(tool_id)
    if category == "Write":
        return "write"
    if category == "Delete":
        return "delete"
    return "read"


@dataclass(frozen=True)
class ToolUsage:
    tool_id: str
    execution_time_ms: int
    tokens_used: int
    cost_cents: int
    status: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "execution_time_ms": self.execution_time_ms,
            "tokens_used": self.tokens_used,
            "cost_cents": self.cost_cents,
            "status": self.status,
        }


class ToolspaceGate:
    """Binds a toolspace config to one user for authorization and metering."""

    def __init__(
        self,
        config: ToolspaceConfig,
        quotas: QuotaService,
        *,
        user_id: str,
        toolspace_id: str,
        dashboard_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        usage_store: Any = None,
    ) -> None:
        self.config = config
        self.quotas = quotas
        self.user_id = user_id
        self.toolspace_id = toolspace_id
        self.dashboard_id = dashboard_id
        self.workflow_id = workflow_id
        self.usage_store = usage_store

    def check_policy(self, tool_id: str) -> None:
        operation = operation_type_for(tool_id)
        error = validate_tool_execution(tool_id, self.config, operation)
        if error:
            logger.warning(
                "tool_denied",
                tool_id=tool_id,
                operation=operation,
                toolspace_id=self.toolspace_id,
                user_id=self.user_id,
            )
            raise ToolDeniedError(error, detail={"tool_id": tool_id, "operation": operation})

    async def check_quota(self, *, tokens: int = 0, cost_cents: float = 0) -> None:
        error = await self.quotas.check_quota(
            self.user_id,
            self.toolspace_id,
            self.config.quotas,
            tokens=tokens,
            cost_cents=cost_cents,
        )
        if error:
            remaining = await self.quotas.get_remaining_quota(
                self.user_id, self.toolspace_id, self.config.quotas
            )
            raise QuotaExceededError(error, detail={"quota": remaining.as_dict()})

    async def authorize(self, tool_id: str, params: Optional[Mapping[str, Any]] = None) -> None:
        self.check_policy(tool_id)
        estimate = estimate_cost(tool_id, params)
        await self.check_quota(
            tokens=payload_tokens(dict(params)) if params else 0,
            cost_cents=estimate.estimated_cost_cents,
        )

    async def meter(
        self,
        tool_id: str,
        params: Optional[Mapping[str, Any]],
        outcome: "ToolOutcome",
        elapsed_ms: float,
    ) -> ToolUsage:
        """Charge one completed invocation, successful or not."""
        response = outcome.output if outcome.success else outcome.error
        tokens = payload_tokens(dict(params or {})) + payload_tokens(response or "")
        cost = calculate_cost(tool_id, elapsed_ms, tokens)
        await self.quotas.record_usage(
            self.user_id, self.toolspace_id, tokens=tokens, cost_cents=cost.cost_cents
        )
        usage = ToolUsage(
            tool_id=tool_id,
            execution_time_ms=int(round(elapsed_ms)),
            tokens_used=tokens,
            cost_cents=cost.cost_cents,
            status="success" if outcome.success else "error",
        )
        if self.usage_store is not None:
            try:
                self.usage_store.create_tool_usage(
                    user_id=self.user_id,
                    toolspace_id=self.toolspace_id,
                    dashboard_id=self.dashboard_id,
                    workflow_id=self.workflow_id,
                    tool_id=tool_id,
                    execution_time_ms=usage.execution_time_ms,
                    tokens_used=usage.tokens_used,
                    cost_cents=usage.cost_cents,
                    status=usage.status,
                )
            except Exception as exc:
                # Counters already moved; the audit row is best effort
                logger.error(
                    "tool_usage_persist_failed",
                    tool_id=tool_id,
                    toolspace_id=self.toolspace_id,
                    error=str(exc),
                )
        return usage
