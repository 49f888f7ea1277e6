"""Workflow graph model: definitions, bindings, and execution ordering.

A ``WorkflowDefinition`` is loaded fresh from its stored record for every run
and never mutated afterwards. Node inputs are bindings of three kinds:

* a literal JSON value (dicts and lists are walked recursively),
* ``"$var.<name>"`` reading a resolved workflow variable,
* ``{"$ref": "<nodeId>.<dot.path>"}`` reading an upstream node's output.

Data references double as ordering dependencies, so a node never runs before
a node whose output it reads, even without an explicit edge.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from generous.service.errors import CyclicGraphError, WorkflowDefinitionError

VAR_PREFIX = "$var."
REF_KEY = "$ref"
MAX_RETRIES_HARD_CAP = 3
DEFAULT_RETRY_DELAY_MS = 1000


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"

    @classmethod
    def infer(cls, value: Any) -> "VariableType":
        """Classify a default value; ``None`` and mappings are objects."""
        # bool is a subclass of int, check it first
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, (int, float)):
            return cls.NUMBER
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        return cls.OBJECT

    def accepts(self, value: Any) -> bool:
        if value is None:
            return True
        if self is VariableType.OBJECT:
            return isinstance(value, dict)
        return VariableType.infer(value) is self


@dataclass(frozen=True)
class WorkflowVariable:
    name: str
    type: VariableType
    default_value: Any = None
    description: Optional[str] = None

    @classmethod
    def from_record(cls, raw: Mapping[str, Any]) -> "WorkflowVariable":
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise WorkflowDefinitionError("variable requires a name", detail={"variable": dict(raw)})
        default = raw.get("defaultValue", raw.get("default_value"))
        declared = raw.get("type")
        try:
            var_type = VariableType(declared) if declared else VariableType.infer(default)
        except ValueError:
            raise WorkflowDefinitionError(
                f"variable '{name}' has unknown type '{declared}'",
                detail={"variable": name},
            )
        return cls(name=name, type=var_type, default_value=default, description=raw.get("description"))

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "defaultValue": self.default_value,
        }
        if self.description:
            record["description"] = self.description
        return record


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    delay_ms: int = DEFAULT_RETRY_DELAY_MS
    backoff_multiplier: float = 1.0

    @property
    def effective_max_retries(self) -> int:
        return max(0, min(self.max_retries, MAX_RETRIES_HARD_CAP))

    def delay_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt counts from 0)."""
        return max(0.0, self.delay_ms * (self.backoff_multiplier ** attempt) / 1000.0)

    @classmethod
    def from_record(cls, raw: Optional[Mapping[str, Any]]) -> "RetryPolicy":
        if not raw:
            return cls()
        return cls(
            max_retries=int(raw.get("maxRetries", raw.get("max_retries", 0)) or 0),
            delay_ms=int(raw.get("delayMs", raw.get("delay_ms", DEFAULT_RETRY_DELAY_MS))),
            backoff_multiplier=float(
                raw.get("backoffMultiplier", raw.get("backoff_multiplier", 1.0))
            ),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "maxRetries": self.max_retries,
            "delayMs": self.delay_ms,
            "backoffMultiplier": self.backoff_multiplier,
        }


@dataclass(frozen=True)
class VariableRef:
    name: str


@dataclass(frozen=True)
class NodeOutputRef:
    node_id: str
    path: Tuple[str, ...] = ()


Binding = Union[VariableRef, NodeOutputRef]


def parse_reference(value: Any) -> Optional[Binding]:
    """Classify an input binding; literals return ``None``."""
    if isinstance(value, str) and value.startswith(VAR_PREFIX):
        return VariableRef(value[len(VAR_PREFIX):])
    if isinstance(value, dict) and isinstance(value.get(REF_KEY), str):
        node_id, *path = value[REF_KEY].split(".")
        return NodeOutputRef(node_id, tuple(p for p in path if p))
    return None


def iter_references(value: Any) -> Iterator[Binding]:
    ref = parse_reference(value)
    if ref is not None:
        yield ref
        return
    if isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def get_value_at_path(value: Any, path: Sequence[str]) -> Any:
    """Walk ``path`` through dicts and lists; a missing segment yields ``None``."""
    current = value
    for segment in path:
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


@dataclass(frozen=True)
class ToolNode:
    id: str
    tool_id: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None
    disabled: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def references(self) -> List[Binding]:
        return list(iter_references(self.inputs))

    @classmethod
    def from_record(cls, raw: Mapping[str, Any]) -> "ToolNode":
        node_id = raw.get("id")
        if not isinstance(node_id, str) or not node_id:
            raise WorkflowDefinitionError("node requires an id", detail={"node": dict(raw)})
        # Editor records nest the payload under "data"
        data: Mapping[str, Any] = raw.get("data") if isinstance(raw.get("data"), dict) else raw
        node_type = data.get("type", "tool")
        if node_type != "tool":
            raise WorkflowDefinitionError(
                f"node '{node_id}' has unsupported type '{node_type}'",
                detail={"node_id": node_id, "type": node_type},
            )
        tool_id = data.get("toolId", data.get("tool_id"))
        if not isinstance(tool_id, str) or not tool_id:
            raise WorkflowDefinitionError(
                f"node '{node_id}' requires a toolId", detail={"node_id": node_id}
            )
        inputs = data.get("inputs", data.get("params")) or {}
        if not isinstance(inputs, dict):
            raise WorkflowDefinitionError(
                f"node '{node_id}' inputs must be an object", detail={"node_id": node_id}
            )
        return cls(
            id=node_id,
            tool_id=tool_id,
            inputs=inputs,
            label=data.get("label"),
            disabled=bool(data.get("disabled", False)),
            retry=RetryPolicy.from_record(data.get("retryConfig", data.get("retry"))),
        )

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": self.id,
            "toolId": self.tool_id,
            "inputs": self.inputs,
            "disabled": self.disabled,
            "retryConfig": self.retry.to_record(),
        }
        if self.label is not None:
            record["label"] = self.label
        return record


@dataclass(frozen=True)
class WorkflowEdge:
    source: str
    target: str
    id: Optional[str] = None

    @classmethod
    def from_record(cls, raw: Mapping[str, Any]) -> "WorkflowEdge":
        source = raw.get("source", raw.get("from"))
        target = raw.get("target", raw.get("to"))
        if not isinstance(source, str) or not isinstance(target, str):
            raise WorkflowDefinitionError("edge requires source and target", detail={"edge": dict(raw)})
        return cls(source=source, target=target, id=raw.get("id"))

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"source": self.source, "target": self.target}
        if self.id is not None:
            record["id"] = self.id
        return record


def _variables_from_record(raw: Any) -> Tuple[WorkflowVariable, ...]:
    if not raw:
        return ()
    if isinstance(raw, dict):
        # Persisted shape: name -> default value
        return tuple(
            WorkflowVariable(name=name, type=VariableType.infer(default), default_value=default)
            for name, default in raw.items()
        )
    if isinstance(raw, list):
        return tuple(WorkflowVariable.from_record(item) for item in raw)
    raise WorkflowDefinitionError("variables must be an object or a list")


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    nodes: Tuple[ToolNode, ...] = ()
    edges: Tuple[WorkflowEdge, ...] = ()
    variables: Tuple[WorkflowVariable, ...] = ()
    description: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "WorkflowDefinition":
        nodes = record.get("nodes") or []
        edges = record.get("edges") or []
        if not isinstance(nodes, list) or not isinstance(edges, list):
            raise WorkflowDefinitionError("nodes and edges must be lists")
        return cls(
            id=str(record.get("id") or ""),
            name=str(record.get("name") or ""),
            description=record.get("description"),
            nodes=tuple(ToolNode.from_record(n) for n in nodes),
            edges=tuple(WorkflowEdge.from_record(e) for e in edges),
            variables=_variables_from_record(record.get("variables")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "nodes": [n.to_record() for n in self.nodes],
            "edges": [e.to_record() for e in self.edges],
            "variables": [v.to_record() for v in self.variables],
        }

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[ToolNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def structural_errors(self) -> List[str]:
        errors: List[str] = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"duplicate node id '{node.id}'")
            seen.add(node.id)
        names: set[str] = set()
        for var in self.variables:
            if var.name in names:
                errors.append(f"duplicate variable '{var.name}'")
            names.add(var.name)
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    errors.append(f"edge {edge.source} -> {edge.target} references unknown node '{end}'")
        return errors

    def upstream_of(self, node_id: str) -> List[str]:
        """Nodes that must reach a terminal state before ``node_id`` may run."""
        known = set(self.node_ids)
        upstream: List[str] = []
        for edge in self.edges:
            if edge.target == node_id and edge.source not in upstream:
                upstream.append(edge.source)
        node = self.get_node(node_id)
        if node is not None:
            for ref in node.references():
                if isinstance(ref, NodeOutputRef) and ref.node_id in known and ref.node_id not in upstream:
                    upstream.append(ref.node_id)
        return upstream

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; simultaneously ready nodes run in declaration order."""
        position = {node.id: index for index, node in enumerate(self.nodes)}
        pending: Dict[str, int] = {}
        downstream: Dict[str, List[str]] = {node_id: [] for node_id in position}
        for node_id in position:
            deps = self.upstream_of(node_id)
            pending[node_id] = len(deps)
            for dep in deps:
                downstream[dep].append(node_id)

        ready = [(position[n], n) for n, count in pending.items() if count == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for child in downstream[node_id]:
                pending[child] -= 1
                if pending[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        if len(order) < len(position):
            raise CyclicGraphError(n for n in position if n not in order)
        return order

    def validate(self) -> None:
        """Raise on the first structural problem or a cycle."""
        errors = self.structural_errors()
        if errors:
            raise WorkflowDefinitionError(errors[0], detail={"errors": errors})
        self.topological_order()


__all__ = [
    "MAX_RETRIES_HARD_CAP",
    "NodeOutputRef",
    "RetryPolicy",
    "ToolNode",
    "VariableRef",
    "VariableType",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowVariable",
    "get_value_at_path",
    "iter_references",
    "parse_reference",
]
