from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from generous.logging import get_logger
from generous.service.toolspace import ToolspaceGate

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolOutcome:
    success: bool
    output: Any = None
    error: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, output: Any = None) -> "ToolOutcome":
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, error: str) -> "ToolOutcome":
        return cls(success=False, error=error or "tool execution failed")


class ToolExecutor(Protocol):
    async def invoke(self, tool_id: str, params: Dict[str, Any]) -> ToolOutcome: ...


class HttpToolExecutor:
    """Invokes tools through the registry execution endpoint.

    The endpoint answers ``{"success": true, "data": ...}`` on success and an
    object carrying ``error``/``message`` otherwise. Transport failures and
    non-2xx responses become failed outcomes rather than exceptions.
    """

    ENDPOINT = "/api/registry-execute"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{self.ENDPOINT}"
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self.headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=self.headers)

    async def invoke(self, tool_id: str, params: Dict[str, Any]) -> ToolOutcome:
        try:
            response = await self._post({"toolId": tool_id, "params": params})
        except httpx.HTTPError as exc:
            logger.warning(
                "tool_executor_unreachable",
                tool_id=tool_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ToolOutcome.failure(f"tool executor unreachable: {type(exc).__name__}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error")
            if not isinstance(message, str) or not message:
                message = f"tool executor returned HTTP {response.status_code}"
            logger.info(
                "tool_execution_rejected",
                tool_id=tool_id,
                status_code=response.status_code,
            )
            return ToolOutcome.failure(message)

        if isinstance(body, dict):
            if body.get("success") is False or body.get("error"):
                message = body.get("message") or body.get("error")
                return ToolOutcome.failure(message if isinstance(message, str) else "tool execution failed")
            if "data" in body:
                return ToolOutcome.ok(body["data"])
        return ToolOutcome.ok(body)


class MeteredToolExecutor:
    """Wraps an executor with toolspace authorization and usage metering.

    ``authorize`` raises before the inner executor is touched; once the inner
    executor has been called, usage is recorded whatever the outcome.
    """

    def __init__(
        self,
        inner: ToolExecutor,
        gate: ToolspaceGate,
        *,
        timer: Optional[Callable[[], float]] = None,
    ) -> None:
        self.inner = inner
        self.gate = gate
        self._timer = timer or time.monotonic

    async def invoke(self, tool_id: str, params: Dict[str, Any]) -> ToolOutcome:
        await self.gate.authorize(tool_id, params)
        started = self._timer()
        try:
            outcome = await self.inner.invoke(tool_id, params)
        except Exception as exc:
            logger.warning("tool_invoke_raised", tool_id=tool_id, error_type=type(exc).__name__)
            outcome = ToolOutcome.failure(str(exc) or type(exc).__name__)
        elapsed_ms = (self._timer() - started) * 1000
        usage = await self.gate.meter(tool_id, params, outcome, elapsed_ms)
        return replace(outcome, usage=usage.as_dict())
