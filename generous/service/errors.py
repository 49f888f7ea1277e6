from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Optional

if TYPE_CHECKING:
    from generous.service.workflow import ExecutionResult


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins both an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class WorkflowDefinitionError(ValidationError):
    """A workflow graph is malformed: duplicate ids, dangling edges, bad node shapes."""


class CyclicGraphError(WorkflowDefinitionError):
    """No node can become ready while some remain unresolved."""

    def __init__(self, unresolved: Iterable[str]) -> None:
        self.unresolved = sorted(unresolved)
        super().__init__("cyclic graph", detail={"unresolved": self.unresolved})


class WorkflowDisabledError(BadRequestError):
    """Execution requested for a workflow whose isEnabled flag is off."""


class ToolDeniedError(ForbiddenError):
    """Toolspace pattern or permission check refused the tool."""


class QuotaExceededError(RateLimitedError):
    """A (user, toolspace) usage limit has been reached."""


class ExecutionPersistenceError(ServerError):
    """The engine produced a result but the execution record could not be written.

    The in-memory result rides along so the HTTP layer can still return it.
    """

    def __init__(
        self,
        message: str,
        *,
        execution_id: str,
        result: Optional["ExecutionResult"] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, detail={"execution_id": execution_id})
        self.execution_id = execution_id
        self.result = result
        self.cause: Any = cause


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "WorkflowDefinitionError",
    "CyclicGraphError",
    "WorkflowDisabledError",
    "ToolDeniedError",
    "QuotaExceededError",
    "ExecutionPersistenceError",
]
