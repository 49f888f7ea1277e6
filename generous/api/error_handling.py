from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from generous.api.schemas import ErrorBody, ExecutionResponse, node_result_bodies
from generous.logging import get_logger, sanitize_error_message
from generous.service.errors import ExecutionPersistenceError, ServiceError
from generous.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    return _STATUS_TO_CODE.get(status_code, "validation_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the flat ``{"error", "code", "details"}`` body."""
    error_code = code or _error_code_for_status(status_code)
    body = ErrorBody(
        error=sanitize_error_message(message),
        code=error_code,
        details=details or None,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def register_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ExecutionPersistenceError)
    async def handle_execution_persistence(request: Request, exc: ExecutionPersistenceError):
        logger.error(
            "execution_persistence_error",
            path=request.url.path,
            method=request.method,
            execution_id=exc.execution_id,
            message=exc.message,
        )
        details: dict = {"executionId": exc.execution_id}
        if exc.result is not None:
            # The run happened; hand back what it produced even though the
            # record may still read "running"
            details["result"] = ExecutionResponse(
                execution_id=exc.execution_id,
                status=exc.result.status.value,
                node_results=node_result_bodies(exc.result.node_results),
                error=exc.result.error,
            ).model_dump(by_alias=True, mode="json")
        return _error_response(500, exc.message, details, code=exc.error_code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return _error_response(400, "invalid request", {"errors": errors}, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Structured detail produced by routes._http_error()
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
            if exc.status_code >= 500:
                logger.error(
                    "http_error",
                    path=request.url.path,
                    method=request.method,
                    status_code=exc.status_code,
                    error_code=code,
                    message=message,
                )
            else:
                logger.warning(
                    "http_client_error",
                    path=request.url.path,
                    method=request.method,
                    status_code=exc.status_code,
                    error_code=code,
                    message=message,
                )
            return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
