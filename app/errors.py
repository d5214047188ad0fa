from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class PipelineError(Exception):
    """Base class for request-fatal errors raised by the devops services."""

    status_code = 400
    code = "pipeline_error"

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={"code": self.code, "message": str(self)},
        )


class MalformedPayload(PipelineError):
    code = "malformed_payload"


class NotFound(PipelineError):
    status_code = 404
    code = "not_found"


class NoDeployAction(PipelineError):
    code = "no_deploy_action"


class RepositoryConflict(PipelineError):
    status_code = 409
    code = "repository_conflict"


class InvalidSignature(PipelineError):
    status_code = 403
    code = "invalid_signature"


class QueueUnavailable(PipelineError):
    status_code = 503
    code = "queue_unavailable"


class StorageFailure(PipelineError):
    status_code = 500
    code = "storage_failure"

    def __init__(self, message: str = "Storage operation failed"):
        super().__init__(message)


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
            headers=exc.headers,
        )

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, str(exc), None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
