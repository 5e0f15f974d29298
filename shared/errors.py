from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# error code -> HTTP status
STATUS_CODES: Dict[str, int] = {
    "unauthenticated": 401,
    "invalid-argument": 400,
    "permission-denied": 403,
    "not-found": 404,
    "failed-precondition": 400,
    "internal": 500,
}


class ServiceError(Exception):
    code = "internal"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class Unauthenticated(ServiceError):
    code = "unauthenticated"


class InvalidArgument(ServiceError):
    code = "invalid-argument"


class PermissionDenied(ServiceError):
    code = "permission-denied"


class NotFound(ServiceError):
    code = "not-found"


class FailedPrecondition(ServiceError):
    code = "failed-precondition"


class Internal(ServiceError):
    code = "internal"


def _error_response(err: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=err.status_code,
        content={"success": False, "error": err.to_dict()},
    )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        missing = [".".join(str(p) for p in e["loc"][1:]) for e in exc.errors()]
        err = InvalidArgument(
            f"Missing or invalid parameters: {', '.join(missing)}",
            details={"fields": missing},
        )
        return _error_response(err)
