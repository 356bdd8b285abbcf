"""Maps the domain error taxonomy onto HTTP responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.domain.errors import (
    ConflictError,
    DispatchError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)

STATUS_CODES: dict[type[DispatchError], int] = {
    ValidationError: 400,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    ExpiredError: 410,
    UnavailableError: 503,
}


def status_for(exc: DispatchError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    body = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, ConflictError) and exc.current_status is not None:
        body["current_status"] = exc.current_status.value
    return JSONResponse(status_code=status_for(exc), content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DispatchError, dispatch_error_handler)
