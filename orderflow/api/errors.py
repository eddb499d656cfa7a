from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from orderflow.core.logging_config import get_logger
from orderflow.domain.errors import (
    CollaboratorUnavailableError,
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    OrderflowError,
    ProductUnavailableError,
    RefundExceedsBalanceError,
    ValidationError,
)

logger = get_logger(__name__)

STATUS_BY_ERROR = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ProductUnavailableError: status.HTTP_400_BAD_REQUEST,
    InsufficientStockError: status.HTTP_400_BAD_REQUEST,
    InvalidSignatureError: status.HTTP_400_BAD_REQUEST,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    RefundExceedsBalanceError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CollaboratorUnavailableError: status.HTTP_502_BAD_GATEWAY,
}


def error_body(request: Request, message: str, code: str, details: dict) -> dict:
    body = {"error": {"message": message, "code": code, "details": details}}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        body["request_id"] = request_id
    return body


def status_for(exc: OrderflowError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def orderflow_exception_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    status_code = status_for(exc)
    if isinstance(exc, CollaboratorUnavailableError):
        logger.error(f"Upstream failure: {exc.details.get('collaborator')}")
    elif status_code >= 500:
        logger.error(f"Unmapped workflow error {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code,
                        content=error_body(request, exc.message, exc.code, exc.details))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(request, "Validation error", "VALIDATION_ERROR", {"errors": errors}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(request, "Internal server error", "INTERNAL_ERROR", {}),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderflowError, orderflow_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
