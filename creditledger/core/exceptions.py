from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class WorkspaceNotFoundError(NotFoundError):
    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Workspace not found: {workspace_id}")


class InsufficientCreditsError(AppError):
    """Allocation refused; carries the exact shortfall."""

    def __init__(self, workspace_id: str, required: int, available: int):
        self.workspace_id = workspace_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: required {required}, available {available}",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"workspace_id": workspace_id, "required": required, "available": available},
        )


class CreditValidationError(AppError):
    """Invalid credit amount or usage metric; raised before any store access."""

    def __init__(self, message: str, code: str = "INVALID_AMOUNT"):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST)


class CreditLedgerError(AppError):
    """A consume/release/remove that would break the ledger invariants."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="LEDGER_INVARIANT", status_code=status.HTTP_409_CONFLICT, details=details)


_PRORATION_STATUS = {
    "SUBSCRIPTION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PLAN_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PLAN_INACTIVE": status.HTTP_400_BAD_REQUEST,
    "INTERVAL_MISMATCH": status.HTTP_400_BAD_REQUEST,
    "STRIPE_PREVIEW_FAILED": status.HTTP_502_BAD_GATEWAY,
}


class ProrationServiceError(AppError):
    """Proration failure; `code` tells input problems apart from provider failures."""

    def __init__(self, message: str, code: str = "CALCULATION_FAILED"):
        super().__init__(
            message,
            code=code,
            status_code=_PRORATION_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from creditledger.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
