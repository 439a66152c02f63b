"""
Domain errors and the app-level handlers that render them.

Every error response body is {"error": "<message>"} with an optional
"details" entry. Domain errors subclass HTTPException so services can raise
them directly and FastAPI routes need no translation layer.
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings

logger = logging.getLogger(__name__)


class AppError(HTTPException):
    """Base class for errors carrying a status code and optional details"""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Any = None, headers: Optional[dict] = None):
        super().__init__(status_code=self.status_code, detail=message, headers=headers)
        self.details = details


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class BusinessRuleError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidCredentials(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class InsufficientStock(BusinessRuleError):
    def __init__(self, product_id: int, description: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {description}. Requested: {requested}, available: {available}",
            details={
                "product_id": product_id,
                "product": description,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StockLimitExceeded(BusinessRuleError):
    def __init__(self, product_id: int, received: int, checked_in: int, requested: int):
        super().__init__(
            f"Check-in exceeds the quantity received for product {product_id}. "
            f"Received: {received}, already checked in: {checked_in}, requested: {requested}",
            details={
                "product_id": product_id,
                "received": received,
                "checked_in": checked_in,
                "requested": requested,
            },
        )


class CustomerNotFound(NotFoundError):
    def __init__(self, customer_id: int):
        super().__init__(f"Customer {customer_id} not found")
        self.customer_id = customer_id


class CustomerInactive(BusinessRuleError):
    def __init__(self, customer_id: int, days_enrolled: int):
        super().__init__(
            f"Customer {customer_id} membership expired",
            details={"customer_id": customer_id, "days_enrolled": days_enrolled},
        )
        self.customer_id = customer_id


def error_body(message: str, details: Any = None) -> dict:
    body = {"error": message}
    if details is not None:
        body["details"] = details
    return body


def _with_cors(request: Request, response: JSONResponse) -> JSONResponse:
    # Exceptions raised in dependencies bypass CORSMiddleware headers
    origin = request.headers.get("origin")
    if origin and origin in settings.cors_origins_list:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        details = getattr(exc, "details", None)
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if not isinstance(exc.detail, str) and details is None:
            details = exc.detail
        response = JSONResponse(
            status_code=exc.status_code,
            content=error_body(message, details),
            headers=getattr(exc, "headers", None),
        )
        return _with_cors(request, response)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg"),
            }
            for err in exc.errors()
        ]
        response = JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("Invalid input data", details),
        )
        return _with_cors(request, response)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        """Catch-all for unexpected errors; message is hidden unless DEBUG"""
        logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
        details = str(exc) if settings.DEBUG else None
        response = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("Internal server error", details),
        )
        return _with_cors(request, response)
