"""
Journey, provider and sensor errors plus the handlers that turn
them into `{error_code, message, details}` responses.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""
    
    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Raised when a request is rejected before any side effect happens."""
    
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class InsufficientPermissionsError(AppException):
    """Raised when a traveler acts on a journey they do not own."""
    
    def __init__(self, message: str = "Journey belongs to another traveler", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised for unknown journeys, contacts or travelers."""
    
    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidTransitionError(AppException):
    """Raised when a journey cannot move from its current status."""
    
    def __init__(self, current_status: str, action: str):
        super().__init__(
            message=f"Cannot {action} a journey with status {current_status}",
            error_code="ERR_JOURNEY_STATE",
            status_code=status.HTTP_409_CONFLICT,
            details={"status": current_status, "action": action}
        )


class AuthenticationError(AppException):
    """Missing, expired or malformed traveler token."""
    
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class RouteNotFoundError(AppException):
    """Raised when an endpoint address cannot be resolved to coordinates."""
    
    def __init__(self, message: str = "Could not resolve route endpoints"):
        super().__init__(
            message=message,
            error_code="ERR_ROUTE_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND
        )


# Provider and sensor errors. These never reach the HTTP layer directly.

class GeocodingError(Exception):
    """Address search or reverse lookup failed."""


class RoutingUnavailableError(Exception):
    """Routing provider failed or reported no route."""


class GeolocationError(Exception):
    """Base class for position watch errors."""
    
    code = "POSITION_UNAVAILABLE"


class LocationPermissionDeniedError(GeolocationError):
    """The traveler refused location access. Sampling does not start."""
    
    code = "PERMISSION_DENIED"


class PositionTimeoutError(GeolocationError):
    """No position arrived within the watch timeout. Sampling continues."""
    
    code = "TIMEOUT"


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render an AppException with its own status and code."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException detail in the common error envelope."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }
    
    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")
    
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body or query failed schema validation."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_errors(exc)
            }
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that JSONResponse cannot encode
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log with traceback and answer 500."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
