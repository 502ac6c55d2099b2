import logging
from typing import Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from calsync.core.config import settings
from calsync.core.exceptions import BusinessException

logger = logging.getLogger(__name__)


def _request_extra(request: Request) -> Dict[str, str]:
    return {
        "path": request.url.path,
        "method": request.method,
        "client_host": request.client.host if request.client else "unknown",
    }


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers for the FastAPI application.

    Args:
        app: The FastAPI application instance
    """

    @app.exception_handler(BusinessException)
    async def business_exception_handler(
        request: Request, exc: BusinessException
    ) -> JSONResponse:
        """Convert business exceptions into the standard error body."""
        logger.warning(
            f"Business exception: {exc.code}: {exc.message}",
            extra={**_request_extra(request), "details": exc.details},
        )

        content = {
            "error": exc.code,
            "message": exc.message,
        }
        if exc.details:
            content["details"] = exc.details

        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """
        Handle Pydantic validation errors.
        Formats them in a more user-friendly way.
        """
        simplified_errors: Dict[str, str] = {}

        for error in exc.errors():
            loc = error.get("loc", [])
            # Skip the first element if it's the body
            if loc and loc[0] in ("body", "query", "path"):
                loc = loc[1:]

            field = ".".join(str(x) for x in loc)
            simplified_errors[field] = error.get("msg", "Validation error")

        logger.warning(
            f"Validation error: {simplified_errors}", extra=_request_extra(request)
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "validation_error",
                "message": "Input validation failed",
                "details": simplified_errors,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Log unexpected failures and return a generic 500."""
        logger.error(
            f"Unhandled exception: {str(exc)}",
            exc_info=True,
            extra=_request_extra(request),
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": str(exc)
                if settings.ENVIRONMENT != "production"
                else "An internal server error occurred",
            },
        )
