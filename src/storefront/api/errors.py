"""Translate storefront errors into HTTP responses.

Protean's own handlers stay registered for framework errors; the handlers
added here take precedence for the storefront's typed errors because
Starlette resolves handlers along the exception's MRO.

Body: ``{"error": <kind>, "message": <text>, **details}``
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.integrations.fastapi import register_exception_handlers

from storefront.errors import ConflictError, DomainValidationError, GatewayError, NotFoundError

logger = structlog.get_logger(__name__)


def _error_response(status_code: int, exc) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "message": exc.message, **exc.details},
    )


async def _validation_error(request: Request, exc: DomainValidationError) -> JSONResponse:
    return _error_response(400, exc)


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, exc)


async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
    return _error_response(409, exc)


async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    logger.error("Payment gateway error", path=request.url.path, gateway=exc.gateway, error=exc.message)
    return _error_response(502, exc)


def register_error_handlers(app: FastAPI) -> None:
    register_exception_handlers(app)
    app.add_exception_handler(DomainValidationError, _validation_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(ConflictError, _conflict)
    app.add_exception_handler(GatewayError, _gateway_error)
