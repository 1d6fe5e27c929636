from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from backend.app.core.error_catalog import (
    ErrorCatalog,
    EngineError,
    InvariantViolation,
)
from backend.app.core.logging import log_json

logger = logging.getLogger(__name__)


def _json_safe(value):
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def _validation_error_details(exc: RequestValidationError) -> dict:
    errors = []
    for error in exc.errors():
        loc = list(error.get("loc", []))
        field = ".".join(str(item) for item in loc if item not in {"body", "query", "path"}) or None
        errors.append(
            {
                "field": field,
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "validation_error"),
            }
        )
    return {"errors": errors}


def error_response(code: str, message: str, details: object, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, "details": _json_safe(details)},
    )


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        if isinstance(exc, InvariantViolation):
            log_json(
                logger,
                {"event": "invariant_violation", "path": request.url.path, "message": exc.message, "details": exc.details},
                level=logging.CRITICAL,
            )
        return error_response(exc.code, exc.message, exc.details, exc.error.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(
            ErrorCatalog.VALIDATION_ERROR.code,
            ErrorCatalog.VALIDATION_ERROR.message,
            _validation_error_details(exc),
            ErrorCatalog.VALIDATION_ERROR.status_code,
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("Integrity error on %s: %s", request.url.path, exc.orig)
        return error_response(
            ErrorCatalog.CONFLICT.code,
            ErrorCatalog.CONFLICT.message,
            {"type": exc.__class__.__name__},
            ErrorCatalog.CONFLICT.status_code,
        )

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError):
        return error_response(
            ErrorCatalog.CONFLICT.code,
            ErrorCatalog.CONFLICT.message,
            {"type": exc.__class__.__name__},
            ErrorCatalog.CONFLICT.status_code,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return error_response(
            ErrorCatalog.INTERNAL_ERROR.code,
            ErrorCatalog.INTERNAL_ERROR.message,
            {"type": exc.__class__.__name__},
            ErrorCatalog.INTERNAL_ERROR.status_code,
        )
