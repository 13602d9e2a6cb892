"""Typed errors raised by the migration engine.

Every error carries an ``ErrorCategory`` decided where the failure is
captured, so downstream consumers (attempt records, retry policy, health
alerts) never need to parse the message text. ``raw_message`` keeps the
original upstream text for diagnostics.
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request

from app.core.logging_config import get_logger
from app.core.response import error_response
from app.utils.enums import ErrorCategory

logger = get_logger("exceptions")


class MigrationError(Exception):
    """Base class for all engine errors."""

    status_code = 400
    error_code = "MIGRATION_ERROR"
    default_category = ErrorCategory.other

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        raw_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.raw_message = raw_message or message


class ValidationError(MigrationError):
    status_code = 400
    error_code = "VALIDATION_ERROR"
    default_category = ErrorCategory.validation


class NotFoundError(MigrationError):
    status_code = 404
    error_code = "NOT_FOUND"
    default_category = ErrorCategory.validation


class InvalidStateError(MigrationError):
    status_code = 409
    error_code = "INVALID_STATE"
    default_category = ErrorCategory.validation


class ConfigurationError(MigrationError):
    status_code = 422
    error_code = "CONFIGURATION_ERROR"
    default_category = ErrorCategory.validation


class GatewayError(MigrationError):
    """A payment gateway call failed or timed out."""

    status_code = 502
    error_code = "GATEWAY_ERROR"
    default_category = ErrorCategory.payment


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MigrationError)
    async def migration_error_handler(request: Request, exc: MigrationError):
        logger.warning(
            f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}",
            extra={"category": exc.category.value, "path": request.url.path},
        )
        return error_response(
            exc.message,
            status_code=exc.status_code,
            error_code=exc.error_code,
            category=exc.category.value,
        )
