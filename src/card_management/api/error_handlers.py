from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import CardManagementError


logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Map domain errors, request validation errors and anything else to JSON envelopes."""

    @app.exception_handler(CardManagementError)
    async def card_error_handler(request: Request, exc: CardManagementError) -> JSONResponse:
        level = logging.WARNING if exc.http_status >= 500 else logging.INFO
        logger.log(
            level,
            "%s on %s: %s",
            exc.code,
            request.url.path,
            exc.message,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.info("Invalid request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "code": "invalid_request",
                    "message": "Invalid request data",
                    "retryable": False,
                    "details": {
                        "fields": [
                            {
                                "field": ".".join(str(loc) for loc in e["loc"]),
                                "message": e["msg"],
                                "type": e["type"],
                            }
                            for e in exc.errors()
                        ]
                    },
                }
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception on %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred",
                    "retryable": False,
                    "details": {},
                }
            },
        )
