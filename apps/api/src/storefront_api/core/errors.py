"""Stable ``{"ok": false, "error": code}`` error responses for storefront routes."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger


class ApiError(HTTPException):
    """HTTP error carrying a machine-readable code and optional extra fields."""

    def __init__(self, status_code: int, error: str, **extra: Any) -> None:
        super().__init__(status_code=status_code, detail=error)
        self.error = error
        self.extra = extra


async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.error, **exc.extra},
        headers=getattr(exc, "headers", None),
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"ok": False, "error": "internal_error"})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)


__all__ = ["ApiError", "register_error_handlers"]
