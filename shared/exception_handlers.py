from __future__ import annotations

import os
import traceback
from typing import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shared.logger import get_logger
from shared.response import wrap_error
from shared.tenant import (
    TenantConfigError,
    TenantConfigValidationError,
)


def _format_loc(loc: object) -> str:
    if not isinstance(loc, (list, tuple)):
        return str(loc)
    parts: list[str] = []
    for item in loc:
        if item == "body":
            continue
        if isinstance(item, int):
            if parts:
                parts[-1] = f"{parts[-1]}[{item}]"
            else:
                parts.append(f"[{item}]")
        else:
            parts.append(str(item))
    return ".".join(parts) if parts else "body"


def validation_messages(errors: list[dict]) -> list[str]:
    """
    Human-readable messages for pydantic errors; missing fields are folded
    into one leading "x, y are required" message.
    """
    messages: list[str] = []
    missing: list[str] = []
    for err in errors:
        loc = _format_loc(err.get("loc"))
        msg = err.get("msg") or "Invalid value"
        if msg == "Field required":
            missing.append(loc or "body")
        elif loc and loc != "body":
            messages.append(f"{loc}: {msg}")
        else:
            messages.append(msg)

    if missing:
        fields = sorted(dict.fromkeys(missing))
        suffix = "are required" if len(fields) > 1 else "is required"
        messages.insert(0, f"{', '.join(fields)} {suffix}")
    return messages


def register_exception_handlers(
    app: FastAPI,
    *,
    logger_name: str,
    status_map: Mapping[type[Exception], int] | None = None,
) -> None:
    """
    ``status_map`` maps domain exceptions to the status they answer with;
    their message becomes the error detail.
    """
    logger = get_logger(logger_name)

    @app.exception_handler(TenantConfigError)
    async def tenant_config_exception_handler(
        request: Request,
        exc: TenantConfigError,
    ) -> JSONResponse:
        if isinstance(exc, TenantConfigValidationError):
            payload = exc.to_payload(getattr(request.state, "tenant_app", None))
            return JSONResponse(status_code=400, content=wrap_error(payload, request))
        return JSONResponse(status_code=400, content=wrap_error(str(exc), request))

    for exc_type, status_code in (status_map or {}).items():

        async def mapped_exception_handler(
            request: Request,
            exc: Exception,
            status_code: int = status_code,
        ) -> JSONResponse:
            logger.warning(
                "Request failed",
                extra={
                    "extra_fields": {
                        "path": str(request.url.path),
                        "status_code": status_code,
                        "error_type": exc.__class__.__name__,
                        "error": str(exc),
                    }
                },
            )
            return JSONResponse(
                status_code=status_code,
                content=wrap_error({"detail": str(exc)}, request),
            )

        app.add_exception_handler(exc_type, mapped_exception_handler)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            extra={
                "extra_fields": {
                    "path": str(request.url.path),
                    "method": request.method,
                    "error": str(exc),
                }
            },
        )

        response_content = {
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again later.",
            "detail": str(exc),
            "error_type": exc.__class__.__name__,
            "path": str(request.url.path),
            "method": request.method,
            "request_id": getattr(request.state, "request_id", None),
        }

        if os.getenv("APP_ENV", "").lower() in {"local", "dev", "development"}:
            response_content["traceback"] = traceback.format_exc().splitlines()

        return JSONResponse(status_code=500, content=wrap_error(response_content, request))

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        messages = validation_messages(errors)
        payload = {
            "error": "Invalid payload",
            "message": "; ".join(messages) if messages else "Invalid request payload",
            "messages": messages,
            "errors": errors,
        }
        return JSONResponse(status_code=422, content=wrap_error(payload, request))
