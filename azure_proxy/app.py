"""FastAPI application factory for the Azure reasoning proxy."""
from __future__ import annotations

import logging
from typing import Any, Optional

from aiohttp import ClientSession, ClientTimeout
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import ProxySettings
from .routes import CORS_HEADERS, router

logger = logging.getLogger(__name__)


def _validation_details(exc: RequestValidationError) -> Any:
    # Pydantic may echo raw request bytes back in ``input``.
    return jsonable_encoder(
        exc.errors(),
        exclude_none=True,
        custom_encoder={bytes: lambda b: b.decode("utf-8", errors="replace")},
    )


def _open_backend_session(settings: ProxySettings) -> ClientSession:
    # sock_read stays unbounded: reasoning models can be silent for minutes.
    return ClientSession(timeout=ClientTimeout(total=settings.request_timeout, sock_read=None))


def create_app(settings: ProxySettings | None = None) -> FastAPI:
    """Build the proxy app around ``settings`` (read from the environment when omitted)."""

    settings = settings or ProxySettings.from_env()

    app = FastAPI(
        title="Azure Reasoning Proxy",
        description="OpenAI Chat Completions front end for Azure Responses API reasoning deployments.",
        version="0.1.0",
    )
    app.include_router(router)
    app.state.settings = settings
    app.state.http_client = None

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = _validation_details(exc)
        logger.error("Rejected %s %s [422]: %s", request.method, request.url.path, details)
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "message": "Request body failed validation",
                    "type": "invalid_request_error",
                    "details": details,
                }
            },
            headers=CORS_HEADERS,
        )

    @app.on_event("startup")
    async def connect_backend() -> None:  # pragma: no cover - exercised at runtime
        # A missing deployment target is a startup failure, never a per-request one.
        settings.validate()
        app.state.http_client = _open_backend_session(settings)
        logger.info(
            "✓ Forwarding to deployment %s at %s (api-version %s)",
            settings.azure_deployment,
            settings.azure_endpoint,
            settings.azure_api_version,
        )

    @app.on_event("shutdown")
    async def disconnect_backend() -> None:  # pragma: no cover - exercised at runtime
        session: Optional[ClientSession] = app.state.http_client
        app.state.http_client = None
        if session is not None and not session.closed:
            await session.close()

    return app
