"""FastAPI application for the session gateway."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from session_gateway.api.auth import ApiKeyMiddleware
from session_gateway.api.routes import create_sessions_router
from session_gateway.config import GatewaySettings
from session_gateway.errors import GatewayError
from session_gateway.gateway import Gateway

logger = logging.getLogger(__name__)


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = GatewaySettings.from_env()
    if not settings.api_keys:
        logger.warning("GATEWAY_API_KEYS is empty; every API request will be rejected")
    return create_app(Gateway.from_settings(settings))


def create_app(gateway: Gateway, manage_lifecycle: bool = True) -> FastAPI:
    """Create the API app around an assembled ``Gateway``.

    With ``manage_lifecycle`` the app starts the gateway on startup (which
    restores persisted sessions) and stops it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await gateway.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await gateway.stop()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.gateway = gateway

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            {"error": {"code": exc.code, "message": exc.message}},
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            {"error": {"code": "VALIDATION_ERROR", "message": message}},
            status_code=422,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(
        create_sessions_router(gateway.registry, gateway.record_store, gateway.dispatcher),
    )
    app.add_middleware(ApiKeyMiddleware, api_keys=gateway.settings.api_keys)
    return app
