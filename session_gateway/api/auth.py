"""ASGI middleware resolving Bearer API keys to owner ids."""

from __future__ import annotations

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from session_gateway.errors import AuthenticationError, ForbiddenError, GatewayError

logger = logging.getLogger(__name__)

# Paths that bypass authentication (exact match)
PUBLIC_PATHS = {"/health", "/healthz"}


class ApiKeyMiddleware:
    """Validates ``Authorization: Bearer <key>`` and stores the key's owner in ``request.state``."""

    def __init__(self, app: ASGIApp, api_keys: dict[str, str]) -> None:
        self.app = app
        self._keys = [(key.encode(), owner) for key, owner in api_keys.items()]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path
        if path in PUBLIC_PATHS:
            await self.app(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            self._log_failure(request, "missing_token" if not auth_header else "invalid_format")
            await _error(AuthenticationError("Authentication required"))(scope, receive, send)
            return

        owner_id = self._resolve(auth_header[7:].encode())
        if owner_id is None:
            self._log_failure(request, "invalid_token")
            await _error(ForbiddenError("Access denied"))(scope, receive, send)
            return

        scope.setdefault("state", {})["owner_id"] = owner_id
        await self.app(scope, receive, send)

    def _resolve(self, provided: bytes) -> str | None:
        # no early exit: every configured key is compared
        owner_id = None
        for key, owner in self._keys:
            if hmac.compare_digest(provided, key):
                owner_id = owner
        return owner_id

    @staticmethod
    def _log_failure(request: Request, reason: str) -> None:
        logger.warning(
            "Authentication failed (%s) for %s %s from %s",
            reason, request.method, request.url.path,
            request.client.host if request.client else "unknown",
        )


def _error(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        {"error": {"code": exc.code, "message": exc.message}},
        status_code=exc.status_code,
    )
