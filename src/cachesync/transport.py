"""HTTP transport and control-route security middleware for the proxy."""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.datastructures import Headers
from starlette.responses import Response

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send

    from cachesync.config import Settings

log = structlog.get_logger()

CONTROL_PREFIX = "/__cachesync__/"
_LOCALHOST_ORIGIN = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")


class ControlAuthMiddleware:
    """Pure ASGI middleware guarding the agent control routes.

    Proxied traffic passes through untouched. Requests under
    ``CONTROL_PREFIX`` must:
    1. Carry the bearer key, when authentication is enabled.
    2. Come from a localhost Origin, if they carry one at all.

    Implemented as pure ASGI (not BaseHTTPMiddleware) so proxied response
    bodies are never buffered by the middleware layer.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        auth_enabled: bool,
        auth_key: str | None = None,
    ) -> None:
        self.app = app
        self.auth_enabled = auth_enabled
        self.auth_key = auth_key

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"].startswith(CONTROL_PREFIX):
            headers = Headers(scope=scope)

            if self.auth_enabled:
                auth_header = headers.get("authorization", "")
                if not auth_header.startswith("Bearer ") or auth_header[7:] != self.auth_key:
                    await Response("Unauthorized", status_code=401)(scope, receive, send)
                    return

            # Prevents DNS rebinding against the control routes
            origin = headers.get("origin", "")
            if origin and not _LOCALHOST_ORIGIN.match(origin):
                await Response("Forbidden", status_code=403)(scope, receive, send)
                return

        await self.app(scope, receive, send)


def secure_app(app: ASGIApp, settings: Settings) -> ASGIApp:
    """Wrap ``app`` with ControlAuthMiddleware configured from ``settings``."""
    http_log = log.bind(transport="http")

    auth_key: str | None = settings.server.auth_key or None

    if settings.server.auth_enabled and not auth_key:
        auth_key = secrets.token_urlsafe(32)
        http_log.warning("http_auth_key_auto_generated", auth_key=auth_key)

    if not settings.server.auth_enabled:
        http_log.warning("http_auth_disabled", scope="control_routes")

    return ControlAuthMiddleware(
        app,
        auth_enabled=settings.server.auth_enabled,
        auth_key=auth_key,
    )


def run_http_server(app: ASGIApp, settings: Settings) -> None:
    """Serve the proxy over HTTP with uvicorn."""
    uvicorn.run(
        secure_app(app, settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )
