"""Network primitive used by the agent and the proxy passthrough.

All network I/O goes through a single Fetcher instance. The Fetcher receives
an httpx.AsyncClient via constructor injection; the lifespan owns the client
lifecycle. Non-2xx responses are returned to the caller, which decides
whether to cache them; only transport failures raise.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import structlog

from cachesync import __version__
from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.models.cache import AgentRequest, CachedResponse

if TYPE_CHECKING:
    from cachesync.config import OriginSettings

log = structlog.get_logger()

# httpx already decoded the body; these no longer describe what we hold.
_DROPPED_HEADERS = frozenset(
    {"connection", "content-encoding", "content-length", "keep-alive", "transfer-encoding"}
)
_RELOAD_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}
_FORWARDED_REQUEST_HEADERS_DROPPED = frozenset({"host", "content-length", "connection"})


def build_http_client(settings: OriginSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": f"cachesync/{__version__}"},
        limits=httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
        ),
    )


def to_cached_response(url: str, response: httpx.Response) -> CachedResponse:
    headers = [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in _DROPPED_HEADERS
    ]
    return CachedResponse(
        url=url,
        status=response.status_code,
        headers=headers,
        body=response.content,
    )


class Fetcher:
    """HTTP fetcher implementing FetcherProtocol."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch(self, url: str, *, reload: bool = False) -> CachedResponse:
        """GET ``url``. With ``reload`` any intermediate HTTP cache is bypassed.

        Raises CacheSyncError on network errors; HTTP error statuses are
        returned as-is.
        """
        headers = _RELOAD_HEADERS if reload else None
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise CacheSyncError(
                code=ErrorCode.NETWORK_ERROR,
                message=f"Network error fetching {url}: {exc}",
                suggestion="The origin may be unreachable; cached copies are used where held.",
                recoverable=True,
            ) from exc

        log.debug(
            "fetch_complete",
            url=url,
            status_code=response.status_code,
            content_length=len(response.content),
            reload=reload,
        )
        return to_cached_response(url, response)

    async def forward(self, request: AgentRequest) -> CachedResponse:
        """Send ``request`` to the network unchanged (default handling)."""
        headers = [
            (name, value)
            for name, value in request.headers
            if name.lower() not in _FORWARDED_REQUEST_HEADERS_DROPPED
        ]
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=headers,
                content=request.body or None,
            )
        except httpx.HTTPError as exc:
            raise CacheSyncError(
                code=ErrorCode.NETWORK_ERROR,
                message=f"Network error forwarding {request.method} {request.url}: {exc}",
                suggestion="The origin may be unreachable.",
                recoverable=True,
            ) from exc
        return to_cached_response(request.url, response)
