"""Install phase: stage the Core Shell Set."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.keys import canonical_url

if TYPE_CHECKING:
    from cachesync.state import AgentContext


async def install(ctx: AgentContext) -> list[str]:
    """Fetch every core shell resource fresh from origin into Staging.

    All-or-nothing: Staging is written only after every fetch returned an ok
    response, and is dropped again if writing fails partway. Returns the
    staged URLs.
    """
    log = structlog.get_logger().bind(phase="install", version=ctx.build.version)
    log.info("install_started", core_count=len(ctx.build.core))

    urls = [canonical_url(key, ctx.origin) for key in ctx.build.core]
    try:
        responses = await asyncio.gather(
            *(ctx.fetcher.fetch(url, reload=True) for url in urls)
        )
    except CacheSyncError as exc:
        log.warning("install_failed", reason="network_error", error=exc.message)
        raise CacheSyncError(
            code=ErrorCode.INSTALL_FAILED,
            message=f"Core shell fetch failed: {exc.message}",
            suggestion="The host retries installation on the next update check.",
            recoverable=True,
        ) from exc

    failed = [response.url for response in responses if not response.ok]
    if failed:
        log.warning("install_failed", reason="bad_status", urls=failed)
        raise CacheSyncError(
            code=ErrorCode.INSTALL_FAILED,
            message=f"Core shell fetch returned an error status for: {', '.join(failed)}",
            suggestion="Check that every core shell resource is deployed on the origin.",
            recoverable=True,
        )

    # Leftovers from an interrupted earlier install must not be activated.
    await ctx.storage.delete(ctx.names.staging)
    staging = await ctx.storage.open(ctx.names.staging)
    try:
        for url, response in zip(urls, responses, strict=True):
            await staging.put(url, response)
    except Exception:
        await ctx.storage.delete(ctx.names.staging)
        raise

    log.info("install_complete", staged=len(urls))
    return urls
