"""Offline prefetch: fill manifest resources missing from Persistent."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.keys import canonical_url, stored_key

if TYPE_CHECKING:
    from cachesync.state import AgentContext


async def download_offline(ctx: AgentContext) -> list[str]:
    """Fetch and store every manifest key not yet in Persistent.

    Nothing already cached is evicted or refetched, so a second run against
    an unchanged manifest performs no network work. Returns the fetched keys.
    """
    log = structlog.get_logger().bind(phase="prefetch", version=ctx.build.version)
    persistent = await ctx.storage.open(ctx.names.persistent)

    present = {stored_key(url, ctx.origin) for url in await persistent.keys()}
    missing = [key for key in ctx.build.resources if key not in present]
    if not missing:
        log.info("prefetch_skipped", reason="complete")
        return []

    urls = [canonical_url(key, ctx.origin) for key in missing]
    responses = await asyncio.gather(*(ctx.fetcher.fetch(url) for url in urls))

    failed = [response.url for response in responses if not response.ok]
    if failed:
        log.warning("prefetch_failed", urls=failed)
        raise CacheSyncError(
            code=ErrorCode.PREFETCH_FAILED,
            message=f"Offline prefetch got an error status for: {', '.join(failed)}",
            suggestion="Retry once the origin serves every manifest resource.",
            recoverable=True,
        )

    for url, response in zip(urls, responses, strict=True):
        await persistent.put(url, response)

    log.info("prefetch_complete", fetched=len(missing))
    return missing
