"""Fetch phase: route intercepted GET requests.

Only resources named in the Resource Manifest are cache-managed. The root
entry point is served online-first; everything else cache-first with
lazy fill.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from cachesync.errors import CacheSyncError
from cachesync.keys import ROOT_KEY, canonical_url, resource_key

if TYPE_CHECKING:
    from cachesync.models.cache import AgentRequest, CachedResponse
    from cachesync.state import AgentContext


async def intercept(ctx: AgentContext, request: AgentRequest) -> CachedResponse | None:
    """Return the response for ``request``, or ``None`` to decline it.

    Declined requests fall through to default network handling by the host.
    Network errors on a cache miss propagate to the caller.
    """
    if request.method.upper() != "GET":
        return None

    key = resource_key(request.url, ctx.origin)
    if key is None or key not in ctx.build.resources:
        return None

    if key == ROOT_KEY:
        return await online_first(ctx, request)

    log = structlog.get_logger().bind(phase="fetch", key=key)
    url = canonical_url(key, ctx.origin)
    persistent = await ctx.storage.open(ctx.names.persistent)

    cached = await persistent.match(url)
    if cached is not None:
        log.debug("cache_hit")
        return cached

    log.debug("cache_miss_fetching", url=request.url)
    response = await ctx.fetcher.fetch(request.url)
    if response.ok:
        await persistent.put(url, response)
    return response


async def online_first(ctx: AgentContext, request: AgentRequest) -> CachedResponse:
    """Serve the navigation root from the network, falling back to cache.

    With neither network nor a cached copy, the network error is
    re-raised.
    """
    log = structlog.get_logger().bind(phase="fetch", key=ROOT_KEY)
    url = canonical_url(ROOT_KEY, ctx.origin)
    persistent = await ctx.storage.open(ctx.names.persistent)

    try:
        response = await ctx.fetcher.fetch(request.url)
    except CacheSyncError:
        cached = await persistent.match(url)
        if cached is not None:
            log.info("online_first_offline_fallback")
            return cached
        log.warning("online_first_unavailable")
        raise

    await persistent.put(url, response)
    return response
