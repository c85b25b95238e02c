"""Activate phase: reconcile Persistent against the previous manifest.

The previously published Resource Manifest is the only record of what the
Persistent cache was filled for. Entries whose fingerprint is unchanged
between the previous and current manifest are reused; everything else is
evicted, then the freshly staged core shell is copied over. The new manifest
is published last, so an interrupted run never pairs a new manifest with
stale content.

Any failure resets all three namespaces, so the next activation takes the
first-run path.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from cachesync.keys import stored_key
from cachesync.models.build import MANIFEST_KEY
from cachesync.models.cache import CachedResponse

if TYPE_CHECKING:
    from cachesync.protocols import CacheNamespaceProtocol
    from cachesync.state import AgentContext


class ActivationOutcome(StrEnum):
    FIRST_RUN = "first_run"
    UPGRADE = "upgrade"
    RECOVERED = "recovered"


async def activate(ctx: AgentContext) -> ActivationOutcome:
    log = structlog.get_logger().bind(phase="activate", version=ctx.build.version)
    try:
        return await _reconcile(ctx, log)
    except Exception as exc:
        # Cache contents can no longer be trusted; start cold.
        log.error("activation_failed", error=str(exc), exc_info=True)
        await _reset(ctx, log)
        return ActivationOutcome.RECOVERED


async def _reconcile(
    ctx: AgentContext, log: structlog.typing.FilteringBoundLogger
) -> ActivationOutcome:
    storage, names = ctx.storage, ctx.names
    persistent = await storage.open(names.persistent)
    staging = await storage.open(names.staging)
    manifest_store = await storage.open(names.manifest)

    previous = await manifest_store.match(MANIFEST_KEY)

    if previous is None:
        await storage.delete(names.persistent)
        persistent = await storage.open(names.persistent)
        copied = await _copy_entries(staging, persistent)
        await storage.delete(names.staging)
        await _publish_manifest(manifest_store, ctx)
        log.info("activation_complete", outcome="first_run", copied=copied)
        return ActivationOutcome.FIRST_RUN

    old_manifest = json.loads(previous.body)
    if not isinstance(old_manifest, dict):
        raise ValueError("Stored manifest is not a JSON object")

    current = ctx.build.resources
    evicted = 0
    retained = 0
    for url in await persistent.keys():
        key = stored_key(url, ctx.origin)
        if key is None or key not in current or current[key] != old_manifest.get(key):
            await persistent.delete(url)
            evicted += 1
        else:
            retained += 1

    # Core shell always wins, even over entries retained above.
    copied = await _copy_entries(staging, persistent)
    await storage.delete(names.staging)
    await _publish_manifest(manifest_store, ctx)
    log.info(
        "activation_complete",
        outcome="upgrade",
        evicted=evicted,
        retained=retained,
        copied=copied,
    )
    return ActivationOutcome.UPGRADE


async def _copy_entries(source: CacheNamespaceProtocol, target: CacheNamespaceProtocol) -> int:
    count = 0
    for url in await source.keys():
        response = await source.match(url)
        if response is None:
            continue
        await target.put(url, response)
        count += 1
    return count


async def _publish_manifest(store: CacheNamespaceProtocol, ctx: AgentContext) -> None:
    await store.put(
        MANIFEST_KEY,
        CachedResponse(
            url=MANIFEST_KEY,
            status=200,
            headers={"content-type": "application/json"},
            body=json.dumps(ctx.build.resources).encode("utf-8"),
        ),
    )


async def _reset(ctx: AgentContext, log: structlog.typing.FilteringBoundLogger) -> None:
    for name in (ctx.names.persistent, ctx.names.staging, ctx.names.manifest):
        try:
            await ctx.storage.delete(name)
        except Exception:
            log.error("activation_reset_failed", namespace=name, exc_info=True)
