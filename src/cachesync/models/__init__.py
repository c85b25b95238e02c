from __future__ import annotations

from cachesync.models.build import MANIFEST_KEY, BuildConfig, CacheNames
from cachesync.models.cache import AgentRequest, CachedResponse

__all__ = [
    # build
    "BuildConfig",
    "CacheNames",
    "MANIFEST_KEY",
    # cache
    "AgentRequest",
    "CachedResponse",
]
