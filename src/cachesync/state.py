"""Runtime state containers.

AgentContext is the immutable configuration plus collaborators injected into
one agent at construction. AppState is created once at proxy startup (inside
the Starlette lifespan) and reachable from every route via ``app.state``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    import httpx

    from cachesync.config import Settings
    from cachesync.host import AgentHost
    from cachesync.models.build import BuildConfig, CacheNames
    from cachesync.protocols import CacheStorageProtocol, FetcherProtocol


@dataclass(frozen=True)
class AgentContext:
    """Everything a single agent version needs. Never mutated."""

    build: BuildConfig
    storage: CacheStorageProtocol
    fetcher: FetcherProtocol
    origin: str
    names: CacheNames


@dataclass
class AppState:
    """Holds all shared runtime state of the proxy."""

    settings: Settings
    storage: CacheStorageProtocol
    fetcher: FetcherProtocol
    host: AgentHost
    http_client: httpx.AsyncClient | None = None
    build_path: Path | None = None
