"""Protocol interfaces for swappable components.

The agent and its phases reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory implementations
- Other namespace backends to be swapped in without touching the agent
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from cachesync.models.cache import AgentRequest, CachedResponse


class CacheNamespaceProtocol(Protocol):
    """Interface for a single named cache namespace."""

    name: str

    async def match(self, url: str) -> CachedResponse | None: ...

    async def put(self, url: str, response: CachedResponse) -> None: ...

    async def delete(self, url: str) -> bool: ...

    async def keys(self) -> list[str]: ...


class CacheStorageProtocol(Protocol):
    """Interface for the collection of cache namespaces."""

    async def open(self, name: str) -> CacheNamespaceProtocol: ...

    async def delete(self, name: str) -> bool: ...

    async def has(self, name: str) -> bool: ...

    async def names(self) -> list[str]: ...


class FetcherProtocol(Protocol):
    """Interface for the network primitive."""

    async def fetch(self, url: str, *, reload: bool = False) -> CachedResponse: ...

    async def forward(self, request: AgentRequest) -> CachedResponse: ...
