"""Shared test fixtures for the cachesync test suite."""

from __future__ import annotations

from collections.abc import Callable

import aiosqlite
import pytest
from fakes import ORIGIN, FakeFetcher

from cachesync.models.build import BuildConfig, CacheNames
from cachesync.state import AgentContext
from cachesync.storage import CacheStorage


@pytest.fixture()
async def storage() -> CacheStorage:
    """CacheStorage over an in-memory SQLite database."""
    async with aiosqlite.connect(":memory:") as db:
        cache_storage = CacheStorage(db)
        await cache_storage.init_db()
        yield cache_storage


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def names() -> CacheNames:
    return CacheNames()


@pytest.fixture()
def make_context(
    storage: CacheStorage, fetcher: FakeFetcher, names: CacheNames
) -> Callable[..., AgentContext]:
    """Factory for an AgentContext bound to the shared storage and fetcher."""

    def _make(resources: dict[str, str], core: tuple[str, ...] = ()) -> AgentContext:
        return AgentContext(
            build=BuildConfig(resources=resources, core=core),
            storage=storage,
            fetcher=fetcher,
            origin=ORIGIN,
            names=names,
        )

    return _make
