"""Unit tests for the activate phase: first run, upgrade and recovery."""

from __future__ import annotations

import json
from collections.abc import Callable

import pytest
from fakes import namespace_contents, url

from cachesync.models.build import MANIFEST_KEY, CacheNames
from cachesync.models.cache import CachedResponse
from cachesync.phases.activator import ActivationOutcome, activate
from cachesync.state import AgentContext
from cachesync.storage import CacheNamespace, CacheStorage


async def _put(storage: CacheStorage, name: str, key: str, body: str) -> None:
    namespace = await storage.open(name)
    await namespace.put(url(key), CachedResponse(url=url(key), status=200, body=body.encode()))


async def _publish(storage: CacheStorage, names: CacheNames, manifest: dict[str, str]) -> None:
    store = await storage.open(names.manifest)
    await store.put(
        MANIFEST_KEY,
        CachedResponse(url=MANIFEST_KEY, status=200, body=json.dumps(manifest).encode()),
    )


async def _stored_manifest(storage: CacheStorage, names: CacheNames) -> dict[str, str] | None:
    store = await storage.open(names.manifest)
    entry = await store.match(MANIFEST_KEY)
    return None if entry is None else json.loads(entry.body)


class TestFirstRun:
    async def test_copies_staging_and_publishes(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        resources = {"/": "h0", "app.js": "h1"}
        await _put(storage, names.staging, "app.js", "app-v1")

        outcome = await activate(make_context(resources, core=("app.js",)))

        assert outcome == ActivationOutcome.FIRST_RUN
        assert await namespace_contents(storage, names.persistent) == {url("app.js"): b"app-v1"}
        assert await storage.has(names.staging) is False
        assert await _stored_manifest(storage, names) == resources

    async def test_discards_existing_persistent(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        # Content without a manifest cannot be trusted, even if the key matches.
        await _put(storage, names.persistent, "app.js", "unknown-origin")
        await _put(storage, names.persistent, "legacy.js", "legacy")
        await _put(storage, names.staging, "index.html", "<html>")

        await activate(make_context({"app.js": "h1", "index.html": "h2"}, core=("index.html",)))

        assert await namespace_contents(storage, names.persistent) == {
            url("index.html"): b"<html>"
        }


class TestUpgrade:
    async def test_selective_eviction(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        await _publish(storage, names, {"a": "h1", "b": "h2"})
        await _put(storage, names.persistent, "a", "a-old")
        await _put(storage, names.persistent, "b", "b-old")
        await _put(storage, names.staging, "c", "c-new")

        outcome = await activate(make_context({"a": "h1", "b": "h2x", "c": "h3"}, core=("c",)))

        assert outcome == ActivationOutcome.UPGRADE
        assert await namespace_contents(storage, names.persistent) == {
            url("a"): b"a-old",
            url("c"): b"c-new",
        }
        assert await _stored_manifest(storage, names) == {"a": "h1", "b": "h2x", "c": "h3"}

    async def test_changed_core_entry_refreshed_from_staging(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        await _publish(storage, names, {"a": "h1", "b": "h2"})
        await _put(storage, names.persistent, "a", "a-old")
        await _put(storage, names.persistent, "b", "b-old")
        await _put(storage, names.staging, "b", "b-new")

        await activate(make_context({"a": "h1", "b": "h2x"}, core=("b",)))

        assert await namespace_contents(storage, names.persistent) == {
            url("a"): b"a-old",
            url("b"): b"b-new",
        }

    async def test_staging_overwrites_retained_entries(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        await _publish(storage, names, {"index.html": "h0"})
        await _put(storage, names.persistent, "index.html", "cached")
        await _put(storage, names.staging, "index.html", "fresh")

        await activate(make_context({"index.html": "h0"}, core=("index.html",)))

        assert await namespace_contents(storage, names.persistent) == {
            url("index.html"): b"fresh"
        }

    async def test_stale_keys_removed(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        await _publish(storage, names, {"a": "h1", "d": "h4"})
        await _put(storage, names.persistent, "a", "a")
        await _put(storage, names.persistent, "d", "d")

        await activate(make_context({"a": "h1"}))

        assert list(await namespace_contents(storage, names.persistent)) == [url("a")]

    async def test_root_entry_reconciled_under_root_key(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        await _publish(storage, names, {"/": "h0"})
        await _put(storage, names.persistent, "/", "<html>")

        await activate(make_context({"/": "h0"}))

        assert await namespace_contents(storage, names.persistent) == {url("/"): b"<html>"}

    async def test_key_missing_from_previous_manifest_evicted(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        # Lazily filled after the previous publish of a manifest that lacked it.
        await _publish(storage, names, {"a": "h1"})
        await _put(storage, names.persistent, "e", "e")

        await activate(make_context({"a": "h1", "e": "h5"}))

        assert await namespace_contents(storage, names.persistent) == {}

    async def test_no_op_upgrade(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        manifest = {"a": "h1", "b": "h2"}
        await _publish(storage, names, manifest)
        await _put(storage, names.persistent, "a", "a")
        await _put(storage, names.persistent, "b", "b")
        before = await namespace_contents(storage, names.persistent)

        await activate(make_context(manifest))

        assert await namespace_contents(storage, names.persistent) == before
        assert await _stored_manifest(storage, names) == manifest


class TestRecovery:
    async def test_failure_resets_all_namespaces(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _publish(storage, names, {"a": "h1", "b": "h2"})
        await _put(storage, names.persistent, "a", "a")
        await _put(storage, names.persistent, "b", "b")
        await _put(storage, names.staging, "a", "a-new")

        async def failing_delete(self: CacheNamespace, request_url: str) -> bool:
            raise RuntimeError("simulated crash mid-reconciliation")

        monkeypatch.setattr(CacheNamespace, "delete", failing_delete)

        outcome = await activate(make_context({"a": "h1", "b": "h2x"}, core=("a",)))

        assert outcome == ActivationOutcome.RECOVERED
        assert await storage.names() == []

    async def test_corrupt_manifest_triggers_recovery(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
    ) -> None:
        store = await storage.open(names.manifest)
        await store.put(MANIFEST_KEY, CachedResponse(url=MANIFEST_KEY, status=200, body=b"{"))
        await _put(storage, names.persistent, "a", "a")

        outcome = await activate(make_context({"a": "h1"}))

        assert outcome == ActivationOutcome.RECOVERED
        assert await storage.names() == []

    async def test_next_activation_after_recovery_is_first_run(
        self,
        make_context: Callable[..., AgentContext],
        storage: CacheStorage,
        names: CacheNames,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _publish(storage, names, {"a": "h1"})
        await _put(storage, names.persistent, "a", "a")

        async def failing_keys(self: CacheNamespace) -> list[str]:
            raise RuntimeError("simulated crash")

        with monkeypatch.context() as patch:
            patch.setattr(CacheNamespace, "keys", failing_keys)
            assert await activate(make_context({"a": "h2"})) == ActivationOutcome.RECOVERED

        await _put(storage, names.staging, "a", "a-v2")
        assert await activate(make_context({"a": "h2"}, core=("a",))) == (
            ActivationOutcome.FIRST_RUN
        )
        assert await namespace_contents(storage, names.persistent) == {url("a"): b"a-v2"}
