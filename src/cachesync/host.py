"""Host environment for agents: lifecycle dispatch and request routing.

Lifecycle work (install, activate, promotion of a waiting agent) is
serialised through a single worker draining an ``asyncio.Queue``, so an
activation never starts before the install it depends on has finished and
two lifecycles never interleave. Request interception bypasses the queue:
fetches for different requests run concurrently with each other and with
an in-progress reconciliation.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import TYPE_CHECKING, Any

import structlog

from cachesync.agent import CacheSyncAgent, Message
from cachesync.state import AgentContext

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from cachesync.models.build import BuildConfig, CacheNames
    from cachesync.models.cache import AgentRequest, CachedResponse
    from cachesync.protocols import CacheStorageProtocol, FetcherProtocol

log = structlog.get_logger()


class AgentHost:
    """Owns the active agent and at most one waiting agent."""

    def __init__(
        self,
        storage: CacheStorageProtocol,
        fetcher: FetcherProtocol,
        *,
        origin: str,
        names: CacheNames,
        skip_waiting_on_install: bool = True,
    ) -> None:
        self._storage = storage
        self._fetcher = fetcher
        self._origin = origin.rstrip("/")
        self._names = names
        self._skip_waiting_on_install = skip_waiting_on_install
        self._queue: asyncio.Queue[
            tuple[Callable[[], Awaitable[Any]], asyncio.Future[Any]]
        ] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.active: CacheSyncAgent | None = None
        self.waiting: CacheSyncAgent | None = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    async def _run(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                result = await job()
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def _submit(self, job: Callable[[], Awaitable[Any]]) -> Any:
        if self._worker is None:
            raise RuntimeError("AgentHost.start() must be called before submitting lifecycle work")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._queue.put((job, future))
        return await future

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def register(self, build: BuildConfig) -> CacheSyncAgent:
        """Install a new agent for ``build`` and activate it when allowed.

        Raises CacheSyncError if installation fails; the active agent, if
        any, keeps serving.
        """
        return await self._submit(lambda: self._register(build))

    async def _register(self, build: BuildConfig) -> CacheSyncAgent:
        agent = CacheSyncAgent(
            AgentContext(
                build=build,
                storage=self._storage,
                fetcher=self._fetcher,
                origin=self._origin,
                names=self._names,
            ),
            skip_waiting_on_install=self._skip_waiting_on_install,
        )
        await agent.install()

        if agent.skip_waiting_requested or self.active is None:
            await self._promote(agent)
        else:
            if self.waiting is not None:
                self.waiting.retire()
            self.waiting = agent
            log.info("agent_waiting", version=agent.version)
        return agent

    async def _promote(self, agent: CacheSyncAgent) -> None:
        previous = self.active
        outcome = await agent.activate()
        self.active = agent
        if self.waiting is agent:
            self.waiting = None
        if previous is not None and previous is not agent:
            previous.retire()
        log.info(
            "agent_activated",
            version=agent.version,
            outcome=outcome,
            previous_version=previous.version if previous else None,
        )

    async def _promote_waiting(self) -> CacheSyncAgent | None:
        agent = self.waiting
        if agent is None:
            return None
        await self._promote(agent)
        return agent

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def fetch(self, request: AgentRequest) -> CachedResponse:
        """Deliver a fetch event; declined requests go to the network."""
        agent = self.active
        response = await agent.intercept(request) if agent is not None else None
        if response is None:
            response = await self._fetcher.forward(request)
        return response

    async def post_message(self, payload: object) -> list[str] | None:
        if payload == Message.SKIP_WAITING:
            if self.waiting is None:
                return None
            self.waiting.skip_waiting()
            await self._submit(self._promote_waiting)
            return None
        if self.active is None:
            log.debug("message_dropped", reason="no_active_agent")
            return None
        return await self.active.handle_message(payload)

    def status(self) -> dict:
        def describe(agent: CacheSyncAgent | None) -> dict | None:
            if agent is None:
                return None
            return {
                "version": agent.version,
                "phase": agent.phase,
                "clients_claimed": agent.clients_claimed,
                "activation_outcome": agent.activation_outcome,
            }

        return {"active": describe(self.active), "waiting": describe(self.waiting)}
