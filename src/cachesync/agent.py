"""The cache synchronization agent as an explicit lifecycle state machine.

    parsed ─install()─▶ installing ─▶ installed ─activate()─▶ activating ─▶ activated
                            │
                            └─ failure ─▶ redundant ◀─ retire()

Activation strictly follows a completed install. Interception is only
performed once activated; before that every request is declined.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.phases import activator, installer, interceptor, prefetch
from cachesync.phases.activator import ActivationOutcome

if TYPE_CHECKING:
    from cachesync.models.cache import AgentRequest, CachedResponse
    from cachesync.state import AgentContext


class AgentPhase(StrEnum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class Message(StrEnum):
    SKIP_WAITING = "skipWaiting"
    DOWNLOAD_OFFLINE = "downloadOffline"


class CacheSyncAgent:
    """One deployed version of the agent, bound to a single BuildConfig."""

    def __init__(self, context: AgentContext, *, skip_waiting_on_install: bool = True) -> None:
        self.context = context
        self.phase = AgentPhase.PARSED
        self.skip_waiting_requested = False
        self.clients_claimed = False
        self.activation_outcome: ActivationOutcome | None = None
        self._skip_waiting_on_install = skip_waiting_on_install
        self._log = structlog.get_logger().bind(version=context.build.version)

    @property
    def version(self) -> str:
        return self.context.build.version

    def _require(self, expected: AgentPhase, operation: str) -> None:
        if self.phase != expected:
            raise CacheSyncError(
                code=ErrorCode.INVALID_STATE,
                message=f"Cannot {operation} an agent in phase '{self.phase}'",
                suggestion=f"{operation} requires phase '{expected}'.",
                recoverable=False,
            )

    def skip_waiting(self) -> None:
        """Signal readiness to supersede the active agent without waiting."""
        self.skip_waiting_requested = True

    def retire(self) -> None:
        self.phase = AgentPhase.REDUNDANT
        self._log.info("agent_retired")

    async def install(self) -> None:
        self._require(AgentPhase.PARSED, "install")
        self.phase = AgentPhase.INSTALLING
        if self._skip_waiting_on_install:
            self.skip_waiting()
        try:
            await installer.install(self.context)
        except Exception:
            self.phase = AgentPhase.REDUNDANT
            raise
        self.phase = AgentPhase.INSTALLED

    async def activate(self) -> ActivationOutcome:
        self._require(AgentPhase.INSTALLED, "activate")
        self.phase = AgentPhase.ACTIVATING
        outcome = await activator.activate(self.context)
        if outcome != ActivationOutcome.RECOVERED:
            self.clients_claimed = True
        self.activation_outcome = outcome
        self.phase = AgentPhase.ACTIVATED
        return outcome

    async def intercept(self, request: AgentRequest) -> CachedResponse | None:
        if self.phase != AgentPhase.ACTIVATED:
            return None
        return await interceptor.intercept(self.context, request)

    async def download_offline(self) -> list[str]:
        return await prefetch.download_offline(self.context)

    async def handle_message(self, payload: object) -> list[str] | None:
        """Handle a control message. Unknown payloads are ignored."""
        if payload == Message.SKIP_WAITING:
            self.skip_waiting()
            return None
        if payload == Message.DOWNLOAD_OFFLINE:
            return await self.download_offline()
        self._log.debug("message_ignored", payload=repr(payload))
        return None
