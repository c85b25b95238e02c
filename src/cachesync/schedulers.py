"""Background scheduler coroutine for build update checks."""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

import structlog

from cachesync.build import (
    BUILD_INITIAL_BACKOFF_SECONDS,
    BUILD_MAX_BACKOFF_SECONDS,
    BUILD_MAX_TRANSIENT_BACKOFF_ATTEMPTS,
    BuildUpdateOutcome,
    check_for_build_update,
)

if TYPE_CHECKING:
    from cachesync.state import AppState

log = structlog.get_logger()


def _jittered_delay(base_seconds: int) -> float:
    return base_seconds * random.uniform(0.8, 1.2)


def _next_delay(
    outcome: BuildUpdateOutcome,
    transient_failures: int,
    poll_interval_seconds: float,
) -> tuple[float, int]:
    """Seconds to wait before the next check, and the updated failure streak.

    Only transient failures back off (doubling, capped). A long enough streak
    of them waits out a full poll interval and starts over.
    """
    if outcome != "transient_failure":
        return poll_interval_seconds, 0

    transient_failures += 1
    if transient_failures >= BUILD_MAX_TRANSIENT_BACKOFF_ATTEMPTS:
        log.warning(
            "build_update_transient_retry_suspended",
            consecutive_failures=transient_failures,
            cooldown_seconds=poll_interval_seconds,
        )
        return poll_interval_seconds, 0

    backoff = min(
        BUILD_INITIAL_BACKOFF_SECONDS * 2 ** (transient_failures - 1),
        BUILD_MAX_BACKOFF_SECONDS,
    )
    return _jittered_delay(backoff), transient_failures


async def run_build_update_scheduler(
    state: AppState,
    *,
    skip_initial_check: bool = False,
) -> None:
    """Poll for newly deployed builds and register them with the host.

    ``skip_initial_check`` is set when a build was just registered at
    startup, so the first check waits a full poll interval.
    """
    transient_failures = 0

    if skip_initial_check:
        await asyncio.sleep(state.settings.build.poll_interval_hours * 3600)

    while True:
        outcome: BuildUpdateOutcome
        try:
            outcome = await check_for_build_update(state)
        except Exception:
            log.warning("build_update_scheduler_error", exc_info=True)
            outcome = "semantic_failure"

        if outcome == "success":
            log.info("build_update_deployed")
        elif outcome == "unchanged":
            log.debug("build_update_unchanged")

        delay, transient_failures = _next_delay(
            outcome,
            transient_failures,
            state.settings.build.poll_interval_hours * 3600,
        )
        await asyncio.sleep(delay)
