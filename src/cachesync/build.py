"""Build artefact: generation, loading, persistence and update checks.

The artefact is a JSON object ``{"version", "resources", "core"}`` produced
at deploy time from the built front end. ``resources`` maps every resource
key to a 32-hex MD5 fingerprint of its content; ``core`` lists the shell
resources staged before an agent may activate.
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
from contextlib import suppress
from typing import TYPE_CHECKING, Literal

import httpx
import structlog
from pydantic import ValidationError

from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.keys import ROOT_KEY
from cachesync.models.build import BuildConfig

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from cachesync.state import AppState

log = structlog.get_logger()

BUILD_INITIAL_BACKOFF_SECONDS = 60
BUILD_MAX_BACKOFF_SECONDS = 60 * 60
BUILD_MAX_TRANSIENT_BACKOFF_ATTEMPTS = 8

BuildUpdateOutcome = Literal["success", "unchanged", "transient_failure", "semantic_failure"]

INDEX_DOCUMENT = "index.html"
DEFAULT_EXCLUDES = frozenset({"cachesync-build.json"})


def _md5_file(path: Path) -> str:
    digest = hashlib.md5(usedforsecurity=False)
    with path.open("rb") as file_obj:
        for chunk in iter(lambda: file_obj.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_build(
    directory: Path,
    core: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> BuildConfig:
    """Fingerprint every file under ``directory`` into a BuildConfig.

    Keys are POSIX paths relative to ``directory``. When an ``index.html``
    exists at the top level its fingerprint is also published under the root
    key, since navigating to the site root serves it.
    """
    excluded = DEFAULT_EXCLUDES | frozenset(exclude)
    resources: dict[str, str] = {}
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        key = path.relative_to(directory).as_posix()
        if key in excluded:
            continue
        resources[key] = _md5_file(path)

    if INDEX_DOCUMENT in resources:
        resources[ROOT_KEY] = resources[INDEX_DOCUMENT]

    try:
        build = BuildConfig(resources=resources, core=tuple(core))
    except ValidationError as exc:
        raise CacheSyncError(
            code=ErrorCode.INVALID_BUILD,
            message=str(exc),
            suggestion="Every core shell key must name a file in the build directory.",
            recoverable=False,
        ) from exc
    log.info(
        "build_generated",
        directory=str(directory),
        resources=len(resources),
        core=len(build.core),
        version=build.version,
    )
    return build


def parse_build(payload: bytes) -> BuildConfig:
    """Parse and validate a serialised build artefact."""
    try:
        return BuildConfig.model_validate(json.loads(payload))
    except (ValueError, ValidationError) as exc:
        raise CacheSyncError(
            code=ErrorCode.INVALID_BUILD,
            message=f"Invalid build artefact: {exc}",
            suggestion="Regenerate the artefact with 'cachesync build'.",
            recoverable=False,
        ) from exc


def load_build(path: Path) -> BuildConfig | None:
    """Load the build artefact at ``path``. Returns None if it does not exist."""
    if not path.is_file():
        log.debug("build_missing", path=str(path))
        return None
    build = parse_build(path.read_bytes())
    log.info("build_loaded", path=str(path), version=build.version, resources=len(build.resources))
    return build


def save_build(build: BuildConfig, path: Path) -> None:
    """Persist ``build`` with atomic replace semantics."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(build.model_dump(mode="json"), indent=2).encode("utf-8")
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        _write_bytes_fsync(tmp_path, payload)
        os.replace(tmp_path, path)
        _fsync_directory(path.parent)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Update checks
# ---------------------------------------------------------------------------


async def _read_build_source(state: AppState) -> bytes | BuildUpdateOutcome:
    url = state.settings.build.url
    if url is None:
        if state.build_path is None or not state.build_path.is_file():
            log.warning("build_update_semantic_failure", reason="missing_artefact")
            return "semantic_failure"
        try:
            return state.build_path.read_bytes()
        except OSError:
            log.warning("build_update_transient_failure", reason="read_error", exc_info=True)
            return "transient_failure"

    if state.http_client is None:
        return "semantic_failure"
    try:
        response = await state.http_client.get(
            url, headers={"Cache-Control": "no-cache", "Pragma": "no-cache"}
        )
    except httpx.HTTPError as exc:
        log.warning(
            "build_update_transient_failure",
            reason="network_error",
            url=url,
            error=str(exc),
        )
        return "transient_failure"
    if not response.is_success:
        return _classify_http_failure(url=url, status_code=response.status_code)
    return response.content


async def check_for_build_update(state: AppState) -> BuildUpdateOutcome:
    """Register a new agent when a new build has been deployed.

    Returns ``unchanged`` when the deployed build is already active or
    waiting, and ``success`` only when a new agent was registered.
    """
    source = await _read_build_source(state)
    if isinstance(source, str):
        return source

    try:
        build = parse_build(source)
    except CacheSyncError as exc:
        log.warning("build_update_semantic_failure", reason="invalid_artefact", error=exc.message)
        return "semantic_failure"

    current = state.host.waiting or state.host.active
    if current is not None and current.version == build.version:
        log.info("build_up_to_date", version=build.version)
        return "unchanged"

    try:
        await state.host.register(build)
    except CacheSyncError as exc:
        log.warning("build_update_install_failed", version=build.version, error=exc.message)
        return "transient_failure"

    if state.settings.build.url is not None and state.build_path is not None:
        try:
            save_build(build, state.build_path)
        except OSError as exc:
            log.warning("build_persist_failed", version=build.version, error=str(exc))

    log.info("build_updated", version=build.version, resources=len(build.resources))
    return "success"


def _classify_http_failure(*, url: str, status_code: int) -> BuildUpdateOutcome:
    if status_code >= 500 or status_code in {408, 429}:
        log.warning(
            "build_update_transient_failure",
            reason="http_status",
            url=url,
            status_code=status_code,
        )
        return "transient_failure"

    log.warning(
        "build_update_semantic_failure",
        reason="http_status",
        url=url,
        status_code=status_code,
    )
    return "semantic_failure"


def _write_bytes_fsync(path: Path, data: bytes) -> None:
    with path.open("wb") as file_obj:
        file_obj.write(data)
        file_obj.flush()
        os.fsync(file_obj.fileno())


def _fsync_directory(path: Path) -> None:
    if sys.platform == "win32":
        return  # Windows does not support fsync on directory handles
    directory_fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(directory_fd)
    finally:
        os.close(directory_fd)
