"""Proxy entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState in the Starlette lifespan and register the deployed build
- Route control messages to the host and every other request through it
- Provide the ``cachesync`` command line (serve / build)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from cachesync import __version__
from cachesync.build import generate_build, load_build, save_build
from cachesync.config import Settings
from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.fetcher import Fetcher, build_http_client
from cachesync.host import AgentHost
from cachesync.models.build import CacheNames
from cachesync.models.cache import AgentRequest
from cachesync.schedulers import run_build_update_scheduler
from cachesync.state import AppState
from cachesync.storage import CacheStorage
from cachesync.transport import CONTROL_PREFIX, run_http_server

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request

    from cachesync.models.cache import CachedResponse

log = structlog.get_logger()

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
_STATUS_BY_CODE = {
    ErrorCode.NETWORK_ERROR: 502,
    ErrorCode.PREFETCH_FAILED: 502,
    ErrorCode.STORAGE_ERROR: 500,
}


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _cache_names(settings: Settings) -> CacheNames:
    return CacheNames(
        staging=settings.cache.staging_name,
        persistent=settings.cache.persistent_name,
        manifest=settings.cache.manifest_name,
    )


def _build_path(settings: Settings) -> Path:
    """Local build artefact: the configured file, or a download beside the database."""
    if settings.build.url is not None:
        return Path(settings.cache.db_path).expanduser().parent / "build.json"
    return Path(settings.build.path).expanduser()


async def _register_initial_build(state: AppState) -> bool:
    """Register the build found on disk. Returns True if an agent is active."""
    if state.build_path is None:
        return False
    try:
        build = load_build(state.build_path)
    except CacheSyncError as exc:
        log.warning("initial_build_invalid", path=str(state.build_path), error=exc.message)
        return False
    if build is None:
        log.warning("initial_build_missing", path=str(state.build_path))
        return False
    try:
        await state.host.register(build)
    except CacheSyncError as exc:
        log.warning("initial_install_failed", version=build.version, error=exc.message)
        return False
    return True


@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
    """Create and tear down all shared resources for the proxy's lifetime."""
    settings: Settings = app.state.settings

    log.info("server_starting", version=__version__, origin=settings.origin.url)

    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    storage = CacheStorage(db)
    await storage.init_db()

    http_client = build_http_client(settings.origin)
    fetcher = Fetcher(http_client)
    host = AgentHost(
        storage,
        fetcher,
        origin=settings.origin.url,
        names=_cache_names(settings),
        skip_waiting_on_install=settings.agent.skip_waiting_on_install,
    )
    host.start()

    state = AppState(
        settings=settings,
        storage=storage,
        fetcher=fetcher,
        host=host,
        http_client=http_client,
        build_path=_build_path(settings),
    )
    app.state.cachesync = state

    registered = await _register_initial_build(state)
    update_task = asyncio.create_task(
        run_build_update_scheduler(state, skip_initial_check=registered)
    )

    log.info("server_started", version=__version__, agent=host.status()["active"])

    try:
        yield
    finally:
        update_task.cancel()
        with suppress(asyncio.CancelledError):
            await update_task
        await host.stop()
        await http_client.aclose()
        await db.close()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _error_response(error: CacheSyncError) -> JSONResponse:
    """Convert a CacheSyncError to the JSON error envelope."""
    return JSONResponse(error.to_dict(), status_code=_STATUS_BY_CODE.get(error.code, 500))


def _to_starlette(response: CachedResponse) -> Response:
    # Raw pairs so repeated headers (set-cookie) are sent one per line
    result = Response(content=response.body, status_code=response.status)
    result.raw_headers.extend(
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in response.headers
    )
    return result


async def _read_message(request: Request) -> object:
    body = await request.body()
    if request.headers.get("content-type", "").startswith("application/json"):
        data = json.loads(body or b"null")
        return data.get("message") if isinstance(data, dict) else data
    return body.decode("utf-8").strip()


async def message(request: Request) -> Response:
    """Deliver a control message (``skipWaiting``, ``downloadOffline``)."""
    state: AppState = request.app.state.cachesync
    try:
        payload = await _read_message(request)
    except ValueError:
        return JSONResponse({"error": "Malformed message body"}, status_code=400)
    try:
        fetched = await state.host.post_message(payload)
    except CacheSyncError as exc:
        log.warning("message_error", payload=repr(payload), code=exc.code, message=exc.message)
        return _error_response(exc)
    return JSONResponse({"message": payload, "fetched": fetched, **state.host.status()})


async def status(request: Request) -> Response:
    state: AppState = request.app.state.cachesync
    return JSONResponse({**state.host.status(), "namespaces": await state.storage.names()})


async def proxy(request: Request) -> Response:
    """Deliver every other request to the host as a fetch event."""
    state: AppState = request.app.state.cachesync
    url = state.settings.origin.url.rstrip("/") + request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"

    agent_request = AgentRequest(
        url=url,
        method=request.method,
        headers=request.headers.items(),
        body=await request.body(),
    )
    try:
        response = await state.host.fetch(agent_request)
    except CacheSyncError as exc:
        log.warning("fetch_error", url=url, code=exc.code, message=exc.message)
        return _error_response(exc)
    return _to_starlette(response)


def create_app(settings: Settings | None = None) -> Starlette:
    app = Starlette(
        routes=[
            Route(f"{CONTROL_PREFIX}message", message, methods=["POST"]),
            Route(f"{CONTROL_PREFIX}status", status, methods=["GET"]),
            Route("/{path:path}", proxy, methods=_ALL_METHODS),
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()
    return app


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def _build_command(args: argparse.Namespace, settings: Settings) -> int:
    try:
        build = generate_build(Path(args.directory), core=args.core, exclude=args.exclude)
    except CacheSyncError as exc:
        log.error("build_failed", code=exc.code, message=exc.message)
        return 1
    output = Path(args.output) if args.output else Path(settings.build.path)
    save_build(build, output)
    log.info("build_written", path=str(output), version=build.version)
    return 0


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cachesync", description="Offline-capable caching proxy for static front ends."
    )
    parser.add_argument("--version", action="version", version=__version__)
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("serve", help="Run the caching proxy (default).")

    build = commands.add_parser("build", help="Generate the build artefact for a directory.")
    build.add_argument("directory", help="Built front-end directory.")
    build.add_argument(
        "--core",
        action="append",
        default=[],
        metavar="KEY",
        help="Core shell resource key; repeat for each.",
    )
    build.add_argument(
        "--exclude", action="append", default=[], metavar="KEY", help="Resource key to skip."
    )
    build.add_argument("-o", "--output", help="Artefact path (default: build.path setting).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = Settings()
    _setup_logging(settings)

    if args.command == "build":
        sys.exit(_build_command(args, settings))

    run_http_server(create_app(settings), settings)


if __name__ == "__main__":
    main()
