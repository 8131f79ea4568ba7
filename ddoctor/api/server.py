"""Status server — exposes the latest snapshot over HTTP.

Endpoint:
  GET /   — latest AggregateSnapshot as JSON; status code is the configured
            ok_status when every check is healthy, otherwise nok_status
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Iterator

import uvicorn
from fastapi import APIRouter, FastAPI, Request, Response

from ddoctor import __version__
from ddoctor.checks.presenter import serialize_snapshot
from ddoctor.checks.registry import RuntimeConfig
from ddoctor.checks.scheduler import HealthScheduler
from ddoctor.errors import SerializationFailure

logger = logging.getLogger(__name__)

status_router = APIRouter()


@status_router.get("/")
def status(request: Request) -> Response:
    """Serve the latest snapshot. Never blocks waiting for a cycle."""
    scheduler: HealthScheduler = request.app.state.scheduler
    config: RuntimeConfig = request.app.state.config

    snapshot = scheduler.latest
    healthy = snapshot is not None and snapshot.overall_healthy
    try:
        body = serialize_snapshot(snapshot)
    except SerializationFailure as e:
        logger.error("Snapshot serialization failed: %s", e)
        healthy = False
        body = json.dumps({"overall_healthy": False, "detail": str(e), "results": []})

    return Response(
        content=body,
        status_code=config.healthy_status if healthy else config.unhealthy_status,
        media_type="application/json",
        headers={"Cache-Control": "no-cache"},
    )


def create_app(scheduler: HealthScheduler, config: RuntimeConfig) -> FastAPI:
    """Create the status FastAPI application."""
    app = FastAPI(
        title="ddoctor — container health status",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.scheduler = scheduler
    app.state.config = config
    app.include_router(status_router)
    return app


# ── Serving ──────────────────────────────────────────────────────────────────


class StatusServer(uvicorn.Server):
    """uvicorn server whose lifetime is driven by the root stop signal.

    Signal handling belongs to the entry point, so uvicorn must not install
    its own handlers.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


async def serve_status(
    app: FastAPI,
    config: RuntimeConfig,
    stop: asyncio.Event,
    grace: float,
    log_level: str = "warning",
) -> None:
    """Serve ``app`` until ``stop`` fires, then shut down gracefully.

    On stop the listener closes immediately and in-flight responses get up to
    ``grace`` seconds to complete.
    """
    server = StatusServer(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level=log_level,
            timeout_graceful_shutdown=grace,
        )
    )

    async def _watch() -> None:
        await stop.wait()
        logger.info("Status server shutting down (grace %.1fs)", grace)
        server.should_exit = True

    watcher = asyncio.create_task(_watch(), name="status-server-watch")
    try:
        await server.serve()
    finally:
        watcher.cancel()
        # A server that exits on its own (e.g. failed bind) takes the rest down too.
        stop.set()
