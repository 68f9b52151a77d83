"""
Health endpoint: lightweight FastAPI app for monitoring.

GET /health returns daemon status, scheduler state and a per-descriptor
summary. GET /metrics exposes the pull-based counters and backend health
gauges. Secret values never leave the process through this app.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from secretsync import __version__
from secretsync.engine import dedup
from secretsync.engine.models import SyncStatus

if TYPE_CHECKING:
    from secretsync.engine.controller import SyncController

logger = logging.getLogger(__name__)


class SyncTriggerResponse(BaseModel):
    identity: str
    queued: bool
    status: str


class BackendInfo(BaseModel):
    key: str
    kind: str
    server: str
    health: str
    concurrency_limit: int


def _descriptor_summary(controller: SyncController) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for d in controller.registry.list():
        out[d.identity] = {
            "target": f"{d.namespace}/{d.target_name}",
            "backend": d.backend.key,
            "refresh_interval": d.refresh_interval,
            "creation_policy": d.creation_policy.value,
            "in_flight": dedup.is_in_flight(d.identity),
            **d.status.to_dict(),
        }
    return out


def create_health_app(controller: SyncController):  # type: ignore[no-untyped-def]
    """Create a lightweight FastAPI health app."""
    from fastapi import FastAPI, HTTPException

    app = FastAPI(title="secretsync", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        descriptors = controller.registry.list()
        errored = [d.identity for d in descriptors if d.status.sync_status == SyncStatus.ERROR]
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": __version__,
            "scheduler_running": controller.scheduler.running,
            "store": controller.config.store_backend,
            "descriptors": len(descriptors),
            "errored": errored,
            "backends": {ref.key: ref.health.value for ref in controller.backends.refs()},
            "manifest_errors": controller.last_errors,
        }

    @app.get("/metrics")
    async def metrics():
        """Per-descriptor sync counters and backend health gauges."""
        return controller.metrics.snapshot()

    @app.get("/descriptors")
    async def descriptors():
        return {"descriptors": _descriptor_summary(controller)}

    @app.get("/backends", response_model=list[BackendInfo])
    async def backends():
        return [
            BackendInfo(
                key=ref.key,
                kind=ref.kind.value,
                server=ref.server,
                health=ref.health.value,
                concurrency_limit=ref.concurrency_limit,
            )
            for ref in controller.backends.refs()
        ]

    @app.post("/descriptors/{namespace}/{name}/sync", response_model=SyncTriggerResponse)
    async def trigger_sync(namespace: str, name: str):
        """Manually trigger an out-of-cycle pass."""
        queued = controller.trigger(namespace, name)
        if queued is None:
            raise HTTPException(status_code=404, detail=f"Unknown descriptor {namespace}/{name}")
        return SyncTriggerResponse(
            identity=f"{namespace}/{name}",
            queued=queued,
            status="queued" if queued else "coalesced",
        )

    return app


async def serve_health(controller: SyncController, host: str = "127.0.0.1") -> None:
    """Start the health endpoint server."""
    import uvicorn

    app = create_health_app(controller)
    uvi_config = uvicorn.Config(
        app,
        host=host,
        port=controller.config.port,
        log_level="warning",
    )
    server = uvicorn.Server(uvi_config)
    await server.serve()
