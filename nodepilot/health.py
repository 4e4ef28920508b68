"""Health endpoints for service liveness and readiness probes.

`create_app` builds a small FastAPI application bound to one `CentralManager`.
Besides the usual probes it serves `/status`, a JSON view of the node ranking.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, status

from .orchestrator import CentralManager

logger = logging.getLogger(__name__)


def create_app(manager: CentralManager) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Health check service started.")
        yield

    app = FastAPI(
        title="Node Selection Health",
        description="Liveness, readiness and status of the node selection engine.",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.state.manager = manager

    @app.get("/healthz", summary="Liveness Probe", status_code=status.HTTP_200_OK)
    def liveness_probe() -> dict:
        logger.debug("Liveness probe request received.")
        return {"status": "alive"}

    @app.get("/readyz", summary="Readiness Probe")
    def readiness_probe(response: Response) -> dict:
        logger.debug("Readiness probe request received.")
        if not manager.initialized:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "not_ready", "reason": "Initialization has not completed"}
        if not len(manager.pool):
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "not_ready", "reason": "No nodes configured"}
        if manager.current_node is None:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "not_ready", "reason": "No active node selected"}
        return {"status": "ready", "current_node": manager.current_node}

    @app.get("/status", summary="Node Ranking")
    def node_status() -> dict:
        return manager.snapshot()

    return app
