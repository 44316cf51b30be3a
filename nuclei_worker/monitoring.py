"""
Health check and monitoring endpoints for the nuclei worker.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict

import uvicorn
from fastapi import APIRouter, FastAPI, Response, status
from pydantic import BaseModel

from nuclei_worker.models import utc_now_iso

LOGGER = logging.getLogger(__name__)

VERSION = "1.0.0"
COMPONENT = "nuclei-worker"

# Application start time
START_TIME = time.time()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    uptime_seconds: float
    version: str
    component: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: Dict[str, Dict[str, Any]]


def create_app(
    checks: Dict[str, Callable[[], bool]],
    metrics_provider: Callable[[], Dict[str, Any]] | None = None,
) -> FastAPI:
    """
    Build the health check application.

    ``checks`` maps a dependency name to a callable returning whether it is
    reachable; ``metrics_provider`` returns the worker counters.
    """
    router = APIRouter(tags=["monitoring"])

    @router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            timestamp=utc_now_iso(),
            uptime_seconds=round(time.time() - START_TIME, 2),
            version=VERSION,
            component=COMPONENT,
        )

    @router.get("/ready", response_model=ReadinessResponse)
    def readiness_check(response: Response) -> ReadinessResponse:
        results: Dict[str, Dict[str, Any]] = {}
        all_ready = True
        for name, check in checks.items():
            try:
                ok = bool(check())
                results[name] = {"status": "ok" if ok else "error"}
            except Exception as e:  # noqa: BLE001
                ok = False
                results[name] = {"status": "error", "error": str(e)}
            all_ready = all_ready and ok

        if not all_ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(ready=all_ready, checks=results)

    @router.get("/metrics")
    def metrics() -> Dict[str, Any]:
        payload = {
            "app_uptime_seconds": round(time.time() - START_TIME, 2),
            "app_version": VERSION,
            "component": COMPONENT,
            "timestamp": utc_now_iso(),
        }
        if metrics_provider is not None:
            payload.update(metrics_provider())
        return payload

    app = FastAPI(title="nuclei-worker", version=VERSION)
    app.include_router(router)
    return app


def serve_in_background(app: FastAPI, host: str, port: int) -> threading.Thread:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="monitoring", daemon=True)
    thread.start()
    LOGGER.info("Monitoring endpoints listening on %s:%s", host, port)
    return thread
