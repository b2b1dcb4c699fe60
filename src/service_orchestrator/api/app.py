from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from service_orchestrator import __version__
from service_orchestrator.core.orchestrator import Orchestrator
from service_orchestrator.monitoring.status import StatusReporter
from service_orchestrator.utils.logger import logger


class HealthResultView(BaseModel):
    outcome: str
    message: Optional[str] = None
    timestamp: str


class UnitView(BaseModel):
    name: str
    phase: str
    since: str
    restart_count: int
    last_health: Optional[HealthResultView] = None
    error: Optional[str] = None


class StatusResponse(BaseModel):
    topology: str
    taken_at: str
    all_ready: bool
    units: List[UnitView]


class EventView(BaseModel):
    unit: str
    from_phase: str
    to_phase: str
    timestamp: str
    reason: str


class EventsResponse(BaseModel):
    events: List[EventView]


def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Read-only HTTP view over a running orchestrator."""
    app = FastAPI(title="Service Orchestrator API", version=__version__)
    reporter = StatusReporter(orchestrator)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        """Basic health check - just returns OK if the service is running"""
        return {
            "status": "STOPPING" if orchestrator.stopping else "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/status", response_model=StatusResponse)
    def status():
        return reporter.snapshot().as_dict()

    @app.get("/status/{unit}", response_model=UnitView)
    def unit_status(unit: str):
        snapshot = reporter.snapshot()
        try:
            return snapshot.unit(unit).as_dict()
        except KeyError:
            logger.warning(f"Status requested for unknown unit {unit}")
            raise HTTPException(status_code=404, detail=f"Unit '{unit}' not found")

    @app.get("/events", response_model=EventsResponse)
    def events(
        unit: Optional[str] = Query(None, description="Only events for this unit"),
        limit: int = Query(100, ge=1, le=1000),
    ):
        if unit is not None and unit not in orchestrator.graph:
            raise HTTPException(status_code=404, detail=f"Unit '{unit}' not found")
        items = orchestrator.events(unit)[-limit:]
        return {
            "events": [
                {
                    "unit": e.unit,
                    "from_phase": e.from_phase.value,
                    "to_phase": e.to_phase.value,
                    "timestamp": e.timestamp.isoformat(),
                    "reason": e.reason,
                }
                for e in reversed(items)
            ]
        }

    return app


__all__ = ["create_app"]
