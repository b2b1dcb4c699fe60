"""Read-only status projection over orchestrator state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from service_orchestrator.core.orchestrator import Orchestrator, Phase
from service_orchestrator.monitoring.health_monitor import HealthCheckResult


@dataclass(frozen=True)
class UnitStatus:
    name: str
    phase: Phase
    since: datetime
    restart_count: int
    last_health: Optional[HealthCheckResult] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        health = None
        if self.last_health is not None:
            health = {
                "outcome": self.last_health.outcome.value,
                "message": self.last_health.message,
                "timestamp": self.last_health.timestamp.isoformat(),
            }
        return {
            "name": self.name,
            "phase": self.phase.value,
            "since": self.since.isoformat(),
            "restart_count": self.restart_count,
            "last_health": health,
            "error": self.error,
        }


@dataclass(frozen=True)
class StatusSnapshot:
    taken_at: datetime
    topology: str
    units: Tuple[UnitStatus, ...]

    def unit(self, name: str) -> UnitStatus:
        for status in self.units:
            if status.name == name:
                return status
        raise KeyError(name)

    @property
    def all_ready(self) -> bool:
        return all(u.phase is Phase.READY for u in self.units)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "topology": self.topology,
            "taken_at": self.taken_at.isoformat(),
            "all_ready": self.all_ready,
            "units": [u.as_dict() for u in self.units],
        }

    def render(self) -> str:
        """Plain-text table for terminals and logs."""
        return render_rows([u.as_dict() for u in self.units])


def render_rows(rows: List[Dict[str, Any]]) -> str:
    header = ("UNIT", "PHASE", "HEALTH", "RESTARTS", "ERROR")
    lines = [header]
    for row in rows:
        health = (row.get("last_health") or {}).get("outcome") or "-"
        lines.append((
            row["name"],
            row["phase"],
            health,
            str(row.get("restart_count", 0)),
            row.get("error") or "",
        ))
    widths = [max(len(line[i]) for line in lines) for i in range(len(header))]
    return "\n".join(
        "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(line)).rstrip()
        for line in lines
    )


class StatusReporter:
    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator

    def snapshot(self) -> StatusSnapshot:
        units = tuple(
            UnitStatus(
                name=s.name,
                phase=s.phase,
                since=s.since,
                restart_count=s.restart_count,
                last_health=s.last_health,
                error=s.error,
            )
            for s in self._orchestrator.states()
        )
        return StatusSnapshot(
            taken_at=datetime.now(timezone.utc),
            topology=self._orchestrator.topology,
            units=units,
        )


__all__ = ["StatusReporter", "StatusSnapshot", "UnitStatus", "render_rows"]
