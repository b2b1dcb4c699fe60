"""Error kinds raised by the orchestrator."""

from __future__ import annotations

from typing import List, Sequence


class OrchestratorError(Exception):
    """Base class for every orchestrator error."""


class ValidationError(OrchestratorError):
    """The topology document is malformed. Fatal at load time."""


class CycleError(OrchestratorError):
    """The dependency relation contains a cycle. Fatal at load time."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class LaunchError(OrchestratorError):
    """A unit's process could not be started."""

    def __init__(self, unit: str, reason: str):
        self.unit = unit
        self.reason = reason
        super().__init__(f"Failed to launch unit '{unit}': {reason}")


class HealthCheckTimeout(OrchestratorError):
    """A probe did not answer within its timeout; counts as unhealthy."""


class DependencyFailedError(OrchestratorError):
    """A dependency failed permanently, so this unit cannot proceed."""

    def __init__(self, unit: str, dependency: str):
        self.unit = unit
        self.dependency = dependency
        super().__init__(f"Unit '{unit}' stopped: dependency '{dependency}' failed permanently")


__all__ = [
    "OrchestratorError",
    "ValidationError",
    "CycleError",
    "LaunchError",
    "HealthCheckTimeout",
    "DependencyFailedError",
]
