"""
Service Orchestrator - dependency-ordered startup, health gating and teardown
for a topology of service units.

This package provides:
- Topology loading and validation (YAML/JSON documents)
- Dependency graph construction with cycle detection
- TCP / HTTP / command health monitoring
- A per-unit lifecycle state machine with restart policies
- Docker and local-process supervisors
- A read-only status API and CLI
"""

from __future__ import annotations

__version__ = "1.0.0"

# Core exports
from service_orchestrator.core.errors import (
    CycleError,
    DependencyFailedError,
    HealthCheckTimeout,
    LaunchError,
    OrchestratorError,
    ValidationError,
)
from service_orchestrator.core.graph import DependencyGraph, build
from service_orchestrator.core.orchestrator import Orchestrator, Phase
from service_orchestrator.core.units import UnitSpec, load, load_file
from service_orchestrator.monitoring.status import StatusReporter
from service_orchestrator.utils.logger import get_logger

__all__ = [
    "CycleError",
    "DependencyFailedError",
    "DependencyGraph",
    "HealthCheckTimeout",
    "LaunchError",
    "Orchestrator",
    "OrchestratorError",
    "Phase",
    "StatusReporter",
    "UnitSpec",
    "ValidationError",
    "build",
    "get_logger",
    "load",
    "load_file",
    "__version__",
]
