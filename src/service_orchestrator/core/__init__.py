"""
Core orchestration logic.

This module contains the unit definitions, the dependency graph, the
lifecycle state machine and the process supervisors.
"""

from __future__ import annotations

from service_orchestrator.core.graph import DependencyGraph, build
from service_orchestrator.core.orchestrator import Orchestrator, Phase
from service_orchestrator.core.supervisor import ProcessHandle, SubprocessSupervisor, Supervisor
from service_orchestrator.core.units import UnitSpec, load, load_file

__all__ = [
    "DependencyGraph",
    "Orchestrator",
    "Phase",
    "ProcessHandle",
    "SubprocessSupervisor",
    "Supervisor",
    "UnitSpec",
    "build",
    "load",
    "load_file",
]
