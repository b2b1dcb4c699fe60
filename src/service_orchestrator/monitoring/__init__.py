"""
Monitoring module for the service orchestrator.

This module provides health probing for units and the status projection.
"""

from __future__ import annotations

from service_orchestrator.monitoring.health_monitor import HealthMonitor, HealthTracker, probe

__all__ = ["HealthMonitor", "HealthTracker", "probe"]
