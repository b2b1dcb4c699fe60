"""
Runtime configuration for the service orchestrator.

Every value can be overridden through the environment; CLI flags in turn
override these defaults.
"""

from __future__ import annotations

import os

# Empty means: derived from the topology file name
PROJECT_NAME = os.getenv("ORCH_PROJECT_NAME", "")

SHUTDOWN_TIMEOUT_SEC = float(os.getenv("ORCH_SHUTDOWN_TIMEOUT_SECONDS", "60"))
STOP_GRACE_SEC = float(os.getenv("ORCH_STOP_GRACE_SECONDS", "10"))

RESTART_BACKOFF_SEC = float(os.getenv("ORCH_RESTART_BACKOFF_SECONDS", "1"))
RESTART_BACKOFF_MAX_SEC = float(os.getenv("ORCH_RESTART_BACKOFF_MAX_SECONDS", "30"))

LAUNCH_WORKERS = int(os.getenv("ORCH_LAUNCH_WORKERS", "8"))

# Empty means event persistence is off
POSTGRES_URL = os.getenv("POSTGRES_URL", "")

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

HEALTH_RETENTION_DAYS = int(os.getenv("HEALTH_RETENTION_DAYS", "7"))

# Transition events kept in memory for /events; older ones live only in PostgreSQL
EVENT_HISTORY = int(os.getenv("ORCH_EVENT_HISTORY", "1000"))
