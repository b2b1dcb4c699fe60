"""
Storage module for the service orchestrator.

This module persists lifecycle events and health results in PostgreSQL.
"""

from __future__ import annotations

from service_orchestrator.storage.postgres_store import PostgresStore

__all__ = ["PostgresStore"]
