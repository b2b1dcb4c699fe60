"""
API module for the service orchestrator.

This module provides the FastAPI-based read-only status API.
"""

from __future__ import annotations

from service_orchestrator.api.app import create_app

__all__ = ["create_app"]
