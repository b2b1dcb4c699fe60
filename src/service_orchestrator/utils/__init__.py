"""
Utilities module for the service orchestrator.

This module provides common utilities like logging configuration.
"""

from __future__ import annotations

from service_orchestrator.utils.logger import get_logger, logger

__all__ = ["get_logger", "logger"]
