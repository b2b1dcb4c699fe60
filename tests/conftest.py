"""
Pytest configuration for Service Orchestrator tests.
"""

import os
import sys

import pytest

# Add the src directory to the Python path
src_path = os.path.join(os.path.dirname(__file__), '..', 'src')
sys.path.insert(0, os.path.abspath(src_path))

# Import test fixtures
from tests.fixtures.orchestrator_fixtures import *


@pytest.fixture
def stack_file() -> str:
    """The example topology shipped with the repository."""
    return os.path.join(os.path.dirname(__file__), '..', 'topologies', 'stack.yml')


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_docker: marks tests that require Docker to be running"
    )
