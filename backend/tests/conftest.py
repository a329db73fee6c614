"""Pytest configuration for the route synthesis backend test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the backend package root is on the path so tests can import
# modules directly (e.g. `import route_generation`) without a package prefix.
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(autouse=True)
def _offline_env(monkeypatch):
    """Keeps real API keys out of the tests so nothing reaches the network."""
    for name in ("ANTHROPIC_API_KEY", "GOOGLE_MAPS_API_KEY", "MAPBOX_ACCESS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
