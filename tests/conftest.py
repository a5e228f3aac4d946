"""
Shared pytest fixtures and configuration for mapflow tests.

This module provides:
- Settings cache isolation between tests
- An event recorder for asserting emitted runtime events
- The canonical user mapping document and sample records

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    async def test_something(user_mapping, recorder):
        ...
"""

import sys
from pathlib import Path
from typing import Any

import pytest
import structlog

# Ensure mapflow package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mapflow.config.settings import MapflowSettings, clear_settings_cache
from mapflow.core.events import Event, EventEmitter


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Drop cached settings and any MAPFLOW_* environment between tests."""
    for key in list(__import__("os").environ):
        if key.startswith("MAPFLOW_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> MapflowSettings:
    """Fast settings: short delays, small pool."""
    return MapflowSettings(
        retry_initial_delay=0.001,
        retry_max_delay=0.01,
        pool_acquire_timeout=1.0,
        pool_retry_delay=0.001,
        breaker_reset_timeout=0.05,
        breaker_minimum_requests=2,
    )


@pytest.fixture(autouse=True)
def clean_structlog():
    """Restore structlog's default configuration after tests that configure logging."""
    yield
    structlog.reset_defaults()


# =============================================================================
# Events
# =============================================================================


class EventRecorder:
    """Collects every event an emitter publishes."""

    def __init__(self, emitter: EventEmitter):
        self.events: list[Event] = []
        emitter.on("*", self.events.append)

    def named(self, name: str) -> list[Event]:
        return [e for e in self.events if e.name == name]

    def names(self) -> list[str]:
        return [e.name for e in self.events]


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter(source="test")


@pytest.fixture
def recorder(emitter) -> EventRecorder:
    return EventRecorder(emitter)


# =============================================================================
# Mapping documents
# =============================================================================


@pytest.fixture
def user_mapping() -> dict[str, Any]:
    """id → userId, name → fullName (uppercase), isActive defaulted."""
    return {
        "id": "users",
        "version": "1",
        "name": "Users",
        "rules": [
            {"type": "direct", "sourceField": "id", "targetField": "userId"},
            {
                "type": "transform",
                "sourceField": "name",
                "targetField": "fullName",
                "transform": "uppercase",
            },
        ],
        "defaultValues": {"isActive": True},
    }


@pytest.fixture
def user_records() -> list[dict[str, Any]]:
    return [
        {"id": 1, "name": "John Doe"},
        {"id": 2, "name": "Jane Roe"},
        {"id": 3, "name": "Ann Poe"},
    ]
