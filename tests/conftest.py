"""Shared pytest fixtures for all tests."""
import pytest

from semble_core import EventSystem


@pytest.fixture
def event_system() -> EventSystem:
    return EventSystem()
