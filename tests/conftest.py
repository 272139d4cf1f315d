"""Pytest configuration and shared fixtures."""
import os
import sys

import pytest

# Ensure the project root is on sys.path so 'streambus' and 'tests' are importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from streambus.bus.serializer import StreamBusJsonSerializer  # noqa: E402
from streambus.bus.stream_bus import StreamBus  # noqa: E402
from streambus.config.settings import StreamBusSettings  # noqa: E402
from tests.fakes import FakeStreamStore  # noqa: E402


@pytest.fixture
def store():
    return FakeStreamStore()


@pytest.fixture
def settings():
    return StreamBusSettings()


@pytest.fixture
def serializers():
    return {
        "orders": StreamBusJsonSerializer(),
        "users": StreamBusJsonSerializer(),
    }


@pytest.fixture
def make_bus(store, serializers):
    """Factory for engines sharing the fake store."""

    def _make(name="test", settings=None, subjects=None, **overrides):
        bus_settings = settings or StreamBusSettings(**overrides)
        bus_serializers = (
            {s: serializers[s] for s in subjects} if subjects else serializers
        )
        return StreamBus(name, store, bus_settings, bus_serializers)

    return _make


@pytest.fixture
def bus(make_bus):
    return make_bus()
