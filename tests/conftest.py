"""Shared test fixtures for the Lumen test suite.

This module provides reusable fixtures for:
- Bucket tables and settings stores
- Fake D-Bus clients for the screen, keyboard and sensor services
- MQTT configuration objects
- Async test configuration
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, Mock

import pytest
from lumen.brightness.buckets import Bucket
from lumen.brightness.config import MqttConfig
from lumen.brightness.settings import SettingsStore

from fakes import SignalStream

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing.

    Returns a Mock with spec=logging.Logger to ensure only valid
    logger methods can be called.
    """
    return Mock(spec=logging.Logger)


# ============================================================================
# Bucket and Settings Fixtures
# ============================================================================


@pytest.fixture
def three_buckets():
    """Dark / indoor / bright table used across the engine tests."""
    return [Bucket(0, 100, 0.2), Bucket(100, 300, 0.5), Bucket(300, 1000, 0.9)]


@pytest.fixture
def settings(three_buckets):
    """Settings store without persistence."""
    return SettingsStore(buckets=three_buckets, keyboard_levels=[0, 1, 2], idle_timeout=10)


@pytest.fixture
def persister():
    """Mock ConfigPersister capturing update() calls."""
    return Mock()


# ============================================================================
# Fake D-Bus Clients
# ============================================================================


@pytest.fixture
def keyboard_client():
    """Fake KeyboardBacklightClient reporting three steps; reads return the last write."""
    client = Mock()
    client.brightness = 0

    async def set_brightness(percentage):
        client.brightness = percentage

    async def get_brightness():
        return client.brightness

    client.get_steps = AsyncMock(return_value=3)
    client.get_brightness = AsyncMock(side_effect=get_brightness)
    client.set_brightness = AsyncMock(side_effect=set_brightness)
    return client


@pytest.fixture
def screen_client():
    """Fake ScreenBrightnessClient at 40% with a controllable change stream."""
    client = Mock()
    client.stream = SignalStream()
    client.get_brightness = AsyncMock(return_value=40)
    client.set_brightness = AsyncMock()
    client.brightness_changes = client.stream
    return client


@pytest.fixture
def sensor_client():
    """Fake SensorProxyClient reading 150 lux."""
    client = Mock()
    client.stream = SignalStream()
    client.get_has_ambient_light = AsyncMock(return_value=True)
    client.claim_light = AsyncMock()
    client.release_light = AsyncMock()
    client.get_light_level = AsyncMock(return_value=150.0)
    client.property_changes = client.stream
    return client


# ============================================================================
# MQTT Fixtures
# ============================================================================


@pytest.fixture
def mqtt_config():
    """Create a basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        username=None,
        password=None,
        tls_enabled=False,
        cert=None,
        key=None,
        ca_cert=None,
        topic_base="lumen/test-laptop",
    )
