"""Tests for the keyboard backlight actuator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from lumen.brightness.dbus import BusUnavailable
from lumen.brightness.keyboard import ActuatorState, BacklightActuator, quantize_level

pytestmark = pytest.mark.anyio


@pytest.fixture
def actuator(keyboard_client, mock_logger):
    return BacklightActuator(lambda: keyboard_client, logger=mock_logger)


# ============================================================================
# Quantization
# ============================================================================


class TestQuantizeLevel:
    @pytest.mark.parametrize(
        ("level", "steps", "expected"),
        [
            (0, 3, 0),
            (1, 3, 50),
            (2, 3, 100),
            (1, 2, 100),
            (2, 5, 50),
            (1, 4, 33),
            (2, 4, 67),
            (7, 3, 100),
        ],
    )
    def test_percentages(self, level, steps, expected):
        assert quantize_level(level, steps) == expected

    def test_single_step_has_no_mapping(self):
        assert quantize_level(0, 1) is None


# ============================================================================
# Connection lifecycle
# ============================================================================


class TestConnect:
    async def test_connect_reads_steps(self, actuator):
        assert await actuator.connect() is True
        assert actuator.state is ActuatorState.CONNECTED
        assert actuator.steps == 3
        assert actuator.is_available

    async def test_steps_read_as_one_while_disconnected(self, actuator):
        assert actuator.steps == 1
        assert not actuator.is_available

    async def test_service_unavailable(self, keyboard_client, mock_logger):
        keyboard_client.get_steps.side_effect = BusUnavailable("no session bus")
        actuator = BacklightActuator(lambda: keyboard_client, logger=mock_logger)

        assert await actuator.connect() is False
        assert actuator.state is ActuatorState.DISCONNECTED
        mock_logger.warning.assert_called()

    async def test_single_step_device_is_not_controllable(self, keyboard_client, mock_logger):
        keyboard_client.get_steps.return_value = 1
        notifier = Mock()
        actuator = BacklightActuator(lambda: keyboard_client, notifier=notifier, logger=mock_logger)

        assert await actuator.connect() is False
        assert not actuator.is_available
        notifier.notify.assert_called_once()

    async def test_unavailable_notice_sent_once(self, keyboard_client, mock_logger):
        keyboard_client.get_steps.side_effect = BusUnavailable("gone")
        notifier = Mock()
        actuator = BacklightActuator(lambda: keyboard_client, notifier=notifier, logger=mock_logger)

        await actuator.connect()
        await actuator.connect()

        assert notifier.notify.call_count == 1

    async def test_late_connect_result_is_discarded(self, keyboard_client, actuator):
        release = asyncio.Event()

        async def slow_steps():
            await release.wait()
            return 3

        keyboard_client.get_steps = AsyncMock(side_effect=slow_steps)
        connect_task = asyncio.create_task(actuator.connect())
        await asyncio.sleep(0)
        await actuator.disconnect()
        release.set()

        assert await connect_task is False
        assert actuator.state is ActuatorState.DISCONNECTED
        assert actuator.steps == 1

    async def test_invalidate_discards_in_flight_connect(self, keyboard_client, actuator):
        release = asyncio.Event()

        async def slow_steps():
            await release.wait()
            return 3

        keyboard_client.get_steps = AsyncMock(side_effect=slow_steps)
        connect_task = asyncio.create_task(actuator.connect())
        await asyncio.sleep(0)
        assert actuator.state is ActuatorState.CONNECTING

        actuator.invalidate()
        assert actuator.state is ActuatorState.DISCONNECTED
        release.set()

        assert await connect_task is False
        assert actuator.state is ActuatorState.DISCONNECTED
        assert ActuatorState.CONNECTED not in actuator.state_history

    async def test_suspend_resume_history(self, keyboard_client, actuator):
        await actuator.connect()
        await actuator.disconnect()
        keyboard_client.get_steps.return_value = 4
        await actuator.connect()

        assert list(actuator.state_history) == [
            ActuatorState.DISCONNECTED,
            ActuatorState.CONNECTING,
            ActuatorState.CONNECTED,
            ActuatorState.DISCONNECTED,
            ActuatorState.CONNECTING,
            ActuatorState.CONNECTED,
        ]
        assert actuator.steps == 4
        assert keyboard_client.get_steps.await_count == 2


# ============================================================================
# Level writes
# ============================================================================


class TestSetLevel:
    async def test_writes_quantized_percentage(self, keyboard_client, actuator):
        await actuator.connect()
        await actuator.set_level(1)
        keyboard_client.set_brightness.assert_awaited_once_with(50)

    async def test_repeated_percentage_is_skipped(self, keyboard_client, actuator):
        await actuator.connect()
        await actuator.set_level(2)
        await actuator.set_level(2)
        keyboard_client.set_brightness.assert_awaited_once_with(100)

    async def test_hotkey_change_is_overwritten_by_same_level(self, keyboard_client, actuator):
        await actuator.connect()
        await actuator.set_level(1)
        keyboard_client.brightness = 100

        await actuator.set_level(1)

        assert [call.args[0] for call in keyboard_client.set_brightness.await_args_list] == [50, 50]
        assert keyboard_client.brightness == 50

    async def test_read_back_failure_disconnects(self, keyboard_client, actuator):
        await actuator.connect()
        await actuator.set_level(1)
        keyboard_client.get_brightness.side_effect = BusUnavailable("service restarted")

        await actuator.set_level(1)

        assert actuator.state is ActuatorState.DISCONNECTED

    async def test_disconnected_request_is_warned_noop(self, keyboard_client, actuator, mock_logger):
        await actuator.set_level(1)
        keyboard_client.set_brightness.assert_not_awaited()
        mock_logger.warning.assert_called()

    async def test_write_failure_disconnects(self, keyboard_client, actuator):
        await actuator.connect()
        keyboard_client.set_brightness.side_effect = BusUnavailable("service restarted")

        await actuator.set_level(1)

        assert actuator.state is ActuatorState.DISCONNECTED
        assert not actuator.is_available

    async def test_reconnect_rewrites_same_level(self, keyboard_client, actuator):
        await actuator.connect()
        await actuator.set_level(1)
        await actuator.disconnect()
        await actuator.connect()
        await actuator.set_level(1)
        assert keyboard_client.set_brightness.await_count == 2
