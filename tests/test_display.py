"""Tests for the display brightness backends."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from lumen.brightness.dbus import BusUnavailable
from lumen.brightness.display import (
    GLOBAL_SCALE,
    MultiScaleBackend,
    SingleScaleBackend,
    select_display_backend,
)

from fakes import FakeScale, FakeScaleHost, drain

pytestmark = pytest.mark.anyio


def _recorder(backend):
    changes: list[tuple[float, str]] = []
    backend.on_user_change(lambda value, scale: changes.append((value, scale)))
    return changes


# ============================================================================
# Single-scale backend
# ============================================================================


class TestSingleScaleBackend:
    @pytest.fixture
    async def backend(self, screen_client, mock_logger):
        backend = SingleScaleBackend(lambda: screen_client, logger=mock_logger)
        await backend.connect()
        yield backend
        await backend.disconnect()

    async def test_connect_reads_current(self, backend):
        assert backend.connected
        assert backend.get_current() == pytest.approx(0.4)

    async def test_set_target_writes_percentage(self, backend, screen_client):
        await backend.set_target(0.555)
        screen_client.set_brightness.assert_awaited_once_with(56)
        assert backend.get_current() == pytest.approx(0.56)

    async def test_set_target_skips_unchanged_value(self, backend, screen_client):
        await backend.set_target(0.4)
        screen_client.set_brightness.assert_not_awaited()

    async def test_own_write_echo_is_swallowed(self, backend, screen_client):
        changes = _recorder(backend)
        await backend.set_target(0.5)
        screen_client.stream.push(50)
        await drain()
        assert changes == []

    async def test_external_change_is_reported(self, backend, screen_client):
        changes = _recorder(backend)
        screen_client.stream.push(70)
        await drain()
        assert changes == [(pytest.approx(0.7), GLOBAL_SCALE)]
        assert backend.get_current() == pytest.approx(0.7)

    async def test_change_after_echo_is_reported(self, backend, screen_client):
        changes = _recorder(backend)
        await backend.set_target(0.5)
        screen_client.stream.push(50)
        screen_client.stream.push(30)
        await drain()
        assert changes == [(pytest.approx(0.3), GLOBAL_SCALE)]

    async def test_panel_off_has_no_current(self, backend, screen_client):
        changes = _recorder(backend)
        screen_client.stream.push(-1)
        await drain()
        assert changes == []
        assert backend.get_current() is None

    async def test_write_failure_is_logged(self, backend, screen_client, mock_logger):
        screen_client.set_brightness.side_effect = BusUnavailable("service restarted")
        await backend.set_target(0.9)
        mock_logger.warning.assert_called()

    async def test_disconnect_drops_state(self, backend, screen_client):
        await backend.disconnect()
        assert backend.get_current() is None
        await backend.set_target(0.9)
        screen_client.set_brightness.assert_not_awaited()

    async def test_unavailable_service(self, mock_logger):
        factory = Mock(side_effect=BusUnavailable("no session bus"))
        backend = SingleScaleBackend(factory, logger=mock_logger)
        await backend.connect()
        assert not backend.connected
        assert backend.get_current() is None
        mock_logger.warning.assert_called()

    async def test_set_target_returns_applied_percentage(self, backend):
        assert await backend.set_target(0.557) == pytest.approx(0.56)
        assert await backend.set_target(0.56) == pytest.approx(0.56)

    async def test_set_target_when_disconnected_returns_none(self, backend):
        await backend.disconnect()
        assert await backend.set_target(0.5) is None

    async def test_invalidate_discards_in_flight_connect(self, screen_client, mock_logger):
        release = asyncio.Event()

        async def slow_read():
            await release.wait()
            return 40

        screen_client.get_brightness = AsyncMock(side_effect=slow_read)
        backend = SingleScaleBackend(lambda: screen_client, logger=mock_logger)
        connect_task = asyncio.create_task(backend.connect())
        await asyncio.sleep(0)

        backend.invalidate()
        release.set()
        await connect_task

        assert not backend.connected
        assert backend.get_current() is None


class TestSingleScaleIdleDim:
    @pytest.fixture
    async def backend(self, screen_client, mock_logger):
        backend = SingleScaleBackend(lambda: screen_client, idle_brightness=30, logger=mock_logger)
        await backend.connect()
        yield backend
        await backend.disconnect()

    async def test_dim_and_restore_are_not_user_changes(self, backend, screen_client):
        changes = _recorder(backend)
        reactivated = Mock()
        backend.on_reactivated(reactivated)
        await backend.set_target(0.5)

        screen_client.stream.push(50)
        screen_client.stream.push(30)
        await drain()
        assert backend.get_current() is None

        screen_client.stream.push(50)
        await drain()

        assert changes == []
        reactivated.assert_called_once_with()
        assert backend.get_current() == pytest.approx(0.5)

    async def test_change_after_restore_is_reported(self, backend, screen_client):
        changes = _recorder(backend)
        for raw in (30, 40, 70):
            screen_client.stream.push(raw)
        await drain()
        assert changes == [(pytest.approx(0.7), GLOBAL_SCALE)]

    async def test_panel_returning_from_off_is_not_a_user_change(self, backend, screen_client):
        changes = _recorder(backend)
        reactivated = Mock()
        backend.on_reactivated(reactivated)

        screen_client.stream.push(-1)
        screen_client.stream.push(40)
        await drain()

        assert changes == []
        reactivated.assert_called_once_with()

    async def test_target_never_lands_on_idle_value(self, backend, screen_client):
        assert await backend.set_target(0.3) == pytest.approx(0.31)
        screen_client.set_brightness.assert_awaited_once_with(31)

    async def test_connecting_at_idle_value_counts_as_dimmed(self, screen_client, mock_logger):
        screen_client.get_brightness.return_value = 30
        backend = SingleScaleBackend(lambda: screen_client, idle_brightness=30, logger=mock_logger)
        await backend.connect()
        assert backend.get_current() is None
        await backend.disconnect()


# ============================================================================
# Multi-scale backend
# ============================================================================


class TestMultiScaleBackend:
    async def test_hook_clamps_to_minimum(self, mock_logger):
        host = FakeScaleHost([FakeScale("eDP-1")], hook=True)
        backend = MultiScaleBackend(host, logger=mock_logger)
        await backend.connect()

        await backend.set_target(0.0)

        assert host.auto_target == pytest.approx(0.01)
        assert backend.target_scales() == [GLOBAL_SCALE]

    async def test_engine_writes_are_not_user_changes(self, mock_logger):
        host = FakeScaleHost([FakeScale("eDP-1"), FakeScale("HDMI-1")], hook=True)
        backend = MultiScaleBackend(host, logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        await backend.set_target(0.7)

        assert changes == []

    async def test_without_hook_writes_unlocked_scales(self, mock_logger):
        internal = FakeScale("eDP-1", 0.2)
        external = FakeScale("HDMI-1", 0.3, locked=True)
        host = FakeScaleHost([internal, external])
        backend = MultiScaleBackend(host, logger=mock_logger)
        await backend.connect()

        await backend.set_target(0.8)

        assert internal.get_value() == pytest.approx(0.8)
        assert external.get_value() == pytest.approx(0.3)
        assert backend.target_scales() == ["eDP-1"]

    async def test_user_change_names_scale_without_hook(self, mock_logger):
        scale = FakeScale("HDMI-1", 0.3)
        backend = MultiScaleBackend(FakeScaleHost([scale]), logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        scale.emit(0.6)

        assert changes == [(0.6, "HDMI-1")]

    async def test_user_change_is_global_with_hook(self, mock_logger):
        scale = FakeScale("eDP-1", 0.3)
        backend = MultiScaleBackend(FakeScaleHost([scale], hook=True), logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        scale.emit(0.6)

        assert changes == [(0.6, GLOBAL_SCALE)]

    async def test_changes_during_dimming_are_ignored(self, mock_logger):
        scale = FakeScale("eDP-1", 0.6)
        host = FakeScaleHost([scale])
        backend = MultiScaleBackend(host, logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        host.dimming = True
        scale.emit(0.1)

        assert changes == []

    async def test_change_near_last_target_is_ignored(self, mock_logger):
        scale = FakeScale("eDP-1", 0.2)
        backend = MultiScaleBackend(FakeScaleHost([scale]), logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()
        await backend.set_target(0.5)

        scale.emit(0.5005)

        assert changes == []

    async def test_late_echo_of_clamped_hook_write_is_ignored(self, mock_logger):
        scale = FakeScale("eDP-1", 0.4, deferred=True)
        host = FakeScaleHost([scale], hook=True)
        backend = MultiScaleBackend(host, logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        assert await backend.set_target(0.005) == pytest.approx(0.01)
        host.flush()

        assert host.auto_target == pytest.approx(0.01)
        assert changes == []

    async def test_late_echo_without_hook_is_ignored(self, mock_logger):
        scale = FakeScale("eDP-1", 0.4, deferred=True)
        host = FakeScaleHost([scale])
        backend = MultiScaleBackend(host, logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        assert await backend.set_target(0.65) == pytest.approx(0.65)
        host.flush()

        assert changes == []

    async def test_set_target_failure_returns_none(self, mock_logger):
        host = FakeScaleHost([FakeScale("eDP-1")], hook=True)
        host.set_auto_target = Mock(side_effect=RuntimeError("compositor restarting"))
        backend = MultiScaleBackend(host, logger=mock_logger)
        await backend.connect()

        assert await backend.set_target(0.5) is None

    async def test_current_is_mean_of_scales(self, mock_logger):
        host = FakeScaleHost([FakeScale("a", 0.2), FakeScale("b", 0.6)])
        backend = MultiScaleBackend(host, logger=mock_logger)
        assert backend.get_current() == pytest.approx(0.4)

    async def test_no_outputs_has_no_current(self, mock_logger):
        backend = MultiScaleBackend(FakeScaleHost([]), logger=mock_logger)
        assert backend.get_current() is None

    async def test_hot_plug_rebinds_scales(self, mock_logger):
        old = FakeScale("eDP-1")
        host = FakeScaleHost([old])
        backend = MultiScaleBackend(host, logger=mock_logger)
        changes = _recorder(backend)
        await backend.connect()

        new = FakeScale("DP-2")
        host.replace_scales([new])
        new.emit(0.9)

        assert old.handler_count == 0
        assert new.handler_count == 1
        assert changes == [(0.9, "DP-2")]

    async def test_disconnect_releases_hook(self, mock_logger):
        scale = FakeScale("eDP-1")
        host = FakeScaleHost([scale], hook=True)
        backend = MultiScaleBackend(host, logger=mock_logger)
        await backend.connect()

        await backend.disconnect()

        assert host.released == 1
        assert scale.handler_count == 0

    async def test_host_failure_is_logged(self, mock_logger):
        host = FakeScaleHost([FakeScale("eDP-1")], hook=True)
        host.set_auto_target = Mock(side_effect=RuntimeError("compositor restarting"))
        backend = MultiScaleBackend(host, logger=mock_logger)
        await backend.connect()

        await backend.set_target(0.5)

        mock_logger.warning.assert_called()


# ============================================================================
# Backend selection
# ============================================================================


class TestSelectDisplayBackend:
    def test_multi_scale_when_host_supports_it(self):
        backend = select_display_backend(FakeScaleHost([]), Mock())
        assert isinstance(backend, MultiScaleBackend)
        assert backend.kind == "multi-scale"

    def test_single_scale_without_host(self):
        backend = select_display_backend(None, Mock())
        assert isinstance(backend, SingleScaleBackend)
        assert backend.kind == "single-scale"

    def test_single_scale_when_host_lacks_scales(self):
        host = Mock()
        host.supports_scales.return_value = False
        assert isinstance(select_display_backend(host, Mock()), SingleScaleBackend)
