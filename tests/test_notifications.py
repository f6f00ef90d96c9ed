"""Tests for the desktop notification service."""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest
from lumen.brightness.dbus import BusUnavailable
from lumen.brightness.notifications import NotificationService

from fakes import drain

pytestmark = pytest.mark.anyio


@pytest.fixture
def notifications_client():
    client = Mock()
    client.notify = AsyncMock(return_value=7)
    return client


class TestNotificationService:
    async def test_notify_sends_in_background(self, notifications_client):
        service = NotificationService(lambda: notifications_client)
        service.notify("Keyboard backlight unavailable", "No backlight found")
        await drain()

        notifications_client.notify.assert_awaited_once_with(
            "Keyboard backlight unavailable",
            "No backlight found",
            icon="display-brightness-symbolic",
            transient=False,
        )

    async def test_disabled_service_drops_notices(self, notifications_client):
        service = NotificationService(lambda: notifications_client, enabled=False)
        service.notify("summary", "body")
        await drain()
        notifications_client.notify.assert_not_awaited()

    async def test_delivery_failure_is_swallowed(self, notifications_client, mock_logger):
        notifications_client.notify.side_effect = BusUnavailable("no notification daemon")
        service = NotificationService(lambda: notifications_client, logger=mock_logger)

        service.notify("summary", "body")
        await drain()

        mock_logger.debug.assert_called()
        assert service._client is None

    async def test_factory_failure_is_swallowed(self, mock_logger):
        factory = Mock(side_effect=BusUnavailable("no session bus"))
        service = NotificationService(factory, logger=mock_logger)

        service.notify("summary", "body")
        await drain()

        factory.assert_called_once()

    def test_without_running_loop_drops_notice(self, notifications_client, mock_logger):
        service = NotificationService(lambda: notifications_client, logger=mock_logger)
        service.notify("summary", "body")
        notifications_client.notify.assert_not_called()

    async def test_close_clears_tasks(self, notifications_client):
        service = NotificationService(lambda: notifications_client)
        service.notify("summary", "body")
        await service.close()
        assert service._tasks == set()
