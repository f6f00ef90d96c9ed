"""Fire-and-forget desktop notifications."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from lumen.brightness.dbus import BusUnavailable

if TYPE_CHECKING:
    from lumen.brightness.dbus import NotificationsClient

LOGGER = logging.getLogger(__name__)


class NotificationService:
    """Sends notices without ever blocking or failing the caller.

    ``notify`` schedules the D-Bus call on the running loop and returns
    immediately; delivery failures are logged at debug level.
    """

    def __init__(
        self,
        client_factory: Callable[[], NotificationsClient],
        *,
        enabled: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._client: NotificationsClient | None = None
        self._enabled = enabled
        self._logger = logger or LOGGER
        self._tasks: set[asyncio.Task] = set()

    def notify(self, summary: str, body: str, *, transient: bool = False) -> None:
        if not self._enabled:
            self._logger.debug("[notify] Notifications disabled; dropping '%s'", summary)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("[notify] No running loop; dropping '%s'", summary)
            return
        task = loop.create_task(self._send(summary, body, transient))
        self._track(task)

    async def _send(self, summary: str, body: str, transient: bool) -> None:
        try:
            if self._client is None:
                self._client = self._client_factory()
            await self._client.notify(summary, body, icon="display-brightness-symbolic", transient=transient)
        except BusUnavailable as exc:
            self._client = None
            self._logger.debug("[notify] Failed to deliver '%s': %s", summary, exc)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)

        def _cleanup(_task: asyncio.Task) -> None:
            self._tasks.discard(_task)

        task.add_done_callback(_cleanup)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._client = None
