"""Sleep/wake handling and the keyboard-backlight idle timeout."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING

from lumen.brightness.dbus import BusUnavailable

if TYPE_CHECKING:
    from lumen.brightness.display import DisplayBackend
    from lumen.brightness.keyboard import BacklightActuator

LOGGER = logging.getLogger(__name__)

ACTIVITY_DEBOUNCE_SECONDS = 1.0


class IdleTimer:
    """Whole-second countdown restarted on activity; a timeout of 0 disables it."""

    def __init__(
        self,
        timeout_seconds: int,
        on_expire: Callable[[], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._timeout_seconds = max(0, int(timeout_seconds))
        self._on_expire = on_expire
        self._logger = logger or LOGGER
        self._task: asyncio.Task | None = None

    @property
    def timeout_seconds(self) -> int:
        return self._timeout_seconds

    @timeout_seconds.setter
    def timeout_seconds(self, value: int) -> None:
        self._timeout_seconds = max(0, int(value))
        if self._timeout_seconds == 0:
            self.stop()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def restart(self) -> None:
        self.stop()
        if self._timeout_seconds <= 0:
            return
        self._task = asyncio.create_task(self._countdown(self._timeout_seconds))

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _countdown(self, seconds: int) -> None:
        await asyncio.sleep(seconds)
        self._task = None
        self._logger.debug("[idle] No activity for %ds", seconds)
        self._on_expire()


class SuspendCoordinator:
    """Tears the bus-facing components down before sleep and rebuilds them after wake.

    The coordinator only sequences the actuator, the display backend and the
    idle timer; the engine decides when each method runs by processing the
    matching queued event.
    """

    def __init__(
        self,
        actuator: BacklightActuator,
        display: DisplayBackend,
        idle_timer: IdleTimer,
        *,
        on_resume: Callable[[], Awaitable[None]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._actuator = actuator
        self._display = display
        self._idle_timer = idle_timer
        self._on_resume = on_resume
        self._logger = logger or LOGGER
        self._sleeping = False
        self._idle = False

    @property
    def sleeping(self) -> bool:
        return self._sleeping

    @property
    def idle(self) -> bool:
        """True between an idle timeout and the next keyboard activity."""
        return self._idle

    def begin_sleep(self) -> None:
        """Mark the system as going to sleep and cut off in-flight reconnects.

        Runs synchronously when the signal arrives so that a resume still
        awaiting the bus cannot complete after the system decided to sleep.
        """
        self._sleeping = True
        self._idle_timer.stop()
        self._actuator.invalidate()
        self._display.invalidate()

    async def prepare_for_sleep(self) -> None:
        self._logger.info("[suspend] Preparing for sleep")
        self.begin_sleep()
        await self._actuator.disconnect()
        await self._display.disconnect()

    async def resumed(self) -> None:
        self._logger.info("[suspend] Resumed from sleep; reconnecting")
        self._sleeping = False
        self._idle = False
        await self._display.connect()
        if not self._sleeping:
            await self._actuator.connect()
        if self._sleeping:
            self._logger.info("[suspend] Sleep requested while reconnecting; abandoning resume")
            return
        self._idle_timer.restart()
        if self._on_resume is not None:
            await self._on_resume()

    async def idle_expired(self) -> None:
        if self._sleeping:
            return
        self._idle = True
        self._logger.debug("[suspend] Idle timeout; switching keyboard backlight off")
        await self._actuator.set_level(0)

    def note_keyboard_activity(self) -> bool:
        """Restart the idle countdown. Returns True when this ends an idle period."""
        if self._sleeping:
            return False
        was_idle, self._idle = self._idle, False
        self._idle_timer.restart()
        return was_idle

    async def listen(self, sleep_signals: AsyncIterator[bool], post: Callable[[bool], None]) -> None:
        """Forward ``PrepareForSleep`` values (True before sleep, False after wake)."""
        try:
            async for about_to_sleep in sleep_signals:
                self._logger.debug("[suspend] PrepareForSleep(%s)", about_to_sleep)
                post(about_to_sleep)
        except BusUnavailable as exc:
            self._logger.warning("[suspend] Lost login manager signal: %s", exc)

    async def watch_activity(
        self,
        wait_for_activity: Callable[[], Awaitable[None]],
        post: Callable[[], None],
        *,
        debounce_seconds: float = ACTIVITY_DEBOUNCE_SECONDS,
    ) -> None:
        """Post one activity event per burst of user input."""
        while True:
            try:
                await wait_for_activity()
            except BusUnavailable as exc:
                self._logger.warning("[suspend] User activity watch unavailable: %s", exc)
                return
            post()
            await asyncio.sleep(debounce_seconds)
