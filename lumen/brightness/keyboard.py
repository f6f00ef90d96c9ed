"""Keyboard backlight actuator.

The settings daemon exposes the keyboard backlight as a percentage plus a
``Steps`` count. Lumen thinks in discrete levels ``0..steps-1`` and quantizes
them onto the percentage scale, so ``steps - 1`` active increments map
linearly onto ``[0, 100]``.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED

Outside ``CONNECTED`` the device reports one step ("no backlight") and every
level request is a logged no-op.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

from lumen.brightness.dbus import BusUnavailable
from lumen.utils import clamp, round_half_up

if TYPE_CHECKING:
    from lumen.brightness.dbus import KeyboardBacklightClient
    from lumen.brightness.notifications import NotificationService

LOGGER = logging.getLogger(__name__)


class ActuatorState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def quantize_level(level: int, steps: int) -> int | None:
    """Map a step level onto a 0-100 percentage; None without a usable device."""
    if steps < 2:
        return None
    percentage = round_half_up(100 * max(0, level) / (steps - 1))
    return int(clamp(percentage, 0, 100))


class BacklightActuator:
    def __init__(
        self,
        client_factory: Callable[[], KeyboardBacklightClient],
        *,
        notifier: NotificationService | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._notifier = notifier
        self._logger = logger or LOGGER
        self._client: KeyboardBacklightClient | None = None
        self._state = ActuatorState.DISCONNECTED
        self._steps = 1
        self._generation = 0
        self._last_percentage: int | None = None
        self._unavailable_notified = False
        self.state_history: deque[ActuatorState] = deque([self._state], maxlen=16)

    @property
    def state(self) -> ActuatorState:
        return self._state

    @property
    def steps(self) -> int:
        if self._state is not ActuatorState.CONNECTED:
            return 1
        return self._steps

    @property
    def is_available(self) -> bool:
        return self.steps >= 2

    def _transition(self, state: ActuatorState) -> None:
        if state is not self._state:
            self._logger.debug("[keyboard] %s -> %s", self._state.value, state.value)
            self._state = state
            self.state_history.append(state)

    async def connect(self) -> bool:
        """Connect and read the step count. Returns True when a backlight is usable."""
        self._generation += 1
        generation = self._generation
        self._transition(ActuatorState.CONNECTING)

        try:
            client = self._client_factory()
            steps = await client.get_steps()
        except BusUnavailable as exc:
            if generation == self._generation:
                self._logger.warning("[keyboard] Keyboard backlight service unavailable: %s", exc)
                self._transition(ActuatorState.DISCONNECTED)
                self._notify_unavailable()
            return False

        if generation != self._generation:
            self._logger.debug("[keyboard] Discarding connection result from a torn-down attempt")
            return False

        self._client = client
        self._steps = max(1, int(steps))
        self._last_percentage = None
        self._transition(ActuatorState.CONNECTED)

        if self._steps < 2:
            self._logger.warning("[keyboard] Keyboard backlight reports %d step(s); not controllable", self._steps)
            self._notify_unavailable()
            return False

        self._logger.info("[keyboard] Keyboard backlight connected with %d steps", self._steps)
        return True

    def invalidate(self) -> None:
        """Drop the client and make any in-flight connect discard its result."""
        self._generation += 1
        self._client = None
        self._steps = 1
        self._last_percentage = None
        self._transition(ActuatorState.DISCONNECTED)

    async def disconnect(self) -> None:
        self.invalidate()

    async def set_level(self, level: int) -> None:
        steps = self.steps
        percentage = quantize_level(level, steps)
        client = self._client
        if percentage is None or client is None:
            self._logger.warning(
                "[keyboard] Ignoring level %d: no controllable backlight (state=%s, steps=%d)",
                level,
                self._state.value,
                steps,
            )
            return

        generation = self._generation
        try:
            if percentage == self._last_percentage:
                # Hotkeys change the backlight behind our back
                if await client.get_brightness() == percentage:
                    return
                self._logger.debug("[keyboard] Backlight changed externally; rewriting %d%%", percentage)
            await client.set_brightness(percentage)
        except BusUnavailable as exc:
            self._logger.warning("[keyboard] Failed to set keyboard backlight to %d%%: %s", percentage, exc)
            if generation == self._generation:
                await self.disconnect()
            return

        if generation == self._generation:
            self._last_percentage = percentage
            self._logger.debug("[keyboard] Level %d/%d -> %d%%", level, steps - 1, percentage)

    def _notify_unavailable(self) -> None:
        if self._unavailable_notified or self._notifier is None:
            return
        self._unavailable_notified = True
        self._notifier.notify(
            "Keyboard backlight unavailable",
            "No controllable keyboard backlight was found. Keyboard brightness will not follow ambient light.",
        )
