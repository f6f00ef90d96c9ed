"""Display brightness backends.

Two incompatible host APIs can drive the screen:

- **single-scale**: the settings daemon's legacy ``Brightness`` property, one
  integer percentage for the built-in panel, with a change signal.
- **multi-scale**: a host-provided collection of per-output scales (float
  ``[0, 1]`` each, with a lock flag) plus an optional auto-brightness-target
  hook through which the host applies its own dimming and locking policy.

The backend is chosen once at startup by :func:`select_display_backend` and
never re-probed. Both report user changes (changes the engine did not cause)
through ``on_user_change`` as ``callback(value, scale_name)``. The
single-scale backend also treats the settings daemon's idle dim like the
panel being off: neither is a user change.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Protocol

from lumen.brightness.callbacks import CallbackManager
from lumen.brightness.dbus import BusUnavailable
from lumen.utils import clamp, round_half_up

if TYPE_CHECKING:
    from lumen.brightness.dbus import ScreenBrightnessClient

LOGGER = logging.getLogger(__name__)

GLOBAL_SCALE = "global"
SCALE_EPSILON = 0.001
MIN_AUTO_TARGET = 0.01

UserChangeCallback = Callable[[float, str], None]


class BrightnessScale(Protocol):
    """One controllable brightness channel (one per display output)."""

    @property
    def name(self) -> str: ...

    @property
    def locked(self) -> bool: ...

    def get_value(self) -> float: ...

    def set_value(self, value: float) -> None: ...

    def connect_value_changed(self, callback: Callable[[float], None]) -> int: ...

    def disconnect(self, handler_id: int) -> None: ...


class ScaleHost(Protocol):
    """Host multi-monitor brightness API."""

    def supports_scales(self) -> bool: ...

    def get_scales(self) -> Sequence[BrightnessScale]: ...

    def has_auto_target_hook(self) -> bool: ...

    def set_auto_target(self, value: float) -> None: ...

    def release_auto_target(self) -> None: ...

    def is_dimming(self) -> bool: ...

    def connect_changed(self, callback: Callable[[], None]) -> int: ...

    def disconnect(self, handler_id: int) -> None: ...


class DisplayBackend(abc.ABC):
    kind: str = "abstract"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER
        self._user_change = CallbackManager(f"display:{self.kind}", self._logger)
        self._reactivated = CallbackManager(f"display:{self.kind}:reactivated", self._logger)

    def on_user_change(self, callback: UserChangeCallback) -> int:
        """Subscribe to brightness changes not originated by ``set_target``."""
        return self._user_change.add(callback)

    def remove_listener(self, handler_id: int) -> None:
        self._user_change.remove(handler_id)

    def on_reactivated(self, callback: Callable[[], None]) -> int:
        """Subscribe to the panel coming back from off or idle-dimmed."""
        return self._reactivated.add(callback)

    def remove_reactivated_listener(self, handler_id: int) -> None:
        self._reactivated.remove(handler_id)

    def invalidate(self) -> None:
        """Make any in-flight connection attempt discard its result."""

    @abc.abstractmethod
    async def connect(self) -> None: ...

    @abc.abstractmethod
    async def disconnect(self) -> None: ...

    @abc.abstractmethod
    async def set_target(self, value: float) -> float | None:
        """Program ``value``; returns the brightness actually applied, or None if nothing was written."""

    @abc.abstractmethod
    def get_current(self) -> float | None:
        """Current brightness in ``[0, 1]``, or None when no output is active."""

    def target_scales(self) -> list[str]:
        """Names under which ``set_target`` writes are attributed."""
        return [GLOBAL_SCALE]


class SingleScaleBackend(DisplayBackend):
    """Legacy ``Brightness`` percentage.

    The panel counts as inactive while it reports a negative value (off) or
    sits at the settings daemon's idle-brightness percentage (dimmed). Neither
    those changes nor the restore that ends them are user changes.
    """

    kind = "single-scale"

    def __init__(
        self,
        client_factory: Callable[[], ScreenBrightnessClient],
        idle_brightness: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(logger)
        self._client_factory = client_factory
        self._idle_brightness = idle_brightness
        self._client: ScreenBrightnessClient | None = None
        self._listener: asyncio.Task | None = None
        self._generation = 0
        self._current_raw: int | None = None
        self._pending_echo: int | None = None
        self._inactive = False

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def idle_brightness(self) -> int | None:
        return self._idle_brightness

    @idle_brightness.setter
    def idle_brightness(self, value: int | None) -> None:
        self._idle_brightness = value

    def _is_inactive_value(self, raw: int) -> bool:
        return raw < 0 or (self._idle_brightness is not None and raw == self._idle_brightness)

    async def connect(self) -> None:
        self._generation += 1
        generation = self._generation
        try:
            client = self._client_factory()
            current = await client.get_brightness()
        except BusUnavailable as exc:
            if generation == self._generation:
                self._logger.warning("[display] Screen brightness service unavailable: %s", exc)
            return
        if generation != self._generation:
            self._logger.debug("[display] Discarding connection result from a torn-down attempt")
            return
        self._client = client
        self._current_raw = current
        self._pending_echo = None
        self._inactive = self._is_inactive_value(current)
        self._listener = asyncio.create_task(self._listen(client, generation))
        self._logger.info("[display] Using single-scale screen brightness (current %d%%)", current)

    def invalidate(self) -> None:
        self._generation += 1
        self._client = None
        self._current_raw = None
        self._pending_echo = None
        self._inactive = False

    async def disconnect(self) -> None:
        self.invalidate()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener

    async def _listen(self, client: ScreenBrightnessClient, generation: int) -> None:
        try:
            async for raw in client.brightness_changes():
                if generation != self._generation:
                    return
                self._handle_change(raw)
        except BusUnavailable as exc:
            if generation == self._generation:
                self._logger.warning("[display] Lost screen brightness signal: %s", exc)

    def _handle_change(self, raw: int) -> None:
        self._current_raw = raw
        echo, self._pending_echo = self._pending_echo, None
        if echo is not None and raw == echo:
            return
        if self._is_inactive_value(raw):
            if not self._inactive:
                self._logger.debug("[display] Panel %s", "off" if raw < 0 else "dimmed")
            self._inactive = True
            return
        if self._inactive:
            # Settings daemon restoring the pre-dim brightness
            self._inactive = False
            self._logger.debug("[display] Panel active again at %d%%", raw)
            self._reactivated.invoke()
            return
        self._user_change.invoke(raw / 100, GLOBAL_SCALE)

    async def set_target(self, value: float) -> float | None:
        client = self._client
        if client is None:
            self._logger.debug("[display] Not connected; dropping target %.3f", value)
            return None
        raw = round_half_up(clamp(value, 0.0, 1.0) * 100)
        if raw == self._idle_brightness:
            # Writing the idle value would read back as a dim
            raw = raw + 1 if raw < 100 else raw - 1
        if raw == self._current_raw:
            return raw / 100
        generation = self._generation
        self._pending_echo = raw
        try:
            await client.set_brightness(raw)
        except BusUnavailable as exc:
            if generation == self._generation:
                self._pending_echo = None
            self._logger.warning("[display] Failed to set screen brightness to %d%%: %s", raw, exc)
            return None
        if generation == self._generation:
            self._current_raw = raw
        return raw / 100

    def get_current(self) -> float | None:
        if self._client is None or self._current_raw is None or self._inactive:
            return None
        return self._current_raw / 100


class MultiScaleBackend(DisplayBackend):
    kind = "multi-scale"

    def __init__(self, host: ScaleHost, logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self._host = host
        self._connected = False
        self._writing = False
        self._last_target: float | None = None
        self._host_handler: int | None = None
        self._scale_handlers: list[tuple[BrightnessScale, int]] = []

    async def connect(self) -> None:
        if self._connected:
            return
        self._host_handler = self._host.connect_changed(self._on_outputs_changed)
        self._connected = True
        self._bind_scales()
        self._logger.info(
            "[display] Using multi-scale brightness (%d output(s), auto-target hook: %s)",
            len(self._scale_handlers),
            "yes" if self._host.has_auto_target_hook() else "no",
        )

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._unbind_scales()
        if self._host_handler is not None:
            self._host.disconnect(self._host_handler)
            self._host_handler = None
        if self._host.has_auto_target_hook():
            self._host.release_auto_target()
        self._last_target = None

    def _on_outputs_changed(self) -> None:
        if self._connected:
            self._bind_scales()

    def _bind_scales(self) -> None:
        # The host hands out new scale objects on hot-plug; release the old ones by reference
        self._unbind_scales()
        for scale in self._host.get_scales():
            handler = scale.connect_value_changed(
                lambda value, scale=scale: self._on_scale_changed(scale, value)
            )
            self._scale_handlers.append((scale, handler))

    def _unbind_scales(self) -> None:
        for scale, handler in self._scale_handlers:
            scale.disconnect(handler)
        self._scale_handlers = []

    def _on_scale_changed(self, scale: BrightnessScale, value: float) -> None:
        if self._writing or self._host.is_dimming():
            return
        if self._last_target is not None and abs(value - self._last_target) <= SCALE_EPSILON:
            return
        name = GLOBAL_SCALE if self._host.has_auto_target_hook() else scale.name
        self._user_change.invoke(value, name)

    async def set_target(self, value: float) -> float | None:
        if not self._connected:
            self._logger.debug("[display] Not connected; dropping target %.3f", value)
            return None
        applied = clamp(value, 0.0, 1.0)
        self._writing = True
        try:
            if self._host.has_auto_target_hook():
                applied = max(MIN_AUTO_TARGET, applied)
                self._host.set_auto_target(applied)
            else:
                for scale in self._host.get_scales():
                    if scale.locked:
                        self._logger.debug("[display] Scale %s is locked; skipping", scale.name)
                        continue
                    scale.set_value(applied)
        except Exception as exc:  # pylint: disable=broad-except
            self._logger.warning("[display] Host rejected brightness %.3f: %s", applied, exc)
            return None
        finally:
            self._writing = False
        self._last_target = applied
        return applied

    def get_current(self) -> float | None:
        scales = list(self._host.get_scales())
        if not scales:
            return None
        return sum(scale.get_value() for scale in scales) / len(scales)

    def target_scales(self) -> list[str]:
        if self._host.has_auto_target_hook():
            return [GLOBAL_SCALE]
        return [scale.name for scale in self._host.get_scales() if not scale.locked]


def select_display_backend(
    scale_host: ScaleHost | None,
    screen_client_factory: Callable[[], ScreenBrightnessClient],
    *,
    idle_brightness: int | None = None,
    logger: logging.Logger | None = None,
) -> DisplayBackend:
    """Probe once for multi-scale support and build the matching backend."""
    if scale_host is not None and scale_host.supports_scales():
        return MultiScaleBackend(scale_host, logger=logger)
    return SingleScaleBackend(screen_client_factory, idle_brightness=idle_brightness, logger=logger)
