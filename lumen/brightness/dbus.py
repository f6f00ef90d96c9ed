"""D-Bus proxies and thin async clients for the services Lumen talks to.

Only I/O lives here: each client wraps one remote object, turns sdbus
failures into :class:`BusUnavailable`, and exposes plain coroutines and async
iterators so the engine components can be tested with ``AsyncMock`` fakes.

Services:
- org.gnome.SettingsDaemon.Power.Screen     (session) legacy screen brightness
- org.gnome.SettingsDaemon.Power.Keyboard   (session) keyboard backlight
- net.hadess.SensorProxy                    (system)  ambient light sensor
- org.freedesktop.login1.Manager            (system)  sleep/resume signals
- org.freedesktop.Notifications             (session) desktop notices
- org.gnome.Mutter.IdleMonitor              (session) user activity watches
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Iterator

import sdbus
from sdbus import (
    DbusInterfaceCommonAsync,
    dbus_method_async,
    dbus_property_async,
    dbus_signal_async,
)
from sdbus.exceptions import SdBusBaseError

LOGGER = logging.getLogger(__name__)

GSD_POWER_NAME = "org.gnome.SettingsDaemon.Power"
GSD_POWER_PATH = "/org/gnome/SettingsDaemon/Power"
GSD_SCREEN_INTERFACE = "org.gnome.SettingsDaemon.Power.Screen"
GSD_KEYBOARD_INTERFACE = "org.gnome.SettingsDaemon.Power.Keyboard"
SENSOR_PROXY_NAME = "net.hadess.SensorProxy"
SENSOR_PROXY_PATH = "/net/hadess/SensorProxy"
LOGIN1_NAME = "org.freedesktop.login1"
LOGIN1_PATH = "/org/freedesktop/login1"
NOTIFICATIONS_NAME = "org.freedesktop.Notifications"
NOTIFICATIONS_PATH = "/org/freedesktop/Notifications"
IDLE_MONITOR_NAME = "org.gnome.Mutter.IdleMonitor"
IDLE_MONITOR_PATH = "/org/gnome/Mutter/IdleMonitor/Core"


class BusUnavailable(RuntimeError):
    """A remote service could not be reached or rejected the call."""


@contextlib.contextmanager
def bus_errors(what: str) -> Iterator[None]:
    """Re-raise sdbus and socket failures as BusUnavailable."""
    try:
        yield
    except (SdBusBaseError, OSError) as exc:
        raise BusUnavailable(f"{what}: {exc}") from exc


# ============================================================================
# Interfaces
# ============================================================================


class ScreenInterface(DbusInterfaceCommonAsync, interface_name=GSD_SCREEN_INTERFACE):
    @dbus_property_async("i")
    def brightness(self) -> int:
        raise NotImplementedError


class KeyboardInterface(DbusInterfaceCommonAsync, interface_name=GSD_KEYBOARD_INTERFACE):
    @dbus_property_async("i")
    def brightness(self) -> int:
        raise NotImplementedError

    @dbus_property_async("i")
    def steps(self) -> int:
        raise NotImplementedError


class SensorProxyInterface(DbusInterfaceCommonAsync, interface_name="net.hadess.SensorProxy"):
    @dbus_method_async("", "")
    async def claim_light(self) -> None:
        raise NotImplementedError

    @dbus_method_async("", "")
    async def release_light(self) -> None:
        raise NotImplementedError

    @dbus_property_async("d")
    def light_level(self) -> float:
        raise NotImplementedError

    @dbus_property_async("b")
    def has_ambient_light(self) -> bool:
        raise NotImplementedError


class LoginManagerInterface(DbusInterfaceCommonAsync, interface_name="org.freedesktop.login1.Manager"):
    @dbus_signal_async("b")
    def prepare_for_sleep(self) -> bool:
        raise NotImplementedError


class NotificationsInterface(DbusInterfaceCommonAsync, interface_name="org.freedesktop.Notifications"):
    @dbus_method_async("susssasa{sv}i", "u")
    async def notify(
        self,
        app_name: str,
        replaces_id: int,
        app_icon: str,
        summary: str,
        body: str,
        actions: list[str],
        hints: dict[str, tuple[str, object]],
        expire_timeout: int,
    ) -> int:
        raise NotImplementedError


class IdleMonitorInterface(DbusInterfaceCommonAsync, interface_name="org.gnome.Mutter.IdleMonitor"):
    @dbus_method_async("", "u")
    async def add_user_active_watch(self) -> int:
        raise NotImplementedError

    @dbus_method_async("u", "")
    async def remove_watch(self, watch_id: int) -> None:
        raise NotImplementedError

    @dbus_signal_async("u")
    def watch_fired(self) -> int:
        raise NotImplementedError


# ============================================================================
# Clients
# ============================================================================


class ScreenBrightnessClient:
    """Legacy single-scale screen brightness (integer percent, -1 when off)."""

    def __init__(self, bus: sdbus.SdBus | None = None) -> None:
        with bus_errors("screen brightness"):
            self._proxy = ScreenInterface.new_proxy(
                GSD_POWER_NAME, GSD_POWER_PATH, bus=bus or sdbus.sd_bus_open_user()
            )

    async def get_brightness(self) -> int:
        with bus_errors("read screen brightness"):
            return int(await self._proxy.brightness.get_async())

    async def set_brightness(self, value: int) -> None:
        with bus_errors("write screen brightness"):
            await self._proxy.brightness.set_async(int(value))

    async def brightness_changes(self) -> AsyncIterator[int]:
        with bus_errors("screen brightness signal"):
            async for interface, changed, _invalidated in self._proxy.properties_changed:
                if interface != GSD_SCREEN_INTERFACE or "Brightness" not in changed:
                    continue
                _signature, value = changed["Brightness"]
                yield int(value)


class KeyboardBacklightClient:
    """Keyboard backlight exposed as a percentage plus a step count."""

    def __init__(self, bus: sdbus.SdBus | None = None) -> None:
        with bus_errors("keyboard backlight"):
            self._proxy = KeyboardInterface.new_proxy(
                GSD_POWER_NAME, GSD_POWER_PATH, bus=bus or sdbus.sd_bus_open_user()
            )

    async def get_steps(self) -> int:
        with bus_errors("read keyboard steps"):
            return int(await self._proxy.steps.get_async())

    async def get_brightness(self) -> int:
        with bus_errors("read keyboard brightness"):
            return int(await self._proxy.brightness.get_async())

    async def set_brightness(self, percentage: int) -> None:
        with bus_errors("write keyboard brightness"):
            await self._proxy.brightness.set_async(int(percentage))


class SensorProxyClient:
    def __init__(self, bus: sdbus.SdBus | None = None) -> None:
        with bus_errors("sensor proxy"):
            self._proxy = SensorProxyInterface.new_proxy(
                SENSOR_PROXY_NAME, SENSOR_PROXY_PATH, bus=bus or sdbus.sd_bus_open_system()
            )

    async def claim_light(self) -> None:
        with bus_errors("claim light sensor"):
            await self._proxy.claim_light()

    async def release_light(self) -> None:
        with bus_errors("release light sensor"):
            await self._proxy.release_light()

    async def get_light_level(self) -> float:
        with bus_errors("read light level"):
            return float(await self._proxy.light_level.get_async())

    async def get_has_ambient_light(self) -> bool:
        with bus_errors("read sensor availability"):
            return bool(await self._proxy.has_ambient_light.get_async())

    async def property_changes(self) -> AsyncIterator[tuple[str, object]]:
        """Yield ``(property_name, value)`` for LightLevel/HasAmbientLight updates."""
        with bus_errors("sensor proxy signal"):
            async for _interface, changed, _invalidated in self._proxy.properties_changed:
                for name in ("LightLevel", "HasAmbientLight"):
                    if name in changed:
                        _signature, value = changed[name]
                        yield name, value


class LoginManagerClient:
    def __init__(self, bus: sdbus.SdBus | None = None) -> None:
        with bus_errors("login manager"):
            self._proxy = LoginManagerInterface.new_proxy(
                LOGIN1_NAME, LOGIN1_PATH, bus=bus or sdbus.sd_bus_open_system()
            )

    async def sleep_signals(self) -> AsyncIterator[bool]:
        """Yield True before suspend and False after resume."""
        with bus_errors("login manager signal"):
            async for about_to_sleep in self._proxy.prepare_for_sleep:
                yield bool(about_to_sleep)


class NotificationsClient:
    def __init__(self, bus: sdbus.SdBus | None = None) -> None:
        with bus_errors("notifications"):
            self._proxy = NotificationsInterface.new_proxy(
                NOTIFICATIONS_NAME, NOTIFICATIONS_PATH, bus=bus or sdbus.sd_bus_open_user()
            )

    async def notify(self, summary: str, body: str, *, icon: str = "", transient: bool = True) -> int:
        hints: dict[str, tuple[str, object]] = {"urgency": ("y", 0 if transient else 1)}
        if transient:
            hints["transient"] = ("b", True)
        with bus_errors("send notification"):
            return await self._proxy.notify("Lumen", 0, icon, summary, body, [], hints, -1)


class IdleMonitorClient:
    def __init__(self, bus: sdbus.SdBus | None = None) -> None:
        with bus_errors("idle monitor"):
            self._proxy = IdleMonitorInterface.new_proxy(
                IDLE_MONITOR_NAME, IDLE_MONITOR_PATH, bus=bus or sdbus.sd_bus_open_user()
            )

    async def wait_for_activity(self) -> None:
        """Return at the next keyboard or pointer input."""
        with bus_errors("idle monitor watch"):
            watch_id = await self._proxy.add_user_active_watch()
            fired = False
            try:
                async for fired_id in self._proxy.watch_fired:
                    if fired_id == watch_id:
                        fired = True
                        return
            finally:
                # User-active watches are one-shot; only an abandoned wait leaves one behind
                if not fired:
                    with contextlib.suppress(SdBusBaseError, OSError):
                        await self._proxy.remove_watch(watch_id)
