#!/usr/bin/env python3
"""Lumen adaptive brightness daemon."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

from lumen import __version__, systemd_notify
from lumen.brightness.bias import BiasLearner
from lumen.brightness.config import BrightnessConfig
from lumen.brightness.dbus import (
    BusUnavailable,
    IdleMonitorClient,
    KeyboardBacklightClient,
    LoginManagerClient,
    NotificationsClient,
    ScreenBrightnessClient,
    SensorProxyClient,
)
from lumen.brightness.display import ScaleHost, select_display_backend
from lumen.brightness.engine import AdaptiveBrightnessEngine, LightSample, SleepSignal, UserActivity
from lumen.brightness.keyboard import BacklightActuator
from lumen.brightness.mqtt import BrightnessMqtt, MqttBridge
from lumen.brightness.notifications import NotificationService
from lumen.brightness.sensor import AmbientLightSource
from lumen.brightness.settings import SettingsStore
from lumen.config_persist import ConfigPersister

LOGGER = logging.getLogger("lumen.daemon")

T = TypeVar("T")


class LumenDaemon:
    def __init__(self, config: BrightnessConfig, scale_host: ScaleHost | None = None) -> None:
        self.config = config
        self.persister = ConfigPersister(config.config_path)
        self.settings = SettingsStore.from_config(config, self.persister)
        self.notifier = NotificationService(NotificationsClient, enabled=config.notifications_enabled)
        self.display = select_display_backend(
            scale_host, ScreenBrightnessClient, idle_brightness=config.idle_brightness
        )
        self.actuator = BacklightActuator(KeyboardBacklightClient, notifier=self.notifier)
        self.learner = BiasLearner(self.settings, smoothing=config.bias_smoothing)
        self.light_source = AmbientLightSource(
            SensorProxyClient,
            on_sample=self._on_light_sample,
            buckets=lambda: self.settings.buckets,
            throttle_seconds=config.sensor.throttle_seconds,
            poll_seconds=config.sensor.poll_seconds,
        )
        self.engine = AdaptiveBrightnessEngine(
            self.settings,
            self.learner,
            self.display,
            self.actuator,
            on_resume=self.light_source.force_update,
        )
        self.mqtt_bridge = MqttBridge(BrightnessMqtt(config.mqtt), self.engine)
        self._tasks: set[asyncio.Task] = set()

    def _on_light_sample(self, lux: float) -> None:
        self.engine.post(LightSample(lux))

    async def run(self) -> None:
        self._ensure_config_dir()
        await self.engine.start()
        engine_task = asyncio.create_task(self.engine.run())

        login = _open_client(LoginManagerClient, "login manager")
        if login is not None:
            self._spawn(self.engine.coordinator.listen(login.sleep_signals(), self._on_sleep_signal))
        idle_monitor = _open_client(IdleMonitorClient, "idle monitor")
        if idle_monitor is not None:
            self._spawn(
                self.engine.coordinator.watch_activity(
                    idle_monitor.wait_for_activity,
                    lambda: self.engine.post(UserActivity()),
                )
            )

        if not await self.light_source.start():
            LOGGER.warning("No ambient light sensor; brightness will not follow ambient light")
        self.mqtt_bridge.start()

        LOGGER.info(
            "Lumen %s ready (backend %s, bias %.3f, %d bucket(s))",
            __version__,
            self.display.kind,
            self.learner.bias_ratio,
            len(self.settings.buckets),
        )
        systemd_notify.ready(f"Adapting brightness via {self.display.kind} backend")
        await engine_task

    async def shutdown(self) -> None:
        systemd_notify.stopping()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.light_source.stop()
        self.engine.stop()
        await self.engine.shutdown()
        self.mqtt_bridge.stop()
        await self.notifier.close()
        self.persister.stop()

    def _on_sleep_signal(self, about_to_sleep: bool) -> None:
        self.engine.post(SleepSignal(about_to_sleep))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _ensure_config_dir(self) -> None:
        parent = Path(self.config.config_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Cannot create settings directory %s: %s", parent, exc)


def _open_client(factory: Callable[[], T], what: str) -> T | None:
    try:
        return factory()
    except BusUnavailable as exc:
        LOGGER.warning("%s unavailable: %s", what.capitalize(), exc)
        return None


async def main() -> None:
    parser = argparse.ArgumentParser(description="Adapt screen and keyboard brightness to ambient light")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--config", type=Path, default=None, help="Path to lumen.conf")
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = BrightnessConfig.load(args.config)
    daemon = LumenDaemon(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    run_task = asyncio.create_task(daemon.run())
    run_task.add_done_callback(lambda _task: stop_event.set())
    await stop_event.wait()
    await daemon.shutdown()
    run_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await run_task


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
