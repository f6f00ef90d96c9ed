"""Ambient light source backed by iio-sensor-proxy.

The proxy signals ``LightLevel`` changes, sometimes in bursts and sometimes
not at all. The source smooths both: bursts are throttled to the latest value
per window (trailing edge), and the sensor is polled periodically for changes
it never signalled. Samples that stay inside the current bucket are dropped
before they reach the engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from lumen.brightness.buckets import Bucket, BucketMapper, crosses_bucket_boundary
from lumen.brightness.dbus import BusUnavailable

if TYPE_CHECKING:
    from lumen.brightness.dbus import SensorProxyClient

LOGGER = logging.getLogger(__name__)

SampleCallback = Callable[[float], None]


class AmbientLightSource:
    def __init__(
        self,
        client_factory: Callable[[], SensorProxyClient],
        on_sample: SampleCallback,
        buckets: Callable[[], Sequence[Bucket]],
        *,
        throttle_seconds: float = 1.0,
        poll_seconds: float = 120.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._on_sample = on_sample
        self._buckets = buckets
        self._throttle_seconds = max(0.0, throttle_seconds)
        self._poll_seconds = max(0.0, poll_seconds)
        self._logger = logger or LOGGER
        self._mapper = BucketMapper()
        self._client: SensorProxyClient | None = None
        self._claimed = False
        self._listener: asyncio.Task | None = None
        self._poller: asyncio.Task | None = None
        self._throttle: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._pending: float | None = None
        self._last_level: float | None = None
        self._last_delivered: float | None = None

    @property
    def light_level(self) -> float | None:
        return self._last_level

    @property
    def running(self) -> bool:
        return self._client is not None

    async def start(self) -> bool:
        """Claim the sensor and begin delivering samples. Returns False when unavailable."""
        if self._client is not None:
            return True
        try:
            client = self._client_factory()
            if not await client.get_has_ambient_light():
                self._logger.warning("[sensor] No ambient light sensor present")
            await client.claim_light()
            level = await client.get_light_level()
        except BusUnavailable as exc:
            self._logger.warning("[sensor] Ambient light sensor unavailable: %s", exc)
            return False

        self._client = client
        self._claimed = True
        self._stop_event.clear()
        self._logger.info("[sensor] Claimed ambient light sensor (%.1f lux)", level)
        self._deliver(level, force=True)
        self._listener = asyncio.create_task(self._listen(client))
        if self._poll_seconds > 0:
            self._poller = asyncio.create_task(self._poll_loop())
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        for attr in ("_listener", "_poller", "_throttle"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        client, self._client = self._client, None
        self._pending = None
        if client is not None and self._claimed:
            self._claimed = False
            try:
                await client.release_light()
            except BusUnavailable as exc:
                self._logger.debug("[sensor] Failed to release light sensor: %s", exc)

    async def force_update(self) -> None:
        """Read the sensor now and deliver the value even inside the same bucket."""
        client = self._client
        if client is None:
            return
        try:
            level = await client.get_light_level()
        except BusUnavailable as exc:
            self._logger.warning("[sensor] Failed to read light level: %s", exc)
            return
        self._deliver(level, force=True)

    async def _listen(self, client: SensorProxyClient) -> None:
        try:
            async for name, value in client.property_changes():
                if name == "HasAmbientLight":
                    if not value:
                        self._logger.warning("[sensor] Ambient light sensor disappeared")
                    else:
                        self._logger.info("[sensor] Ambient light sensor is back")
                    continue
                if name == "LightLevel":
                    self._submit(float(value))  # type: ignore[arg-type]
        except BusUnavailable as exc:
            self._logger.warning("[sensor] Lost ambient light signal: %s", exc)

    def _submit(self, level: float) -> None:
        self._last_level = level
        if self._throttle_seconds <= 0:
            self._deliver(level)
            return
        self._pending = level
        if self._throttle is None:
            self._throttle = asyncio.create_task(self._flush_after_throttle())

    async def _flush_after_throttle(self) -> None:
        try:
            await asyncio.sleep(self._throttle_seconds)
        finally:
            self._throttle = None
        level, self._pending = self._pending, None
        if level is not None:
            self._deliver(level)

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_seconds)
            except TimeoutError:
                pass
            else:
                return
            client = self._client
            if client is None:
                return
            try:
                level = await client.get_light_level()
            except BusUnavailable as exc:
                self._logger.warning("[sensor] Periodic light read failed: %s", exc)
                continue
            self._last_level = level
            self._deliver(level)

    def _deliver(self, level: float, *, force: bool = False) -> None:
        self._last_level = level
        if not force and not crosses_bucket_boundary(self._last_delivered, level, self._buckets(), self._mapper):
            return
        self._last_delivered = level
        self._logger.debug("[sensor] Light level %.1f lux", level)
        self._on_sample(level)
