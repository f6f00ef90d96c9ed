"""Adaptive brightness control loop.

Every input (light samples, manual display changes, settings edits, sleep
signals, idle timeouts, user activity) becomes an event on one queue. The
engine processes events strictly in arrival order and finishes every bus write
an event triggers before taking the next one, so no two evaluations ever
interleave.

Per light sample:

1. map the sample onto the bucket table (brightness, bucket index)
2. multiply by the learned bias ratio
3. program the display and record the value it applied for feedback immunity
4. drive the keyboard backlight to the bucket's level
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from lumen.brightness.buckets import BucketMapper, ConfigurationError, parse_buckets, parse_levels
from lumen.brightness.callbacks import CallbackManager
from lumen.brightness.display import GLOBAL_SCALE
from lumen.brightness.suspend import IdleTimer, SuspendCoordinator
from lumen.utils import parse_bool

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from lumen.brightness.bias import BiasLearner
    from lumen.brightness.display import DisplayBackend
    from lumen.brightness.keyboard import BacklightActuator
    from lumen.brightness.settings import SettingsStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LightSample:
    lux: float


@dataclass(frozen=True)
class ManualChange:
    value: float
    scale: str = GLOBAL_SCALE


@dataclass(frozen=True)
class SettingsEdit:
    key: str
    value: Any


@dataclass(frozen=True)
class BiasReset:
    pass


@dataclass(frozen=True)
class SleepSignal:
    about_to_sleep: bool


@dataclass(frozen=True)
class IdleExpired:
    pass


@dataclass(frozen=True)
class UserActivity:
    pass


@dataclass(frozen=True)
class Reevaluate:
    pass


EngineEvent = (
    LightSample | ManualChange | SettingsEdit | BiasReset | SleepSignal | IdleExpired | UserActivity | Reevaluate
)

_STOP = object()


class AdaptiveBrightnessEngine:
    def __init__(
        self,
        settings: SettingsStore,
        learner: BiasLearner,
        display: DisplayBackend,
        actuator: BacklightActuator,
        *,
        on_resume: Callable[[], Awaitable[None]] | None = None,
        mapper: BucketMapper | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._learner = learner
        self._display = display
        self._actuator = actuator
        self._mapper = mapper or BucketMapper()
        self._logger = logger or LOGGER
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._state_listeners = CallbackManager("engine:state", self._logger)
        self._subscriptions: list[tuple[str, int]] = []
        self._display_listener: int | None = None
        self._reactivated_listener: int | None = None
        self._sleeps_queued = 0

        self.idle_timer = IdleTimer(settings.idle_timeout, lambda: self.post(IdleExpired()), logger=self._logger)
        self.coordinator = SuspendCoordinator(
            actuator,
            display,
            self.idle_timer,
            on_resume=on_resume,
            logger=self._logger,
        )

        self._last_lux: float | None = None
        self._last_target: float | None = None
        self._last_index: int | None = None
        self._standing_down = False
        self._keyboard_engaged = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect the actuators and subscribe to display and settings changes."""
        self._loop = asyncio.get_running_loop()
        self._display_listener = self._display.on_user_change(
            lambda value, scale: self.post(ManualChange(value, scale))
        )
        self._reactivated_listener = self._display.on_reactivated(lambda: self.post(Reevaluate()))
        self._subscriptions = [
            ("bias_ratio", self._settings.connect("bias_ratio", self._on_bias_setting)),
            ("idle_timeout", self._settings.connect("idle_timeout", self._on_idle_timeout_setting)),
            (
                "auto_keyboard_backlight",
                self._settings.connect("auto_keyboard_backlight", lambda _value: self.post(Reevaluate())),
            ),
            ("ambient_enabled", self._settings.connect("ambient_enabled", lambda _value: self.post(Reevaluate()))),
        ]
        await self._display.connect()
        await self._actuator.connect()
        self._logger.info("[engine] Started with %s display backend", self._display.kind)

    async def run(self) -> None:
        """Process queued events until :meth:`stop` is called."""
        self._loop = asyncio.get_running_loop()
        while True:
            event = await self._queue.get()
            try:
                if event is _STOP:
                    return
                await self.process(event)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    def stop(self) -> None:
        self._queue.put_nowait(_STOP)

    async def shutdown(self) -> None:
        self.idle_timer.stop()
        for key, callback_id in self._subscriptions:
            self._settings.disconnect(key, callback_id)
        self._subscriptions = []
        if self._display_listener is not None:
            self._display.remove_listener(self._display_listener)
            self._display_listener = None
        if self._reactivated_listener is not None:
            self._display.remove_reactivated_listener(self._reactivated_listener)
            self._reactivated_listener = None
        await self._actuator.disconnect()
        await self._display.disconnect()

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def post(self, event: EngineEvent) -> None:
        if isinstance(event, SleepSignal) and event.about_to_sleep:
            # In-flight reconnects are invalidated at intake; teardown runs in queue order
            self._sleeps_queued += 1
            self.coordinator.begin_sleep()
        self._queue.put_nowait(event)

    def post_threadsafe(self, event: EngineEvent) -> None:
        """Queue an event from a foreign thread (e.g. the MQTT network loop)."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._logger.debug("[engine] Dropping %s: loop not running", type(event).__name__)
            return
        loop.call_soon_threadsafe(self.post, event)

    def on_state_change(self, callback: Callable[[dict[str, Any]], None]) -> int:
        return self._state_listeners.add(callback)

    def remove_state_listener(self, callback_id: int) -> None:
        self._state_listeners.remove(callback_id)

    async def process(self, event: EngineEvent) -> None:
        """Handle one event; failures are logged and never escape."""
        try:
            await self._dispatch(event)
        except Exception:  # pylint: disable=broad-except
            self._logger.exception("[engine] Failed to handle %s", type(event).__name__)
        self._state_listeners.invoke(self.state())

    async def _dispatch(self, event: EngineEvent) -> None:
        if isinstance(event, LightSample):
            await self._evaluate(float(event.lux))
        elif isinstance(event, ManualChange):
            await self._handle_manual_change(event)
        elif isinstance(event, SettingsEdit):
            self._handle_settings_edit(event)
        elif isinstance(event, BiasReset):
            self._learner.reset()
            await self._reevaluate()
        elif isinstance(event, SleepSignal):
            await self._handle_sleep_signal(event)
        elif isinstance(event, IdleExpired):
            if self._settings.auto_keyboard_backlight:
                await self.coordinator.idle_expired()
        elif isinstance(event, UserActivity):
            await self._handle_user_activity()
        elif isinstance(event, Reevaluate):
            await self._reevaluate()
        else:
            self._logger.warning("[engine] Ignoring unknown event %r", event)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _reevaluate(self) -> None:
        if self._last_lux is None:
            return
        await self._evaluate(self._last_lux)

    async def _evaluate(self, lux: float) -> None:
        self._last_lux = lux
        if self.coordinator.sleeping:
            return
        if self._settings.ambient_enabled:
            await self._stand_down("host ambient brightness is enabled")
            return
        if self._display.get_current() is None:
            await self._stand_down("display is off")
            return
        if self._standing_down:
            self._logger.info("[engine] Resuming automatic brightness")
            self._standing_down = False

        try:
            target, index = self._mapper.map(lux, self._settings.buckets)
        except ConfigurationError as exc:
            self._logger.error("[engine] Invalid bucket table (%s); keeping previous target", exc)
            return

        final = self._learner.apply(target)
        applied = await self._display.set_target(final)
        if applied is not None:
            # Echoes carry the applied value, not the requested one
            for scale in self._display.target_scales():
                self._learner.on_auto_apply(applied, scale)
        self._last_target = final
        self._logger.debug(
            "[engine] %.1f lux -> bucket %d, brightness %.3f (bias %.3f)",
            lux,
            index,
            final,
            self._learner.bias_ratio,
        )
        await self._apply_keyboard(index)

    async def _apply_keyboard(self, index: int) -> None:
        if not self._settings.auto_keyboard_backlight:
            if self._keyboard_engaged:
                self._keyboard_engaged = False
                self.idle_timer.stop()
                await self._keyboard_off()
            self._last_index = index
            return
        if index != self._last_index:
            self._last_index = index
            self.coordinator.note_keyboard_activity()
        if self.coordinator.idle or not self._actuator.is_available:
            return
        await self._actuator.set_level(self._level_for(index))
        self._keyboard_engaged = True

    async def _stand_down(self, reason: str) -> None:
        if not self._standing_down:
            self._logger.info("[engine] Suspending automatic brightness: %s", reason)
            self._standing_down = True
        if self._settings.auto_keyboard_backlight:
            self.idle_timer.stop()
            await self._keyboard_off()

    async def _keyboard_off(self) -> None:
        if self._actuator.is_available:
            await self._actuator.set_level(0)

    def _level_for(self, index: int) -> int:
        levels = self._settings.keyboard_levels
        return levels[index] if 0 <= index < len(levels) else 0

    # ------------------------------------------------------------------
    # Other events
    # ------------------------------------------------------------------

    async def _handle_manual_change(self, event: ManualChange) -> None:
        if self.coordinator.sleeping:
            return
        if self._standing_down:
            # A change while stood down usually means the panel came back on
            if not self._settings.ambient_enabled and self._display.get_current() is not None:
                await self._reevaluate()
            return
        self._learner.on_manual_change(event.value, event.scale)

    async def _handle_sleep_signal(self, event: SleepSignal) -> None:
        if event.about_to_sleep:
            self._sleeps_queued = max(0, self._sleeps_queued - 1)
            await self.coordinator.prepare_for_sleep()
        elif self._sleeps_queued:
            self._logger.info("[engine] Skipping resume: a newer sleep signal is queued")
        else:
            await self.coordinator.resumed()

    async def _handle_user_activity(self) -> None:
        ended_idle = self.coordinator.note_keyboard_activity()
        if not ended_idle or self._standing_down or self._last_index is None:
            return
        if self._settings.auto_keyboard_backlight and self._actuator.is_available:
            await self._actuator.set_level(self._level_for(self._last_index))

    def _handle_settings_edit(self, event: SettingsEdit) -> None:
        key, value = event.key, event.value
        try:
            if key == "buckets":
                buckets = parse_buckets(value) if isinstance(value, str) else list(value)
                self._settings.set_buckets(buckets)
            elif key == "keyboard_levels":
                levels = parse_levels(value) if isinstance(value, str) else list(value)
                self._settings.set_keyboard_levels(levels)
            elif key == "bias_ratio":
                self._settings.set_bias_ratio(float(value))
            elif key == "idle_timeout":
                self._settings.set_idle_timeout(int(value))
            elif key == "auto_keyboard_backlight":
                self._settings.set_auto_keyboard_backlight(_coerce_bool(value))
            elif key == "ambient_enabled":
                self._settings.set_ambient_enabled(_coerce_bool(value))
            else:
                self._logger.warning("[engine] Unknown setting '%s'", key)
                return
        except (ConfigurationError, TypeError, ValueError) as exc:
            self._logger.warning("[engine] Rejected %s edit %r: %s", key, value, exc)
            return
        self._logger.info("[engine] Setting %s updated", key)

    def _on_bias_setting(self, value: float) -> None:
        if abs(value - self._learner.bias_ratio) < 1e-9:
            return
        self._learner.set_bias_ratio(value)
        self.post(Reevaluate())

    def _on_idle_timeout_setting(self, value: int) -> None:
        self.idle_timer.timeout_seconds = value

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def last_target(self) -> float | None:
        return self._last_target

    @property
    def standing_down(self) -> bool:
        return self._standing_down

    def state(self) -> dict[str, Any]:
        current = self._display.get_current()
        return {
            "lux": self._last_lux,
            "bucket": self._last_index,
            "target": None if self._last_target is None else round(self._last_target, 4),
            "display": None if current is None else round(current, 4),
            "backend": self._display.kind,
            "bias_ratio": round(self._learner.bias_ratio, 4),
            "keyboard_steps": self._actuator.steps,
            "keyboard_state": self._actuator.state.value,
            "active": not (self._standing_down or self.coordinator.sleeping),
            "idle": self.coordinator.idle,
            "settings": self._settings.snapshot(),
        }


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return parse_bool(value)
    return bool(value)
