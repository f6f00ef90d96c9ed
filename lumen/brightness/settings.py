"""Owned settings store for the brightness engine.

The store is the single source of truth for the values the engine reads and
writes at runtime. It is created from :class:`BrightnessConfig`, injected into
the engine, and writes every change through a :class:`ConfigPersister` so the
values survive restarts. Listeners subscribe per key.

Keys:
- bias_ratio            -> LUMEN_BIAS_RATIO
- buckets               -> LUMEN_BUCKETS
- keyboard_levels       -> LUMEN_KEYBOARD_LEVELS
- idle_timeout          -> LUMEN_IDLE_TIMEOUT
- auto_keyboard_backlight -> LUMEN_AUTO_KEYBOARD_BACKLIGHT
- ambient_enabled       -> LUMEN_AMBIENT_ENABLED
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from lumen.brightness.buckets import (
    Bucket,
    ConfigurationError,
    format_buckets,
    format_levels,
    sync_keyboard_levels,
    validate_buckets,
)
from lumen.brightness.callbacks import CallbackManager
from lumen.brightness.config import MAX_BIAS_RATIO, MIN_BIAS_RATIO
from lumen.utils import clamp

if TYPE_CHECKING:
    from lumen.brightness.config import BrightnessConfig
    from lumen.config_persist import ConfigPersister

LOGGER = logging.getLogger(__name__)

SETTING_KEYS: dict[str, str] = {
    "bias_ratio": "LUMEN_BIAS_RATIO",
    "buckets": "LUMEN_BUCKETS",
    "keyboard_levels": "LUMEN_KEYBOARD_LEVELS",
    "idle_timeout": "LUMEN_IDLE_TIMEOUT",
    "auto_keyboard_backlight": "LUMEN_AUTO_KEYBOARD_BACKLIGHT",
    "ambient_enabled": "LUMEN_AMBIENT_ENABLED",
}


class SettingsStore:
    def __init__(
        self,
        *,
        buckets: Sequence[Bucket],
        keyboard_levels: Sequence[int],
        bias_ratio: float = 1.0,
        idle_timeout: int = 10,
        auto_keyboard_backlight: bool = True,
        ambient_enabled: bool = False,
        persister: ConfigPersister | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or LOGGER
        self._persister = persister
        self._buckets = list(buckets)
        self._keyboard_levels = sync_keyboard_levels(keyboard_levels, len(self._buckets))
        self._bias_ratio = clamp(float(bias_ratio), MIN_BIAS_RATIO, MAX_BIAS_RATIO)
        self._idle_timeout = max(0, int(idle_timeout))
        self._auto_keyboard_backlight = bool(auto_keyboard_backlight)
        self._ambient_enabled = bool(ambient_enabled)
        self._listeners = {key: CallbackManager(f"settings:{key}", self._logger) for key in SETTING_KEYS}

    @classmethod
    def from_config(cls, config: BrightnessConfig, persister: ConfigPersister | None = None) -> SettingsStore:
        return cls(
            buckets=config.buckets,
            keyboard_levels=config.keyboard_levels,
            bias_ratio=config.bias_ratio,
            idle_timeout=config.idle_timeout_seconds,
            auto_keyboard_backlight=config.auto_keyboard_backlight,
            ambient_enabled=config.ambient_enabled,
            persister=persister,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def connect(self, key: str, callback: Callable[[Any], None]) -> int:
        """Subscribe to changes of ``key``; the callback receives the new value."""
        if key not in self._listeners:
            raise KeyError(f"Unknown setting '{key}'")
        return self._listeners[key].add(callback)

    def disconnect(self, key: str, callback_id: int) -> None:
        if key in self._listeners:
            self._listeners[key].remove(callback_id)

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    @property
    def bias_ratio(self) -> float:
        return self._bias_ratio

    @property
    def buckets(self) -> list[Bucket]:
        return list(self._buckets)

    @property
    def keyboard_levels(self) -> list[int]:
        return list(self._keyboard_levels)

    @property
    def idle_timeout(self) -> int:
        return self._idle_timeout

    @property
    def auto_keyboard_backlight(self) -> bool:
        return self._auto_keyboard_backlight

    @property
    def ambient_enabled(self) -> bool:
        return self._ambient_enabled

    def set_bias_ratio(self, value: float) -> None:
        value = clamp(float(value), MIN_BIAS_RATIO, MAX_BIAS_RATIO)
        if value == self._bias_ratio:
            return
        self._bias_ratio = value
        self._commit("bias_ratio", value, f"{value:.4f}")

    def set_buckets(self, buckets: Sequence[Bucket]) -> None:
        """Replace the bucket table; the level table follows its length.

        Raises:
            ConfigurationError: the table is empty or has overlapping ranges.
        """
        validate_buckets(buckets)
        self._buckets = list(buckets)
        self._commit("buckets", self.buckets, format_buckets(self._buckets))
        if len(self._keyboard_levels) != len(self._buckets):
            self.set_keyboard_levels(sync_keyboard_levels(self._keyboard_levels, len(self._buckets)))

    def set_keyboard_levels(self, levels: Sequence[int]) -> None:
        if len(levels) != len(self._buckets):
            raise ConfigurationError(f"{len(levels)} keyboard level(s) for {len(self._buckets)} bucket(s)")
        if any(int(level) < 0 for level in levels):
            raise ConfigurationError("Keyboard levels must not be negative")
        self._keyboard_levels = [int(level) for level in levels]
        self._commit("keyboard_levels", self.keyboard_levels, format_levels(self._keyboard_levels))

    def set_idle_timeout(self, seconds: int) -> None:
        seconds = max(0, int(seconds))
        if seconds == self._idle_timeout:
            return
        self._idle_timeout = seconds
        self._commit("idle_timeout", seconds, str(seconds))

    def set_auto_keyboard_backlight(self, enabled: bool) -> None:
        enabled = bool(enabled)
        if enabled == self._auto_keyboard_backlight:
            return
        self._auto_keyboard_backlight = enabled
        self._commit("auto_keyboard_backlight", enabled, "true" if enabled else "false")

    def set_ambient_enabled(self, enabled: bool) -> None:
        enabled = bool(enabled)
        if enabled == self._ambient_enabled:
            return
        self._ambient_enabled = enabled
        self._commit("ambient_enabled", enabled, "true" if enabled else "false")

    def snapshot(self) -> dict[str, Any]:
        return {
            "bias_ratio": round(self._bias_ratio, 4),
            "buckets": format_buckets(self._buckets),
            "keyboard_levels": format_levels(self._keyboard_levels),
            "idle_timeout": self._idle_timeout,
            "auto_keyboard_backlight": self._auto_keyboard_backlight,
            "ambient_enabled": self._ambient_enabled,
        }

    def _commit(self, key: str, value: Any, serialized: str) -> None:
        if self._persister is not None:
            self._persister.update(SETTING_KEYS[key], serialized)
        self._listeners[key].invoke(value)
