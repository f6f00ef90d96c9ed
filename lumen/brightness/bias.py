"""Multiplicative brightness bias learned from manual adjustments.

Every target the bucket table produces is multiplied by one persisted bias
ratio. Scaling rather than offsetting keeps the shape of the curve: a user who
likes the screen 20% brighter gets 20% more in the dark and in daylight alike.

The learner remembers what the engine itself wrote, per display scale, so that
the change notification caused by that write is never mistaken for a user
override.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from lumen.brightness.config import MAX_BIAS_RATIO, MIN_BIAS_RATIO
from lumen.utils import clamp

if TYPE_CHECKING:
    from lumen.brightness.settings import SettingsStore

LOGGER = logging.getLogger(__name__)

DEFAULT_EPSILON = 0.001
DEFAULT_SMOOTHING = 0.5
HISTORY_LENGTH = 8
GLOBAL_SCALE = "global"


class BiasLearner:
    def __init__(
        self,
        settings: SettingsStore,
        *,
        smoothing: float = DEFAULT_SMOOTHING,
        epsilon: float = DEFAULT_EPSILON,
        logger: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._smoothing = clamp(smoothing, 0.01, 1.0)
        self._epsilon = epsilon
        self._logger = logger or LOGGER
        self._bias_ratio = clamp(settings.bias_ratio, MIN_BIAS_RATIO, MAX_BIAS_RATIO)
        # Per scale: (value written, bias ratio in effect when it was written)
        self._applied: dict[str, deque[tuple[float, float]]] = {}

    @property
    def bias_ratio(self) -> float:
        return self._bias_ratio

    def last_auto_target(self, scale: str = GLOBAL_SCALE) -> float | None:
        history = self._applied.get(scale)
        return history[-1][0] if history else None

    def on_auto_apply(self, target: float, scale: str = GLOBAL_SCALE) -> None:
        """Record a value the engine just programmed."""
        history = self._applied.setdefault(scale, deque(maxlen=HISTORY_LENGTH))
        history.append((float(target), self._bias_ratio))

    def on_manual_change(self, new_value: float, scale: str = GLOBAL_SCALE) -> float | None:
        """Learn from a brightness change the engine did not make.

        Returns the updated bias ratio, or None when the change was not
        attributed to the user.
        """
        history = self._applied.get(scale)
        if not history:
            self._logger.debug("[bias] No auto target recorded for %s; ignoring %.3f", scale, new_value)
            return None

        if any(abs(new_value - applied) <= self._epsilon for applied, _ in history):
            self._logger.debug("[bias] %.3f matches an engine write on %s; ignoring", new_value, scale)
            return None

        last_auto, bias_at_apply = history[-1]
        if last_auto <= self._epsilon:
            self._logger.debug("[bias] Last auto target on %s is ~0; cannot derive a ratio", scale)
            return None

        delta_ratio = new_value / last_auto
        # Bias that would have produced new_value from the unbiased bucket target
        implied = clamp(bias_at_apply * delta_ratio, MIN_BIAS_RATIO, MAX_BIAS_RATIO)
        updated = self._bias_ratio + self._smoothing * (implied - self._bias_ratio)
        updated = clamp(updated, MIN_BIAS_RATIO, MAX_BIAS_RATIO)

        self._logger.info(
            "[bias] Manual change %.3f vs auto %.3f on %s: bias %.3f -> %.3f",
            new_value,
            last_auto,
            scale,
            self._bias_ratio,
            updated,
        )
        self._bias_ratio = updated
        self._settings.set_bias_ratio(updated)
        return updated

    def reset(self) -> None:
        self._bias_ratio = 1.0
        self._settings.set_bias_ratio(1.0)
        self._logger.info("[bias] Bias ratio reset to 1.0")

    def set_bias_ratio(self, value: float) -> None:
        """Adopt a bias edited outside the learner (already persisted)."""
        self._bias_ratio = clamp(float(value), MIN_BIAS_RATIO, MAX_BIAS_RATIO)

    def apply(self, raw_target: float) -> float:
        return clamp(raw_target * self._bias_ratio, 0.0, 1.0)
