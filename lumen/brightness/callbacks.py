"""Multi-listener callback registry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

LOGGER = logging.getLogger(__name__)


class CallbackManager:
    """Holds the listeners for one event.

    Listener failures are logged and never propagate to the code that fired
    the event.
    """

    def __init__(self, name: str, logger: logging.Logger | None = None) -> None:
        self._name = name
        self._logger = logger or LOGGER
        self._callbacks: dict[int, Callable[..., Any]] = {}
        self._next_id = 1

    def add(self, callback: Callable[..., Any]) -> int:
        if not callable(callback):
            raise TypeError(f"CallbackManager({self._name}): callback must be callable")
        callback_id = self._next_id
        self._next_id += 1
        self._callbacks[callback_id] = callback
        return callback_id

    def remove(self, callback_id: int) -> bool:
        return self._callbacks.pop(callback_id, None) is not None

    def invoke(self, *args: Any) -> None:
        for callback_id, callback in list(self._callbacks.items()):
            try:
                callback(*args)
            except Exception as exc:  # pylint: disable=broad-except
                self._logger.error(
                    "[callbacks] %s listener %d failed: %s", self._name, callback_id, exc, exc_info=True
                )

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)
