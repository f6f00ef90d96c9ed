"""MQTT state and command surface for the brightness engine.

Topics (``base`` is ``LUMEN_TOPIC_BASE``, default ``lumen/<hostname>``):

- ``<base>/state``                 retained JSON snapshot of the engine
- ``<base>/bias/set``              ``reset`` or a bias ratio
- ``<base>/keyboard/auto/set``     ``on``/``off``
- ``<base>/buckets/set``           ``min:max:brightness,...``
- ``<base>/keyboard/levels/set``   ``0,1,2,...``

Paho runs its network loop on its own thread; every command hops onto the
engine's event loop through :meth:`AdaptiveBrightnessEngine.post_threadsafe`.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import paho.mqtt.client as mqtt

from lumen.brightness.engine import BiasReset, SettingsEdit
from lumen.utils import parse_bool

if TYPE_CHECKING:
    from lumen.brightness.config import MqttConfig
    from lumen.brightness.engine import AdaptiveBrightnessEngine

LOGGER = logging.getLogger(__name__)


class BrightnessMqtt:
    """Thread-safe wrapper around one paho client with an availability topic."""

    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or LOGGER
        self._client: mqtt.Client | None = None
        self._lock = threading.Lock()

    @property
    def availability_topic(self) -> str:
        return f"{self.config.topic_base}/availability"

    def _build_client(self) -> mqtt.Client:
        cfg = self.config
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"lumen-{cfg.topic_base.replace('/', '-')}",
            clean_session=True,
        )
        if cfg.username:
            client.username_pw_set(cfg.username, cfg.password or "")
        if cfg.tls_enabled:
            files = {"ca_certs": cfg.ca_cert, "certfile": cfg.cert, "keyfile": cfg.key}
            client.tls_set(
                **{name: path for name, path in files.items() if path},
                tls_version=ssl.PROTOCOL_TLS_CLIENT,
            )
        client.will_set(self.availability_topic, payload="offline", retain=True)
        return client

    def connect(self) -> bool:
        """Connect and start the network thread. Returns False when MQTT is off or unreachable."""
        if not self.config.host:
            self._logger.debug("[mqtt] MQTT host not configured; remote control disabled")
            return False
        with self._lock:
            if self._client is None:
                client = self._build_client()
                try:
                    client.connect(self.config.host, self.config.port, keepalive=30)
                except (OSError, ValueError) as exc:
                    self._logger.warning(
                        "[mqtt] Cannot reach broker %s:%s: %s", self.config.host, self.config.port, exc
                    )
                    return False
                client.loop_start()
                self._client = client
        self.publish(self.availability_topic, "online", retain=True)
        return True

    def disconnect(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        client.publish(self.availability_topic, payload="offline", retain=True)
        client.loop_stop()
        client.disconnect()

    def is_connected(self) -> bool:
        client = self._client
        return bool(client is not None and client.is_connected())

    def publish(self, topic: str, payload: str, retain: bool = False, qos: int = 0) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.publish(topic, payload=payload, qos=qos, retain=retain)
        except (OSError, ValueError) as exc:
            self._logger.debug("[mqtt] Publish to %s failed: %s", topic, exc)

    def subscribe(self, topic: str, on_message: Callable[[str], None]) -> None:
        """Route messages on ``topic`` to ``on_message`` (runs on the paho thread)."""
        client = self._client
        if client is None:
            raise RuntimeError("MQTT client is not connected")

        def _dispatch(_client, _userdata, message):  # type: ignore[no-untyped-def]
            try:
                on_message(message.payload.decode("utf-8", errors="ignore"))
            except Exception as exc:  # pylint: disable=broad-except
                self._logger.error("[mqtt] Handler for '%s' failed: %s", topic, exc, exc_info=True)

        result, _mid = client.subscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("[mqtt] Subscribe to %s failed (rc=%s)", topic, result)
        client.message_callback_add(topic, _dispatch)


class MqttBridge:
    """Publishes engine state and turns command topics into engine events."""

    def __init__(
        self,
        mqtt_client: BrightnessMqtt,
        engine: AdaptiveBrightnessEngine,
        logger: logging.Logger | None = None,
    ) -> None:
        self._mqtt = mqtt_client
        self._engine = engine
        self._logger = logger or LOGGER
        base = mqtt_client.config.topic_base
        self.state_topic = f"{base}/state"
        self.bias_topic = f"{base}/bias/set"
        self.keyboard_auto_topic = f"{base}/keyboard/auto/set"
        self.buckets_topic = f"{base}/buckets/set"
        self.levels_topic = f"{base}/keyboard/levels/set"
        self._last_payload: str | None = None
        self._state_listener: int | None = None

    def start(self) -> bool:
        if not self._mqtt.connect():
            return False
        self._mqtt.subscribe(self.bias_topic, self._handle_bias)
        self._mqtt.subscribe(self.keyboard_auto_topic, self._handle_keyboard_auto)
        self._mqtt.subscribe(self.buckets_topic, self._handle_buckets)
        self._mqtt.subscribe(self.levels_topic, self._handle_levels)
        self._state_listener = self._engine.on_state_change(self.publish_state)
        self.publish_state(self._engine.state())
        self._logger.info("[mqtt] Listening for commands under %s", self._mqtt.config.topic_base)
        return True

    def stop(self) -> None:
        if self._state_listener is not None:
            self._engine.remove_state_listener(self._state_listener)
            self._state_listener = None
        self._mqtt.disconnect()

    def publish_state(self, state: dict[str, Any]) -> None:
        payload = json.dumps(state, sort_keys=True)
        if payload == self._last_payload:
            return
        self._last_payload = payload
        self._mqtt.publish(self.state_topic, payload, retain=True)

    # ------------------------------------------------------------------
    # Command handlers (paho network thread)
    # ------------------------------------------------------------------

    def _handle_bias(self, payload: str) -> None:
        value = payload.strip()
        if value.lower() == "reset":
            self._engine.post_threadsafe(BiasReset())
            return
        try:
            ratio = float(value)
        except ValueError:
            self._logger.warning("[mqtt] Ignoring invalid bias payload: %r", payload)
            return
        self._engine.post_threadsafe(SettingsEdit("bias_ratio", ratio))

    def _handle_keyboard_auto(self, payload: str) -> None:
        self._engine.post_threadsafe(SettingsEdit("auto_keyboard_backlight", parse_bool(payload)))

    def _handle_buckets(self, payload: str) -> None:
        self._engine.post_threadsafe(SettingsEdit("buckets", payload.strip()))

    def _handle_levels(self, payload: str) -> None:
        self._engine.post_threadsafe(SettingsEdit("keyboard_levels", payload.strip()))
