"""Configuration helpers for the Lumen brightness daemon."""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from lumen.brightness.buckets import (
    Bucket,
    ConfigurationError,
    default_buckets,
    default_keyboard_levels,
    parse_buckets,
    parse_levels,
    sync_keyboard_levels,
)
from lumen.config_persist import DEFAULT_CONFIG_PATH, read_config_file
from lumen.utils import clamp, parse_bool, parse_float, parse_int

LOGGER = logging.getLogger(__name__)

MIN_BIAS_RATIO = 0.1
MAX_BIAS_RATIO = 3.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 10
# Settings daemon default for org.gnome.settings-daemon.plugins.power idle-brightness
DEFAULT_IDLE_BRIGHTNESS = 30


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_bucket_setting(value: str | None) -> list[Bucket]:
    if not value:
        return default_buckets()
    try:
        return parse_buckets(value)
    except ConfigurationError as exc:
        LOGGER.warning("[config] Ignoring LUMEN_BUCKETS (%s); using the preset table", exc)
        return default_buckets()


def _parse_level_setting(value: str | None, bucket_count: int, buckets_are_default: bool) -> list[int]:
    if not value:
        levels = default_keyboard_levels() if buckets_are_default else []
        return sync_keyboard_levels(levels, bucket_count)
    try:
        levels = parse_levels(value)
    except ConfigurationError as exc:
        LOGGER.warning("[config] Ignoring LUMEN_KEYBOARD_LEVELS (%s)", exc)
        levels = []
    if len(levels) != bucket_count:
        LOGGER.warning(
            "[config] %d keyboard level(s) for %d bucket(s); padding/truncating", len(levels), bucket_count
        )
    return sync_keyboard_levels(levels, bucket_count)


def _parse_idle_brightness(value: str | None) -> int | None:
    """Percentage the settings daemon dims to when idle; negative disables the check."""
    brightness = parse_int(value, DEFAULT_IDLE_BRIGHTNESS)
    if brightness < 0:
        return None
    return int(clamp(brightness, 0, 100))


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class SensorConfig:
    throttle_seconds: float
    poll_seconds: float


@dataclass(frozen=True)
class BrightnessConfig:
    hostname: str
    config_path: Path
    buckets: list[Bucket]
    keyboard_levels: list[int]
    bias_ratio: float
    bias_smoothing: float
    idle_timeout_seconds: int
    idle_brightness: int | None
    auto_keyboard_backlight: bool
    ambient_enabled: bool
    notifications_enabled: bool
    sensor: SensorConfig
    mqtt: MqttConfig

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> BrightnessConfig:
        source = env if env is not None else os.environ
        hostname = source.get("LUMEN_HOSTNAME") or socket.gethostname()
        config_path = Path(source.get("LUMEN_CONFIG_FILE") or DEFAULT_CONFIG_PATH)

        raw_buckets = source.get("LUMEN_BUCKETS")
        buckets = _parse_bucket_setting(raw_buckets)
        levels = _parse_level_setting(
            source.get("LUMEN_KEYBOARD_LEVELS"),
            len(buckets),
            buckets_are_default=buckets == default_buckets(),
        )

        bias_ratio = clamp(parse_float(source.get("LUMEN_BIAS_RATIO"), 1.0), MIN_BIAS_RATIO, MAX_BIAS_RATIO)
        bias_smoothing = clamp(parse_float(source.get("LUMEN_BIAS_SMOOTHING"), 0.5), 0.01, 1.0)

        sensor = SensorConfig(
            throttle_seconds=max(0, parse_int(source.get("LUMEN_SENSOR_THROTTLE_MS"), 1000)) / 1000,
            poll_seconds=max(0, parse_int(source.get("LUMEN_SENSOR_POLL_SECONDS"), 120)),
        )

        topic_base = source.get("LUMEN_TOPIC_BASE") or f"lumen/{hostname}"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        return BrightnessConfig(
            hostname=hostname,
            config_path=config_path,
            buckets=buckets,
            keyboard_levels=levels,
            bias_ratio=bias_ratio,
            bias_smoothing=bias_smoothing,
            idle_timeout_seconds=max(0, parse_int(source.get("LUMEN_IDLE_TIMEOUT"), DEFAULT_IDLE_TIMEOUT_SECONDS)),
            idle_brightness=_parse_idle_brightness(source.get("LUMEN_IDLE_BRIGHTNESS")),
            auto_keyboard_backlight=parse_bool(source.get("LUMEN_AUTO_KEYBOARD_BACKLIGHT"), True),
            ambient_enabled=parse_bool(source.get("LUMEN_AMBIENT_ENABLED"), False),
            notifications_enabled=parse_bool(source.get("LUMEN_NOTIFICATIONS"), True),
            sensor=sensor,
            mqtt=mqtt,
        )

    @staticmethod
    def load(config_path: Path | None = None, env: Mapping[str, str] | None = None) -> BrightnessConfig:
        """Merge lumen.conf with the environment (environment wins)."""
        source = dict(env if env is not None else os.environ)
        path = Path(config_path or source.get("LUMEN_CONFIG_FILE") or DEFAULT_CONFIG_PATH)
        merged = read_config_file(path)
        merged.update(source)
        merged["LUMEN_CONFIG_FILE"] = str(path)
        return BrightnessConfig.from_env(merged)
