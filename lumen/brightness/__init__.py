"""
Adaptive brightness control engine

This package turns ambient light sensor samples into display and keyboard
backlight commands:

- Bucket mapping: Ordered, disjoint lux ranges mapped to a target brightness and keyboard level
- Bias learning: Multiplicative preference learned from manual brightness changes
- Display backends: Legacy single-scale control or per-monitor scales with an auto-brightness hook
- Keyboard backlight: Step quantization over the settings daemon's percentage property
- Suspend handling: Bus teardown on sleep, reconnection on resume, idle backlight shutoff

Key modules:
- engine: The event-ordered control loop
- config: Configuration management from environment variables
- settings: Owned settings store with change subscriptions and persistence
- dbus: sdbus proxies and thin async clients for the session/system services
- mqtt: Optional state publishing and command surface
"""

from __future__ import annotations

__all__ = [
    "bias",
    "buckets",
    "callbacks",
    "config",
    "dbus",
    "display",
    "engine",
    "keyboard",
    "mqtt",
    "notifications",
    "sensor",
    "settings",
    "suspend",
]
