"""
Lumen - adaptive display and keyboard backlight daemon

This is the root package for Lumen, containing shared utilities and the
brightness control engine.

Core modules:
- utils: Env-style parsing and brightness math helpers
- config_persist: Debounced persistence of settings to lumen.conf
- brightness: Ambient-light driven control loop, bias learning and D-Bus actuators
"""

__version__ = "0.4.2"
