"""Minimal systemd sd_notify client for running Lumen as a user service.

Messages go to the datagram socket named by ``$NOTIFY_SOCKET``. Every helper
is a no-op when the variable is unset, so the daemon behaves the same when
started from a terminal.
"""

from __future__ import annotations

import logging
import os
import socket

_logger = logging.getLogger(__name__)


def _socket_address() -> str | None:
    address = os.environ.get("NOTIFY_SOCKET")
    if not address:
        return None
    # Linux abstract namespace
    return "\0" + address[1:] if address.startswith("@") else address


def _notify(*fields: str) -> None:
    """Send ``KEY=value`` fields as one newline-separated datagram."""
    address = _socket_address()
    if address is None:
        return
    message = "\n".join(fields)
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            sock.sendto(message.encode("utf-8"), address)
    except OSError as exc:
        _logger.debug("[sd_notify] Could not notify systemd (%s): %s", message.replace("\n", " "), exc)


def ready(status: str | None = None) -> None:
    """Report that the daemon finished starting, optionally with a status line."""
    if status:
        _notify("READY=1", f"STATUS={status}")
    else:
        _notify("READY=1")


def status(text: str) -> None:
    _notify(f"STATUS={text}")


def stopping() -> None:
    _notify("STOPPING=1")
