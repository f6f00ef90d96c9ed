"""Persist settings changes to lumen.conf.

Lumen keeps its learned and user-edited settings (bias ratio, bucket table,
keyboard level table and feature flags) as ``KEY="value"`` lines in an
env-style file that systemd loads with ``EnvironmentFile=``. Updates are
batched and written after a short delay so that a burst of edits (a user
dragging a slider, a bias converging over several overrides) becomes one
write.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import re
import shutil
import threading
from collections.abc import Iterator, Mapping
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "lumen" / "lumen.conf"

# Quiet period after the last update before the file is rewritten
DEBOUNCE_SECONDS = 2.0

_NAME = r"([A-Za-z_][A-Za-z0-9_]*)"
_ASSIGNMENT = re.compile(rf"^{_NAME}\s*=\s*(.*)$")
# Shipped templates list defaults as: # (default) KEY="value"
_COMMENTED_DEFAULT = re.compile(rf"^#\s*\(default\)\s*{_NAME}\s*=\s*(.*)$")


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] in "\"'" and value[-1] == value[0]:
        return value[1:-1]
    return value


def _quote_value(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def read_config_file(path: Path) -> dict[str, str]:
    """Read ``KEY=value`` assignments from an env-style file.

    Comments, blank lines and anything that is not a plain assignment are
    ignored. A missing file yields an empty mapping.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    values: dict[str, str] = {}
    for line in content.splitlines():
        match = _ASSIGNMENT.match(line.strip())
        if match:
            values[match.group(1)] = _strip_quotes(match.group(2))
    return values


def rewrite_assignments(content: str, changes: Mapping[str, str]) -> str:
    """Return ``content`` with each changed key assigned its new value.

    An existing assignment or commented-out default is replaced where it
    stands; keys the file does not mention yet are appended at the end.
    """
    pending = dict(changes)
    out: list[str] = []
    for line in content.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        match = _COMMENTED_DEFAULT.match(body) or _ASSIGNMENT.match(body)
        name = match.group(1) if match else None
        if name in pending:
            out.append(f"{name}={_quote_value(pending.pop(name))}{line[len(body):]}")
        else:
            out.append(line)
    if pending:
        if out and not out[-1].endswith("\n"):
            out.append("\n")
        out.extend(f"{name}={_quote_value(value)}\n" for name, value in pending.items())
    return "".join(out)


@contextlib.contextmanager
def _locked(path: Path, logger: logging.Logger) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``<path>.lock`` (best effort)."""
    lock_path = path.with_name(path.name + ".lock")
    try:
        handle = open(lock_path, "w")
    except OSError as exc:
        logger.warning("[persist] Could not acquire settings lock: %s", exc)
        yield
        return
    with handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class ConfigPersister:
    """Debounced, file-locked writer for lumen.conf."""

    def __init__(
        self,
        config_path: Path | None = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config_path = config_path or DEFAULT_CONFIG_PATH
        self._debounce_seconds = debounce_seconds
        self._logger = logger or LOGGER
        self._pending_changes: dict[str, str] = {}
        self._timer: threading.Timer | None = None
        self._state_lock = threading.Lock()
        self._file_lock = threading.Lock()

    @property
    def config_path(self) -> Path:
        return self._config_path

    def update(self, var_name: str, value: str) -> None:
        """Queue ``var_name=value``; the file is written once updates go quiet."""
        with self._state_lock:
            self._pending_changes[var_name] = value
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce_seconds, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def flush_sync(self) -> None:
        """Write pending changes now, on the calling thread."""
        self._persist(self._take_pending(cancel_timer=True))

    def stop(self) -> None:
        self.flush_sync()

    def _on_timer(self) -> None:
        self._persist(self._take_pending(cancel_timer=False))

    def _take_pending(self, *, cancel_timer: bool) -> dict[str, str]:
        with self._state_lock:
            if cancel_timer and self._timer is not None:
                self._timer.cancel()
            self._timer = None
            changes, self._pending_changes = self._pending_changes, {}
        return changes

    def _persist(self, changes: dict[str, str]) -> None:
        if not changes:
            return
        path = self._config_path
        if not path.parent.is_dir():
            self._logger.warning("[persist] Settings directory '%s' does not exist, skipping persistence", path.parent)
            return
        try:
            with self._file_lock, _locked(path, self._logger):
                self._rewrite(path, changes)
        except OSError as exc:
            self._logger.error("[persist] Failed to persist settings: %s", exc)

    def _rewrite(self, path: Path, changes: dict[str, str]) -> None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            content = ""
        if content:
            try:
                shutil.copy2(path, path.with_name(path.name + ".backup"))
            except OSError as exc:
                self._logger.warning("[persist] Failed to create settings backup: %s", exc)
        path.write_text(rewrite_assignments(content, changes), encoding="utf-8")
        self._logger.info(
            "[persist] Persisted %d setting(s) to '%s': %s",
            len(changes),
            path,
            ", ".join(f"{name}={value!r}" for name, value in changes.items()),
        )
