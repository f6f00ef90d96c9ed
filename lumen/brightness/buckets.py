"""Ambient light buckets and the lux-to-brightness mapper.

A bucket is a half-open lux range ``[min, max)`` with a target screen
brightness. The table is ordered by ``min`` and pairwise disjoint; the index of
the matching bucket also selects the keyboard backlight level.

Tables are exchanged as compact strings in lumen.conf and over MQTT::

    LUMEN_BUCKETS="0:20:0.15,20:200:0.25,200:650:0.5"
    LUMEN_KEYBOARD_LEVELS="1,0,0"
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from lumen.utils import split_csv


class ConfigurationError(ValueError):
    """Raised for an empty, overlapping or otherwise invalid bucket table."""


@dataclass(frozen=True)
class Bucket:
    min: int
    max: int
    brightness: float

    def contains(self, lux: float) -> bool:
        return self.min <= lux < self.max

    def distance(self, lux: float) -> float:
        if lux < self.min:
            return self.min - lux
        if lux >= self.max:
            return lux - self.max
        return 0.0


_PRESET: tuple[tuple[int, int, float, int], ...] = (
    (0, 20, 0.15, 1),  # Night
    (20, 200, 0.25, 0),  # Dim indoor
    (200, 650, 0.50, 0),  # Normal indoor
    (650, 2000, 0.75, 0),  # Bright indoor
    (2000, 10000, 1.00, 0),  # Outdoor
)


def default_buckets() -> list[Bucket]:
    return [Bucket(lo, hi, brightness) for lo, hi, brightness, _ in _PRESET]


def default_keyboard_levels() -> list[int]:
    return [level for *_, level in _PRESET]


def validate_buckets(buckets: Sequence[Bucket] | None) -> Sequence[Bucket]:
    """Return ``buckets`` if it is a usable table, else raise ConfigurationError."""
    if not buckets:
        raise ConfigurationError("Bucket table is empty")
    previous: Bucket | None = None
    for index, bucket in enumerate(buckets):
        if bucket.min < 0 or bucket.min >= bucket.max:
            raise ConfigurationError(f"Bucket {index} has an empty range [{bucket.min}, {bucket.max})")
        if not 0.0 <= bucket.brightness <= 1.0:
            raise ConfigurationError(f"Bucket {index} brightness {bucket.brightness} is outside [0, 1]")
        if previous is not None and bucket.min < previous.max:
            raise ConfigurationError(
                f"Bucket {index} [{bucket.min}, {bucket.max}) overlaps or precedes "
                f"bucket {index - 1} [{previous.min}, {previous.max})"
            )
        previous = bucket
    return buckets


def _index_in(lux: float, buckets: Sequence[Bucket]) -> int:
    if lux < buckets[0].min:
        return 0
    if lux >= buckets[-1].max:
        return len(buckets) - 1
    for index, bucket in enumerate(buckets):
        if bucket.contains(lux):
            return index
    # Sample falls in a gap between two disjoint buckets
    best_index = 0
    best_distance = float("inf")
    for index, bucket in enumerate(buckets):
        distance = bucket.distance(lux)
        if distance < best_distance:
            best_distance = distance
            best_index = index
    return best_index


class BucketMapper:
    """Map a lux sample onto a bucket table.

    The mapper holds no state between calls: the same sample and table always
    produce the same ``(brightness, index)``.
    """

    def map(self, lux: float, buckets: Sequence[Bucket] | None) -> tuple[float, int]:
        table = validate_buckets(buckets)
        index = _index_in(lux, table)
        return table[index].brightness, index

    def find_index(self, lux: float, buckets: Sequence[Bucket] | None) -> int:
        return _index_in(lux, validate_buckets(buckets))


def crosses_bucket_boundary(
    previous: float | None,
    current: float | None,
    buckets: Sequence[Bucket] | None,
    mapper: BucketMapper | None = None,
) -> bool:
    """Return True when ``current`` lands in a different bucket than ``previous``.

    Unknown samples and unusable tables always count as a crossing so the
    sample reaches the engine, which reports the configuration problem.
    """
    if previous is None or current is None:
        return True
    mapper = mapper or BucketMapper()
    try:
        return mapper.find_index(previous, buckets) != mapper.find_index(current, buckets)
    except ConfigurationError:
        return True


def sync_keyboard_levels(levels: Sequence[int], count: int) -> list[int]:
    """Pad with zeros or truncate so there is one level per bucket."""
    synced = [max(0, int(level)) for level in levels[:count]]
    synced.extend(0 for _ in range(count - len(synced)))
    return synced


def parse_buckets(value: str | None) -> list[Bucket]:
    """Parse ``min:max:brightness`` triples separated by commas."""
    buckets: list[Bucket] = []
    for token in split_csv(value):
        parts = token.split(":")
        if len(parts) != 3:
            raise ConfigurationError(f"Malformed bucket '{token}', expected min:max:brightness")
        try:
            bucket = Bucket(int(parts[0]), int(parts[1]), float(parts[2]))
        except ValueError as exc:
            raise ConfigurationError(f"Malformed bucket '{token}': {exc}") from exc
        buckets.append(bucket)
    validate_buckets(buckets)
    return buckets


def format_buckets(buckets: Sequence[Bucket]) -> str:
    return ",".join(f"{b.min}:{b.max}:{b.brightness:g}" for b in buckets)


def parse_levels(value: str | None) -> list[int]:
    levels: list[int] = []
    for token in split_csv(value):
        try:
            level = int(token)
        except ValueError as exc:
            raise ConfigurationError(f"Malformed keyboard level '{token}'") from exc
        if level < 0:
            raise ConfigurationError(f"Keyboard level {level} is negative")
        levels.append(level)
    return levels


def format_levels(levels: Sequence[int]) -> str:
    return ",".join(str(level) for level in levels)
