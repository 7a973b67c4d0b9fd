"""Rolling resource metric buffers and sparkline quantization."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from syncwatch.config import METRIC_CAPACITY, SPARKLINE_LEVELS, SPARKLINE_WIDTH
from syncwatch.records import to_number

RESOURCE_CHANNELS = (
    "cpu_usage",
    "memory_percentage",
    "network",
    "throughput",
    "db_connections",
    "db_queries_per_second",
    "db_query_efficiency",
)

SPARK_CHARS = "▁▂▃▄▅▆▇█"


@dataclass(frozen=True)
class Point:
    timestamp: Any
    value: float

    def to_dict(self) -> dict:
        ts = self.timestamp
        if hasattr(ts, "isoformat"):
            ts = ts.isoformat()
        return {"timestamp": ts, "value": self.value}


def _as_point(point) -> Point:
    if isinstance(point, Point):
        return point
    timestamp, value = point
    return Point(timestamp, to_number(value))


class MetricRingBuffer:
    """Fixed-capacity FIFO of time-stamped samples per channel.

    Channels registered up front are appended in lockstep by `append_tick`,
    so index i denotes the same sample time on every channel.
    """

    def __init__(self, channels: Iterable[str] = RESOURCE_CHANNELS, capacity: int = METRIC_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._buffers: dict[str, deque] = {}
        for channel in channels:
            self._buffers[channel] = deque(maxlen=capacity)

    @property
    def channels(self) -> tuple:
        return tuple(self._buffers)

    def _buffer(self, channel: str) -> deque:
        buf = self._buffers.get(channel)
        if buf is None:
            buf = self._buffers[channel] = deque(maxlen=self.capacity)
        return buf

    def append(self, channel: str, point) -> None:
        self._buffer(channel).append(_as_point(point))

    def replace_all(self, channel: str, points: Iterable) -> None:
        """Overwrite a channel; only the newest `capacity` points are kept."""
        self._buffers[channel] = deque((_as_point(p) for p in points), maxlen=self.capacity)

    def snapshot(self, channel: str) -> tuple:
        return tuple(self._buffers.get(channel, ()))

    def values(self, channel: str) -> list[float]:
        return [p.value for p in self._buffers.get(channel, ())]

    def length(self, channel: str) -> int:
        return len(self._buffers.get(channel, ()))

    def append_tick(self, timestamp: Any, values: dict) -> None:
        """Append one sample to every registered channel (missing values read as 0)."""
        for channel, buf in self._buffers.items():
            buf.append(Point(timestamp, to_number(values.get(channel))))

    def replace_history(self, history: dict) -> None:
        """Hydrate every registered channel at once, keeping them index aligned."""
        lengths = {len(history.get(channel, ())) for channel in self._buffers}
        if len(lengths) > 1:
            raise ValueError(f"history channels differ in length: {sorted(lengths)}")
        for channel in list(self._buffers):
            self.replace_all(channel, history.get(channel, ()))

    def clear(self) -> None:
        for channel in self._buffers:
            self._buffers[channel] = deque(maxlen=self.capacity)


# ---------------------------------------------------------------------------
# Quantizer
# ---------------------------------------------------------------------------

def levels(series: Iterable, level_count: int = SPARKLINE_LEVELS, width: Optional[int] = None) -> list[int]:
    """Map the visible window of a series onto levels 0..level_count-1.

    min and max are taken over the visible window only (the last `width`
    points when given); a flat window maps entirely to level 0.
    """
    if level_count < 1:
        raise ValueError("level_count must be at least 1")

    values = [to_number(v) for v in series]
    if width is not None:
        values = values[-width:] if width > 0 else []
    if not values:
        return []

    low, high = min(values), max(values)
    if high == low:
        return [0] * len(values)

    top = level_count - 1
    span = high - low
    out = []
    for value in values:
        index = math.floor((value - low) / span * top)
        out.append(max(0, min(top, index)))
    return out


def sparkline(series: Iterable, width: Optional[int] = SPARKLINE_WIDTH, chars: str = SPARK_CHARS) -> str:
    return "".join(chars[level] for level in levels(series, len(chars), width))


# ---------------------------------------------------------------------------
# Resource samples
# ---------------------------------------------------------------------------

def _section(payload: Any, name: str) -> dict:
    value = payload.get(name) if isinstance(payload, dict) else None
    return value if isinstance(value, dict) else {}


def sample_from_stats(stats: dict) -> dict:
    """Derive one value per resource channel from a dashboard stats payload.

    Sections that are missing or not objects read as empty, so every channel
    falls back to 0.
    """
    system = _section(stats, "systemResources")
    cards = _section(stats, "metricsCards")
    health = _section(stats, "dbHealth")
    throughput = _section(cards, "currentThroughput")

    total_queries = to_number(health.get("totalQueries24h"))

    return {
        "cpu_usage": to_number(system.get("cpuUsage")),
        "memory_percentage": to_number(system.get("memoryPercentage")),
        "network": to_number(cards.get("currentIops")),
        "throughput": to_number(throughput.get("avgRps")),
        "db_connections": to_number(health.get("connectionPercentage")),
        "db_queries_per_second": total_queries / (24 * 3600) if total_queries else 0.0,
        "db_query_efficiency": to_number(health.get("queryEfficiencyScore")),
    }


def history_from_samples(samples: Iterable[dict], channels: Iterable[str] = RESOURCE_CHANNELS) -> dict:
    """Build aligned per-channel point lists from cached samples (oldest first)."""
    channels = tuple(channels)
    history: dict[str, list[Point]] = {channel: [] for channel in channels}
    for sample in samples:
        if not isinstance(sample, dict):
            continue
        values = sample_from_stats(sample)
        for channel in channels:
            history[channel].append(Point(sample.get("timestamp"), values.get(channel, 0.0)))
    return history
