"""Configuration: paths, poll intervals, matching window and display constants."""

import os
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


# Paths
DB_PATH = Path(
    os.environ.get("SYNCWATCH_DB", Path.home() / ".syncwatch" / "data.sqlite")
)
SNAPSHOT_DIR = Path(
    os.environ.get("SYNCWATCH_SNAPSHOTS", Path.home() / ".syncwatch" / "snapshots")
)
SERVER_PORT = _env_int("SYNCWATCH_PORT", 8430)

# Poll intervals (seconds)
FAST_POLL_INTERVAL = _env_float("SYNCWATCH_FAST_INTERVAL", 5.0)
RESOURCE_POLL_INTERVAL = _env_float("SYNCWATCH_RESOURCE_INTERVAL", 10.0)

# Session matching
MATCH_WINDOW_SECONDS = _env_float("SYNCWATCH_MATCH_WINDOW", 24 * 60 * 60)
MATCH_STRATEGY = os.environ.get("SYNCWATCH_MATCH_STRATEGY", "first").strip().lower()
if MATCH_STRATEGY not in ("first", "nearest"):
    MATCH_STRATEGY = "first"

# Resource metrics
METRIC_CAPACITY = 60
SPARKLINE_LEVELS = 8
SPARKLINE_WIDTH = 30

# Snapshot sizes requested per poll
HISTORY_LIMIT = 100
ITEM_LIMIT = 100

# Monitoring item feeds, in display order
ITEM_FEEDS = ("queries", "live", "transfer", "performance")


def parse_stream_specs(raw_values: list[str]) -> list[str]:
    """Parse operation stream names from CLI/env.

    Each value may itself be a comma separated list. Blank names are dropped
    and duplicates are removed while keeping first-seen order.
    """
    streams: list[str] = []
    seen: set[str] = set()

    for raw in raw_values:
        for part in (raw or "").split(","):
            name = part.strip()
            if not name or name in seen:
                continue
            seen.add(name)
            streams.append(name)

    return streams


def get_streams(cli_values: tuple[str, ...] | list[str] | None = None) -> list[str]:
    """Resolve operation streams from CLI, then env.

    An empty result means "discover every stream present in the cache".
    """
    if cli_values:
        parsed = parse_stream_specs(list(cli_values))
        if parsed:
            return parsed

    env_val = os.environ.get("SYNCWATCH_STREAMS", "").strip()
    if env_val:
        return parse_stream_specs([env_val])

    return []
