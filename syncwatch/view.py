"""Per-view monitoring state fed by the poll scheduler.

A MonitorView owns everything one dashboard displays: reconstructed sessions
per operation stream, the latest item snapshot per monitoring feed, the tree
UI state and the resource metric buffers. Poll results are applied only
while the view's cancellation token is live. A failed poll records an error
for its feed but leaves the previously applied data in place; the next
successful poll of that feed clears the error.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from syncwatch.config import (
    FAST_POLL_INTERVAL,
    ITEM_FEEDS,
    MATCH_STRATEGY,
    MATCH_WINDOW_SECONDS,
    METRIC_CAPACITY,
    RESOURCE_POLL_INTERVAL,
    SPARKLINE_LEVELS,
    SPARKLINE_WIDTH,
)
from syncwatch.metrics import (
    SPARK_CHARS,
    MetricRingBuffer,
    history_from_samples,
    levels,
    sample_from_stats,
    sparkline,
)
from syncwatch.records import MonitoringItem, Session
from syncwatch.scheduler import CancelToken, PollScheduler
from syncwatch.sessions import reconstruct
from syncwatch.tree import (
    FilterSet,
    Refresh,
    Select,
    SwitchFeed,
    Toggle,
    TreeState,
    get_feed,
    group,
    item_key,
    items_from_rows,
    reduce_tree_state,
    summarize,
)

logger = logging.getLogger(__name__)


def phase_feed(stream: str) -> str:
    return f"phases:{stream}"


class MonitorView:
    def __init__(
        self,
        source,
        streams: Optional[list[str]] = None,
        capacity: int = METRIC_CAPACITY,
        max_window: float = MATCH_WINDOW_SECONDS,
        strategy: str = MATCH_STRATEGY,
    ):
        self.source = source
        self.streams: list[str] = list(streams or [])
        self.discovers_streams = not self.streams
        self.max_window = max_window
        self.strategy = strategy
        self.token = CancelToken()
        self.metrics = MetricRingBuffer(capacity=capacity)
        self.state = TreeState()

        self._lock = threading.Lock()
        self._scheduler: Optional[PollScheduler] = None
        self._fast_interval = FAST_POLL_INTERVAL
        self._sessions: dict[str, list[Session]] = {}
        self._items: dict[str, list[MonitoringItem]] = {}
        self._errors: dict[str, str] = {}

    @property
    def live(self) -> bool:
        return not self.token.cancelled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        scheduler: PollScheduler,
        fast_interval: float = FAST_POLL_INTERVAL,
        resource_interval: float = RESOURCE_POLL_INTERVAL,
    ) -> None:
        """Hydrate the metric history and register one poll job per feed."""
        self._scheduler = scheduler
        self._fast_interval = fast_interval

        if self.discovers_streams:
            try:
                self.streams = self.source.streams()
            except Exception as e:
                self.record_error("phases", e)

        try:
            self.hydrate(self.source.fetch_resource_history(limit=self.metrics.capacity))
        except Exception as e:
            self.record_error("resources", e)

        for stream in self.streams:
            self._register_stream(stream)

        for feed in ITEM_FEEDS:
            scheduler.register(
                feed,
                fast_interval,
                fetch=lambda f=feed: self.source.fetch_items(f),
                on_result=lambda rows, f=feed: self.apply_items(f, rows),
                on_error=lambda e, f=feed: self.record_error(f, e),
                token=self.token,
            )

        scheduler.register(
            "resources",
            resource_interval,
            fetch=self.source.fetch_resource_sample,
            on_result=self.apply_resource_sample,
            on_error=lambda e: self.record_error("resources", e),
            token=self.token,
        )
        logger.info("monitoring view started for streams: %s", ", ".join(self.streams) or "none")

    def _register_stream(self, stream: str) -> None:
        feed = phase_feed(stream)
        self._scheduler.register(
            feed,
            self._fast_interval,
            fetch=lambda: self.source.fetch_phase_history(stream),
            on_result=lambda rows: self.apply_phases(stream, rows),
            on_error=lambda e: self.record_error(feed, e),
            token=self.token,
        )

    def discover_streams(self) -> list[str]:
        """Start polling streams that appeared in the source after start().

        Only applies to views that discover their streams; returns the
        streams added.
        """
        if not self.discovers_streams or self._scheduler is None or not self.live:
            return []
        try:
            found = self.source.streams()
        except Exception as e:
            self.record_error("phases", e)
            return []

        added = [s for s in found if s not in self.streams]
        with self._lock:
            self._errors.pop("phases", None)
        for stream in added:
            self._register_stream(stream)
        if added:
            self.streams = self.streams + added
            logger.info("polling new streams: %s", ", ".join(added))
        return added

    def teardown(self) -> None:
        """Stop accepting results and release the view's buffers."""
        with self._lock:
            self.token.cancel()
            self.metrics.clear()
        logger.debug("tearing down monitoring view")
        if self._scheduler is not None:
            for stream in self.streams:
                self._scheduler.unregister(phase_feed(stream))
            for feed in ITEM_FEEDS + ("resources",):
                self._scheduler.unregister(feed)

    # ------------------------------------------------------------------
    # Applying poll results
    # ------------------------------------------------------------------

    def apply_phases(self, stream: str, rows: list) -> bool:
        if not self.live:
            return False
        sessions = reconstruct(rows, max_window=self.max_window, strategy=self.strategy)
        with self._lock:
            if not self.live:
                return False
            self._sessions[stream] = sessions
            self._errors.pop(phase_feed(stream), None)
        return True

    def apply_items(self, feed: str, rows: list) -> bool:
        if not self.live:
            return False
        items = items_from_rows(feed, rows)
        with self._lock:
            if not self.live:
                return False
            self._items[feed] = items
            if self.state.feed == feed:
                keys = tuple(item_key(i) for i in items)
                self.state = reduce_tree_state(self.state, Refresh(keys))
            self._errors.pop(feed, None)
        return True

    def apply_resource_sample(self, sample: Optional[dict], now: Optional[datetime] = None) -> bool:
        if not self.live:
            return False
        values = sample_from_stats(sample) if sample is not None else None
        with self._lock:
            if not self.live:
                return False
            self._errors.pop("resources", None)
            if values is None:
                return False
            self.metrics.append_tick(now or datetime.now(timezone.utc), values)
        return True

    def hydrate(self, samples: list[dict]) -> bool:
        """Replace the metric history in bulk (initial load)."""
        if not self.live or not samples:
            return False
        history = history_from_samples(samples, self.metrics.channels)
        with self._lock:
            if not self.live:
                return False
            self.metrics.replace_history(history)
        return True

    def record_error(self, feed: str, error: Exception) -> None:
        with self._lock:
            if not self.live:
                return
            self._errors[feed] = str(error) or type(error).__name__

    @property
    def error_banner(self) -> Optional[str]:
        with self._lock:
            for message in self._errors.values():
                if message:
                    return message
        return None

    @property
    def errors(self) -> dict:
        with self._lock:
            return dict(self._errors)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def sessions(self, stream: str) -> list[Session]:
        with self._lock:
            return list(self._sessions.get(stream, []))

    def items(self, feed: str) -> list[MonitoringItem]:
        get_feed(feed)
        with self._lock:
            return list(self._items.get(feed, []))

    def tree(self, feed: str, filters: Optional[FilterSet] = None) -> tuple[dict, dict]:
        """Grouped tree and summary of the filtered snapshot of one feed."""
        items = self.items(feed)
        tree = group(items, filters)
        filtered = [i for i in items if (filters or FilterSet()).matches(i)]
        return tree, summarize(feed, filtered)

    def metric_snapshot(self, width: Optional[int] = SPARKLINE_WIDTH, level_count: int = SPARKLINE_LEVELS) -> dict:
        out = {}
        # Glyphs only exist for the default level count.
        glyphs = level_count == len(SPARK_CHARS)
        with self._lock:
            for channel in self.metrics.channels:
                points = self.metrics.snapshot(channel)
                values = [p.value for p in points]
                out[channel] = {
                    "points": [p.to_dict() for p in points],
                    "levels": levels(values, level_count, width),
                    "sparkline": sparkline(values, width) if glyphs else None,
                }
        return out

    # ------------------------------------------------------------------
    # UI state transitions
    # ------------------------------------------------------------------

    def dispatch(self, action) -> TreeState:
        with self._lock:
            self.state = reduce_tree_state(self.state, action)
            return self.state

    def toggle(self, key: str) -> TreeState:
        return self.dispatch(Toggle(key))

    def select(self, feed: str, key: Optional[str]) -> TreeState:
        self.dispatch(SwitchFeed(feed))
        return self.dispatch(Select(key))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def terminate(self, pid: Any) -> dict:
        result = self.source.terminate(pid)
        if self._scheduler is not None:
            self._scheduler.request_now("queries")
        return result

    @property
    def status(self) -> dict:
        return {
            "live": self.live,
            "streams": list(self.streams),
            "feed": self.state.feed,
            "error": self.error_banner,
            "errors": self.errors,
            "jobs": self._scheduler.status if self._scheduler is not None else {},
        }
