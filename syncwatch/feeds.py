"""Snapshot reads for the three feed types, plus the terminate command."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Callable, Optional

from syncwatch.config import HISTORY_LIMIT, ITEM_LIMIT, METRIC_CAPACITY
from syncwatch.db import get_reader, get_writer

logger = logging.getLogger(__name__)


class FeedError(RuntimeError):
    """A feed snapshot could not be fetched."""

    def __init__(self, feed: str, message: str):
        super().__init__(f"{feed}: {message}")
        self.feed = feed


class CommandError(RuntimeError):
    """An administrative command was rejected."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


def _decode(payload: str, feed: str) -> Optional[dict]:
    try:
        value = json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        logger.debug("undecodable %s payload skipped", feed)
        return None
    return value if isinstance(value, dict) else None


class SqliteFeedSource:
    """Reads the latest snapshot of every feed from the local cache."""

    def __init__(
        self,
        history_limit: int = HISTORY_LIMIT,
        item_limit: int = ITEM_LIMIT,
        connect: Callable[[], sqlite3.Connection] = get_reader,
    ):
        self.history_limit = history_limit
        self.item_limit = item_limit
        self._connect = connect

    def _rows(self, feed: str, sql: str, params: list) -> list:
        try:
            return self._connect().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise FeedError(feed, str(e)) from e

    def streams(self) -> list[str]:
        rows = self._rows("phases", "SELECT DISTINCT stream FROM phase_history ORDER BY stream", [])
        return [r[0] for r in rows]

    def fetch_phase_history(self, stream: str) -> list[dict]:
        """Most recent phase records of one stream, newest first."""
        rows = self._rows(
            f"phases:{stream}",
            """
            SELECT record_id, status, start_time, end_time, duration_seconds,
                   rows_processed, error_message
            FROM phase_history
            WHERE stream = ?
            ORDER BY start_time DESC
            LIMIT ?
            """,
            [stream, self.history_limit],
        )
        return [
            {
                "id": r[0],
                "status": r[1],
                "start_time": r[2],
                "end_time": r[3],
                "duration_seconds": r[4],
                "rows_processed": r[5],
                "error_message": r[6],
            }
            for r in rows
        ]

    def fetch_items(self, feed: str) -> list[dict]:
        rows = self._rows(
            feed,
            "SELECT payload FROM monitoring_items WHERE feed = ? ORDER BY position LIMIT ?",
            [feed, self.item_limit],
        )
        items = []
        for (payload,) in rows:
            item = _decode(payload, feed)
            if item is not None:
                items.append(item)
        return items

    def fetch_resource_history(self, limit: int = METRIC_CAPACITY) -> list[dict]:
        """Last `limit` resource samples, oldest first, each with its timestamp."""
        rows = self._rows(
            "resources",
            "SELECT sampled_at, payload FROM resource_samples ORDER BY sampled_at DESC LIMIT ?",
            [limit],
        )
        samples = []
        for sampled_at, payload in reversed(rows):
            sample = _decode(payload, "resources")
            if sample is None:
                continue
            sample.setdefault("timestamp", sampled_at)
            samples.append(sample)
        return samples

    def fetch_resource_sample(self) -> Optional[dict]:
        samples = self.fetch_resource_history(limit=1)
        return samples[-1] if samples else None

    def terminate(self, pid: Any) -> dict:
        """Request termination of the active query with this pid.

        The request is recorded and the query leaves the active snapshot.
        """
        try:
            pid = int(str(pid).strip())
        except (TypeError, ValueError):
            raise CommandError("Invalid PID") from None

        conn = get_writer()
        try:
            rows = conn.execute(
                "SELECT position, payload FROM monitoring_items WHERE feed = 'queries'"
            ).fetchall()
            target = None
            for position, payload in rows:
                item = _decode(payload, "queries")
                if item is not None and str(item.get("pid")) == str(pid):
                    target = (position, item)
                    break
            if target is None:
                raise CommandError(f"Query with PID {pid} not found or could not be terminated", status=404)

            position, item = target
            conn.execute(
                "INSERT INTO terminate_requests (pid, query) VALUES (?, ?)",
                [pid, item.get("query")],
            )
            conn.execute(
                "DELETE FROM monitoring_items WHERE feed = 'queries' AND position = ?",
                [position],
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise FeedError("queries", str(e)) from e

        logger.info("terminate requested for pid %s", pid)
        return {"success": True, "message": f"Query with PID {pid} has been terminated"}
