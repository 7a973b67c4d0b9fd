"""Value types shared by the reconstruction, grouping and display layers."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

IN_PROGRESS = "IN_PROGRESS"
SUCCESS = "SUCCESS"
ERROR = "ERROR"
TERMINAL_STATUSES = frozenset({SUCCESS, ERROR})

UNKNOWN = "Unknown"

_EPOCH_RE = re.compile(r"-?\d+(?:\.\d+)?")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string, epoch seconds or datetime into an aware datetime.

    Epoch seconds may arrive as numbers or numeric strings. Returns None
    for anything missing or unparsable. Naive values are taken as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if _EPOCH_RE.fullmatch(text):
            return parse_timestamp(float(text))
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole seconds from start to end (floored), or None if either is missing."""
    if start is None or end is None:
        return None
    return math.floor((end - start).total_seconds())


def to_number(value: Any, default: float = 0) -> float:
    """Lenient numeric coercion: unparsable or non-finite values become default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


@dataclass(frozen=True)
class PhaseRecord:
    """One logged phase transition of an operation; carries no session id."""

    id: Any
    status: str
    start_time: Any = None
    end_time: Any = None
    duration_seconds: Optional[float] = None
    rows_processed: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = field(default=None, compare=False, repr=False)
    ended_at: Optional[datetime] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_row(cls, row: dict) -> Optional["PhaseRecord"]:
        """Build a record from a feed row. Rows without an id are dropped."""
        if not isinstance(row, dict):
            return None
        record_id = row.get("id")
        if record_id is None or record_id == "":
            return None

        status = str(row.get("status") or "UNKNOWN").strip().upper() or "UNKNOWN"
        duration = row.get("duration_seconds")
        rows = row.get("rows_processed")

        return cls(
            id=record_id,
            status=status,
            start_time=row.get("start_time"),
            end_time=row.get("end_time"),
            duration_seconds=to_number(duration) if duration is not None else None,
            rows_processed=int(to_number(rows)) if rows is not None else None,
            error_message=row.get("error_message"),
            started_at=parse_timestamp(row.get("start_time")),
            ended_at=parse_timestamp(row.get("end_time")),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def reported_duration(self) -> float:
        return self.duration_seconds or 0


@dataclass(frozen=True)
class InProgressPhase:
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration_seconds: int

    def to_dict(self) -> dict:
        return {
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class Session:
    """A reconstructed execution: a merged IN_PROGRESS + terminal pair, or a singleton."""

    id: Any
    record_ids: tuple
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration_seconds: float
    status_flow: tuple
    final_status: str
    in_progress_phase: Optional[InProgressPhase] = None
    final_phase_duration: Optional[float] = None
    rows_processed: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def merged(self) -> bool:
        return self.in_progress_phase is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_ids": list(self.record_ids),
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_seconds": self.duration_seconds,
            "status_flow": list(self.status_flow),
            "final_status": self.final_status,
            "in_progress": self.in_progress_phase.to_dict() if self.in_progress_phase else None,
            "final_duration": self.final_phase_duration,
            "rows_processed": self.rows_processed,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class MonitoringItem:
    """Minimal shared shape of a monitoring feed row; `fields` is the untouched payload."""

    feed: str
    group_key: str
    schema: str
    table: str
    status: str
    timestamp: Optional[datetime]
    item_id: Any = None
    fields: dict = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> dict:
        payload = dict(self.fields)
        payload.setdefault("schema_name", self.schema)
        payload.setdefault("table_name", self.table)
        return payload


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
