"""Rebuild execution sessions from a flat list of phase records.

Phase records carry no session id. An IN_PROGRESS record is paired with a
later SUCCESS/ERROR record of the same stream when the terminal record starts
strictly after it and within the matching window; anything left over stands
alone as a singleton session. Each record id is consumed at most once, so
the output sessions partition the input ids.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from syncwatch.config import MATCH_STRATEGY, MATCH_WINDOW_SECONDS
from syncwatch.records import (
    IN_PROGRESS,
    InProgressPhase,
    PhaseRecord,
    Session,
    seconds_between,
)

logger = logging.getLogger(__name__)

STRATEGIES = ("first", "nearest")

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def coerce_records(rows: Iterable[Union[PhaseRecord, dict]]) -> list[PhaseRecord]:
    """Turn feed rows into PhaseRecords, dropping rows that have no id."""
    records = []
    for row in rows:
        if isinstance(row, PhaseRecord):
            records.append(row)
            continue
        record = PhaseRecord.from_row(row)
        if record is None:
            logger.debug("dropping phase row without id: %r", row)
            continue
        records.append(record)
    return records


def _window_seconds(max_window: Union[float, timedelta]) -> float:
    if isinstance(max_window, timedelta):
        return max_window.total_seconds()
    return float(max_window)


def _find_candidate(
    records: list[PhaseRecord],
    current: PhaseRecord,
    processed: set,
    window: float,
    strategy: str,
) -> Optional[PhaseRecord]:
    """Find the unconsumed record that completes `current`'s session.

    For an IN_PROGRESS record the candidate is a terminal record starting
    after it; for a terminal record it is an IN_PROGRESS record starting
    before it. Candidates are scanned in input order.
    """
    if current.started_at is None:
        return None

    looking_forward = current.status == IN_PROGRESS
    best = None
    best_delta = None

    for candidate in records:
        if candidate.id in processed or candidate.id == current.id:
            continue
        if candidate.started_at is None:
            continue

        if looking_forward:
            if not candidate.is_terminal:
                continue
            delta = (candidate.started_at - current.started_at).total_seconds()
        else:
            if candidate.status != IN_PROGRESS:
                continue
            delta = (current.started_at - candidate.started_at).total_seconds()

        if delta <= 0 or delta > window:
            continue

        if strategy == "first":
            return candidate
        if best_delta is None or delta < best_delta:
            best, best_delta = candidate, delta

    return best


def _merge(opener: PhaseRecord, in_progress: PhaseRecord, terminal: PhaseRecord) -> Session:
    start = in_progress.started_at
    end = terminal.ended_at

    total = seconds_between(start, end)
    duration = total if total is not None and total > 0 else terminal.reported_duration

    waited = seconds_between(start, terminal.started_at) or 0

    return Session(
        id=opener.id,
        record_ids=(in_progress.id, terminal.id),
        start_time=start,
        end_time=end,
        duration_seconds=duration,
        status_flow=(IN_PROGRESS, terminal.status),
        final_status=terminal.status,
        in_progress_phase=InProgressPhase(
            start_time=start,
            end_time=terminal.started_at,
            duration_seconds=max(0, waited),
        ),
        final_phase_duration=terminal.reported_duration,
        rows_processed=terminal.rows_processed,
        error_message=terminal.error_message,
    )


def _singleton(record: PhaseRecord) -> Session:
    return Session(
        id=record.id,
        record_ids=(record.id,),
        start_time=record.started_at,
        end_time=record.ended_at,
        duration_seconds=record.reported_duration,
        status_flow=(record.status,),
        final_status=record.status,
        final_phase_duration=record.duration_seconds if record.is_terminal else None,
        rows_processed=record.rows_processed,
        error_message=record.error_message,
    )


def reconstruct(
    rows: Iterable[Union[PhaseRecord, dict]],
    max_window: Union[float, timedelta] = MATCH_WINDOW_SECONDS,
    strategy: str = MATCH_STRATEGY,
) -> list[Session]:
    """Reconstruct sessions from phase records, newest first.

    `strategy="first"` takes the first qualifying candidate in input order;
    `strategy="nearest"` takes the qualifying candidate closest in start time.
    Malformed rows never raise: a record with a missing or unparsable start
    time cannot be matched and becomes a singleton.
    """
    if strategy not in STRATEGIES:
        raise ValueError(f"unknown matching strategy {strategy!r}, expected one of {STRATEGIES}")

    records = coerce_records(rows)
    window = _window_seconds(max_window)
    processed: set = set()
    sessions: list[Session] = []

    for record in records:
        if record.id in processed:
            continue

        if record.status == IN_PROGRESS:
            match = _find_candidate(records, record, processed, window, strategy)
            if match is not None:
                sessions.append(_merge(record, record, match))
                processed.add(match.id)
            else:
                sessions.append(_singleton(record))
        elif record.is_terminal:
            match = _find_candidate(records, record, processed, window, strategy)
            if match is not None:
                sessions.append(_merge(record, match, record))
                processed.add(match.id)
            else:
                sessions.append(_singleton(record))
        else:
            sessions.append(_singleton(record))

        processed.add(record.id)

    singles = sum(1 for s in sessions if not s.merged)
    logger.debug(
        "reconstructed %d sessions from %d records (%d singletons)",
        len(sessions), len(records), singles,
    )

    return sorted(sessions, key=lambda s: s.start_time or _OLDEST, reverse=True)


# ---------------------------------------------------------------------------
# Timeline helpers
# ---------------------------------------------------------------------------

def format_duration(seconds) -> str:
    """Human-readable duration: 42s, 3m 5s, 1h 2m 3s."""
    dur = int(seconds or 0)
    if dur >= 3600:
        hours = dur // 3600
        mins = (dur % 3600) // 60
        secs = dur % 60
        return f"{hours}h {mins}m {secs}s"
    if dur >= 60:
        mins = dur // 60
        secs = dur % 60
        return f"{mins}m {secs}s"
    return f"{dur}s"


def phase_split(session: Session) -> tuple[float, float]:
    """Percent of a timeline bar spent in-progress vs in the final phase."""
    if not session.merged:
        return 0.0, 100.0

    total = session.duration_seconds or 1
    if total <= 0:
        return 0.0, 100.0
    waited = session.in_progress_phase.duration_seconds
    final = session.final_phase_duration or max(0, total - waited)

    parts = waited + final
    if parts <= 0:
        return 50.0, 50.0
    return waited / parts * 100, final / parts * 100


def max_duration(sessions: Iterable[Session]) -> float:
    """Longest session duration, never below 1 (used to scale timeline bars)."""
    return max([s.duration_seconds or 0 for s in sessions] + [1])
