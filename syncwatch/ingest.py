"""JSONL snapshot files → snapshot cache with incremental ingestion.

Directory layout::

    <snapshots>/phases/<stream>.jsonl   one phase record per line
    <snapshots>/<feed>.jsonl            latest snapshot of an item feed
    <snapshots>/resources.jsonl         dashboard stats samples
"""

import json
import logging
import os
from datetime import timezone
from pathlib import Path
from typing import Optional

from syncwatch.config import ITEM_FEEDS, SNAPSHOT_DIR
from syncwatch.db import get_writer
from syncwatch.records import parse_timestamp

logger = logging.getLogger(__name__)

PHASES = "phases"
ITEMS = "items"
RESOURCES = "resources"


def find_snapshot_files(snapshot_dir: Path = SNAPSHOT_DIR) -> list[tuple[Path, str, str]]:
    """Find every snapshot file as (path, kind, name)."""
    results = []
    snapshot_dir = Path(snapshot_dir)
    if not snapshot_dir.exists():
        return results

    phases_dir = snapshot_dir / PHASES
    if phases_dir.is_dir():
        for jsonl_file in sorted(phases_dir.glob("*.jsonl")):
            results.append((jsonl_file, PHASES, jsonl_file.stem))

    for feed in ITEM_FEEDS:
        jsonl_file = snapshot_dir / f"{feed}.jsonl"
        if jsonl_file.is_file():
            results.append((jsonl_file, ITEMS, feed))

    resources_file = snapshot_dir / f"{RESOURCES}.jsonl"
    if resources_file.is_file():
        results.append((resources_file, RESOURCES, RESOURCES))

    return results


def needs_ingestion(file_path: Path, conn) -> bool:
    """Check if file needs (re-)ingestion based on mtime and skip cache."""
    mtime = os.path.getmtime(file_path)

    skip_result = conn.execute(
        "SELECT mtime FROM skip_cache WHERE file_path = ?", [str(file_path)]
    ).fetchone()
    if skip_result is not None and mtime <= skip_result[0]:
        return False

    result = conn.execute(
        "SELECT mtime FROM ingestion_log WHERE file_path = ?", [str(file_path)]
    ).fetchone()
    if result is None:
        return True
    return mtime > result[0]


def mark_skip(file_path: Path, error_type: str, error_message: str, conn):
    """Mark a file to be skipped until its mtime changes."""
    mtime = os.path.getmtime(file_path)
    conn.execute(
        """
        INSERT OR REPLACE INTO skip_cache (file_path, mtime, error_type, error_message, skip_until)
        VALUES (?, ?, ?, ?, datetime('now', '+1 day'))
        """,
        [str(file_path), mtime, error_type, error_message[:500]],
    )
    conn.commit()


def clear_skip(file_path: Path, conn):
    conn.execute("DELETE FROM skip_cache WHERE file_path = ?", [str(file_path)])
    conn.commit()


def parse_line(line: str) -> Optional[dict]:
    """Decode one JSONL line; anything but a JSON object yields None."""
    try:
        d = json.loads(line)
    except json.JSONDecodeError:
        return None
    return d if isinstance(d, dict) else None


def normalize_time(value):
    """UTC ISO-8601 text for any parsable timestamp; other strings are kept as-is."""
    dt = parse_timestamp(value)
    if dt is not None:
        return dt.astimezone(timezone.utc).isoformat()
    return value if isinstance(value, str) else None


def parse_phase_line(line: str) -> Optional[dict]:
    """Parse a phase record line into a phase_history row.

    Records without an id cannot be upserted and are dropped here. Start and
    end times are stored as UTC ISO-8601 text; every other field is stored
    as delivered.
    """
    d = parse_line(line)
    if d is None:
        return None

    record_id = d.get("id")
    if record_id is None or record_id == "" or isinstance(record_id, (dict, list)):
        return None

    return {
        "record_id": record_id,
        "status": d.get("status"),
        "start_time": normalize_time(d.get("start_time")),
        "end_time": normalize_time(d.get("end_time")),
        "duration_seconds": d.get("duration_seconds"),
        "rows_processed": d.get("rows_processed"),
        "error_message": d.get("error_message"),
    }


def _read_lines(file_path: Path):
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if line:
                yield line


def _ingest_phases(file_path: Path, stream: str, conn) -> int:
    count = 0
    for line in _read_lines(file_path):
        row = parse_phase_line(line)
        if row is None:
            continue
        conn.execute(
            """
            INSERT OR REPLACE INTO phase_history
                (stream, record_id, status, start_time, end_time,
                 duration_seconds, rows_processed, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                stream,
                row["record_id"],
                row["status"],
                row["start_time"],
                row["end_time"],
                row["duration_seconds"],
                row["rows_processed"],
                row["error_message"],
            ],
        )
        count += 1
    return count


def _ingest_items(file_path: Path, feed: str, conn) -> int:
    items = [item for item in map(parse_line, _read_lines(file_path)) if item is not None]

    # An item file is a full snapshot of its feed.
    conn.execute("DELETE FROM monitoring_items WHERE feed = ?", [feed])
    for position, item in enumerate(items):
        item_id = item.get("id")
        if isinstance(item_id, (dict, list)):
            item_id = json.dumps(item_id)
        conn.execute(
            """
            INSERT INTO monitoring_items (feed, position, item_id, payload)
            VALUES (?, ?, ?, ?)
            """,
            [feed, position, item_id, json.dumps(item)],
        )
    return len(items)


def _ingest_resources(file_path: Path, conn) -> int:
    count = 0
    for line in _read_lines(file_path):
        sample = parse_line(line)
        if sample is None:
            continue
        sampled_at = sample.get("timestamp")
        if not isinstance(sampled_at, str) or not sampled_at:
            continue
        conn.execute(
            "INSERT OR REPLACE INTO resource_samples (sampled_at, payload) VALUES (?, ?)",
            [sampled_at, json.dumps(sample)],
        )
        count += 1
    return count


def ingest_file(file_path: Path, kind: str, name: str, conn) -> int:
    """Ingest a single snapshot file in one transaction. Returns the record count."""
    try:
        if kind == PHASES:
            count = _ingest_phases(file_path, name, conn)
        elif kind == ITEMS:
            count = _ingest_items(file_path, name, conn)
        elif kind == RESOURCES:
            count = _ingest_resources(file_path, conn)
        else:
            raise ValueError(f"unknown snapshot kind {kind!r}")

        mtime = os.path.getmtime(file_path)
        conn.execute(
            "INSERT OR REPLACE INTO ingestion_log VALUES (?, ?, ?, current_timestamp)",
            [str(file_path), mtime, count],
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    return count


def reset_ingestion_log(conn=None):
    """Forget every ingested mtime so the next run re-reads all files."""
    conn = conn or get_writer()
    conn.execute("DELETE FROM ingestion_log")
    conn.execute("DELETE FROM skip_cache")
    conn.commit()


def run_ingest(snapshot_dir: Path = SNAPSHOT_DIR) -> dict:
    """Run full incremental ingestion. Returns stats."""
    conn = get_writer()
    files = find_snapshot_files(snapshot_dir)

    stats = {
        "total_files": len(files),
        "ingested_files": 0,
        "skipped_files": 0,
        "failed_files": 0,
        "total_records": 0,
    }

    for file_path, kind, name in files:
        if not needs_ingestion(file_path, conn):
            stats["skipped_files"] += 1
            continue

        try:
            count = ingest_file(file_path, kind, name, conn)
        except Exception as e:
            error_type = type(e).__name__
            mark_skip(file_path, error_type, str(e), conn)
            stats["failed_files"] += 1
            logger.warning("failed to ingest %s: %s: %s", file_path, error_type, e)
            continue

        clear_skip(file_path, conn)
        stats["ingested_files"] += 1
        stats["total_records"] += count

    stats["streams"] = conn.execute(
        "SELECT COUNT(DISTINCT stream) FROM phase_history"
    ).fetchone()[0]
    stats["phase_records_in_db"] = conn.execute(
        "SELECT COUNT(*) FROM phase_history"
    ).fetchone()[0]

    return stats
