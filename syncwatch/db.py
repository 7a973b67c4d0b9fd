"""SQLite snapshot cache with WAL mode for concurrent pollers.

The cache only holds the latest snapshot of each feed as delivered by the
snapshot files; it is not a system of record. WAL mode gives:
- Multiple concurrent readers (one per poll thread)
- Single writer (ingestion) that does not block readers
"""

import sqlite3
import threading

from syncwatch.config import DB_PATH

# Thread-local storage for reader connections
_local = threading.local()

# Single writer connection (protected by lock)
_writer_lock = threading.Lock()
_writer_conn = None


def get_writer() -> sqlite3.Connection:
    """Get the serialized writer connection.

    Use this for INSERT, UPDATE, DELETE, or DDL statements.
    """
    global _writer_conn
    with _writer_lock:
        if _writer_conn is None:
            DB_PATH.parent.mkdir(parents=True, exist_ok=True)
            _writer_conn = _connect()
            _init_schema(_writer_conn)
    return _writer_conn


def get_reader() -> sqlite3.Connection:
    """Get a reader connection for this thread.

    Each thread gets its own reader. Uses autocommit so each query sees
    the latest committed WAL data without holding a stale snapshot.
    """
    if not hasattr(_local, "reader"):
        get_writer()
        _local.reader = _connect(autocommit=True)
    return _local.reader


def get_conn() -> sqlite3.Connection:
    return get_reader()


def _connect(autocommit: bool = False) -> sqlite3.Connection:
    conn = sqlite3.connect(
        str(DB_PATH),
        check_same_thread=False,
        timeout=30.0,
        isolation_level=None if autocommit else "",
    )

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=30000")
    conn.execute("PRAGMA temp_store=MEMORY")

    return conn


def _init_schema(conn: sqlite3.Connection):
    """Initialize database schema."""

    # record_id is declared without a type so integer and text ids keep
    # their storage class.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS phase_history (
            stream TEXT NOT NULL,
            record_id NOT NULL,
            status TEXT,
            start_time TEXT,
            end_time TEXT,
            duration_seconds REAL,
            rows_processed INTEGER,
            error_message TEXT,
            PRIMARY KEY (stream, record_id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS monitoring_items (
            feed TEXT NOT NULL,
            position INTEGER NOT NULL,
            item_id,
            payload TEXT NOT NULL,  -- JSON object as text
            observed_at TIMESTAMP DEFAULT current_timestamp,
            PRIMARY KEY (feed, position)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS resource_samples (
            sampled_at TEXT PRIMARY KEY,
            payload TEXT NOT NULL  -- dashboard stats JSON
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS terminate_requests (
            request_id INTEGER PRIMARY KEY AUTOINCREMENT,
            pid INTEGER NOT NULL,
            query TEXT,
            requested_at TIMESTAMP DEFAULT current_timestamp
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS ingestion_log (
            file_path TEXT PRIMARY KEY,
            mtime REAL,
            record_count INTEGER,
            ingested_at TIMESTAMP
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS skip_cache (
            file_path TEXT PRIMARY KEY,
            mtime REAL,
            error_type TEXT,
            error_message TEXT,
            skip_until TIMESTAMP
        )
    """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_phase_history_start ON phase_history(stream, start_time)"
    )

    conn.commit()
