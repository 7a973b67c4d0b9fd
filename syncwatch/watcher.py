"""Real-time snapshot ingestion using watchdog for file system events."""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from syncwatch.config import SNAPSHOT_DIR

logger = logging.getLogger(__name__)


class _SnapshotEventHandler(FileSystemEventHandler):
    """Signals the worker when a snapshot file is written."""

    def __init__(self, on_change):
        super().__init__()
        self._on_change = on_change

    def _dispatch(self, path) -> None:
        if str(path).endswith(".jsonl"):
            self._on_change()

    def on_modified(self, event):
        if not event.is_directory:
            self._dispatch(event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self._dispatch(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._dispatch(event.dest_path)


class IngestionWorker(threading.Thread):
    """Daemon thread that re-ingests the snapshot directory when it changes.

    Bursts of writes are debounced: ingestion runs at most once per
    ``cooldown`` seconds. A change arriving inside the cooldown is not lost,
    it is picked up by the next wake-up.

    ``status`` is a dict visible to other threads:
      {"state": "idle"/"ingesting", "ready": True/False, "runs": N,
       "last_stats": {...} or None, "last_error": str or None}
    """

    def __init__(
        self,
        snapshot_dir: Path = SNAPSHOT_DIR,
        run_immediately: bool = False,
        cooldown: float = 2.0,
        on_ingested: Optional[Callable[[dict], None]] = None,
    ):
        super().__init__(daemon=True, name="ingestion-worker")
        self.snapshot_dir = Path(snapshot_dir)
        self._run_immediately = run_immediately
        self._cooldown = cooldown
        self._on_ingested = on_ingested
        self._stop_event = threading.Event()
        self._change_event = threading.Event()
        self._pending = False
        self._last_run_time: float = 0.0
        self._observer: Optional[Observer] = None
        self.status: dict = {
            "state": "idle",
            "ready": True,
            "runs": 0,
            "last_stats": None,
            "last_error": None,
        }

    def stop(self):
        self._stop_event.set()
        self._change_event.set()
        if self._observer is not None:
            self._observer.stop()

    def request_refresh(self):
        """Force an ingestion run on the next loop, bypassing the cooldown."""
        self._last_run_time = 0.0
        self._on_fs_change()

    @property
    def is_busy(self) -> bool:
        return self.status.get("state") != "idle"

    def _on_fs_change(self):
        self._pending = True
        self._change_event.set()

    def _start_observer(self):
        if not self.snapshot_dir.exists():
            logger.warning("snapshot directory %s does not exist; not watching", self.snapshot_dir)
            return
        handler = _SnapshotEventHandler(self._on_fs_change)
        self._observer = Observer()
        self._observer.schedule(handler, str(self.snapshot_dir), recursive=True)
        self._observer.start()

    def run_once(self) -> Optional[dict]:
        """Run one ingestion pass and publish its stats."""
        from syncwatch.ingest import run_ingest

        self._pending = False
        self.status = dict(self.status, state="ingesting", ready=False)
        try:
            stats = run_ingest(self.snapshot_dir)
        except Exception as e:
            logger.exception("ingestion run failed")
            self.status = dict(self.status, state="idle", ready=True, last_error=str(e))
            return None
        finally:
            self._last_run_time = time.monotonic()

        self.status = {
            "state": "idle",
            "ready": True,
            "runs": self.status["runs"] + 1,
            "last_stats": stats,
            "last_error": None,
        }
        if self._on_ingested is not None and stats["ingested_files"]:
            self._on_ingested(stats)
        return stats

    def run(self):
        self._start_observer()

        if self._run_immediately:
            self.run_once()

        while not self._stop_event.is_set():
            remaining = self._cooldown - (time.monotonic() - self._last_run_time)
            timeout = remaining if self._pending and remaining > 0 else 60.0
            self._change_event.wait(timeout=timeout)
            self._change_event.clear()

            if self._stop_event.is_set():
                break

            if self._pending and time.monotonic() - self._last_run_time >= self._cooldown:
                self.run_once()

        if self._observer is not None:
            self._observer.join()
