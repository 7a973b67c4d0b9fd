"""Tests for the watchdog ingestion worker (without starting the observer)."""

import importlib
import json
import os
from pathlib import Path
from types import SimpleNamespace

from syncwatch.watcher import IngestionWorker, _SnapshotEventHandler


def _reload(db_path: Path):
    os.environ["SYNCWATCH_DB"] = str(db_path)
    import syncwatch.config as cfg
    import syncwatch.db as db_mod
    import syncwatch.ingest as ingest_mod

    for mod in (cfg, db_mod, ingest_mod):
        importlib.reload(mod)


def _event(path, is_directory=False, dest=None):
    return SimpleNamespace(src_path=path, dest_path=dest or path, is_directory=is_directory)


class TestEventHandler:
    def test_jsonl_changes_signal(self):
        calls = []
        handler = _SnapshotEventHandler(lambda: calls.append(1))

        handler.on_modified(_event("/snaps/queries.jsonl"))
        handler.on_created(_event("/snaps/phases/orders.jsonl"))
        handler.on_moved(_event("/snaps/.tmp123", dest="/snaps/live.jsonl"))

        assert len(calls) == 3

    def test_other_changes_are_ignored(self):
        calls = []
        handler = _SnapshotEventHandler(lambda: calls.append(1))

        handler.on_modified(_event("/snaps/notes.txt"))
        handler.on_created(_event("/snaps/phases", is_directory=True))
        handler.on_moved(_event("/snaps/live.jsonl", dest="/snaps/live.jsonl.bak"))

        assert calls == []


class TestRunOnce:
    def test_run_once_ingests_and_reports(self, tmp_path):
        _reload(tmp_path / "test.sqlite")
        snaps = tmp_path / "snapshots"
        snaps.mkdir()
        (snaps / "queries.jsonl").write_text(json.dumps({"pid": 1}) + "\n")
        seen = []

        worker = IngestionWorker(snapshot_dir=snaps, on_ingested=seen.append)
        stats = worker.run_once()

        assert stats["ingested_files"] == 1
        assert worker.status["runs"] == 1
        assert worker.status["ready"] is True
        assert worker.status["last_stats"] == stats
        assert seen == [stats]
        assert not worker.is_busy

    def test_callback_only_fires_when_something_was_ingested(self, tmp_path):
        _reload(tmp_path / "test.sqlite")
        snaps = tmp_path / "snapshots"
        snaps.mkdir()
        (snaps / "queries.jsonl").write_text(json.dumps({"pid": 1}) + "\n")
        seen = []

        worker = IngestionWorker(snapshot_dir=snaps, on_ingested=seen.append)
        worker.run_once()
        worker.run_once()

        assert len(seen) == 1
        assert worker.status["runs"] == 2

    def test_missing_directory_ingests_nothing(self, tmp_path):
        _reload(tmp_path / "test.sqlite")
        worker = IngestionWorker(snapshot_dir=tmp_path / "missing")

        stats = worker.run_once()
        assert stats["total_files"] == 0

    def test_stop_before_start(self, tmp_path):
        worker = IngestionWorker(snapshot_dir=tmp_path)
        worker.stop()
        assert worker._stop_event.is_set()
