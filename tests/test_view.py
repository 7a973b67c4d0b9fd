"""Tests for MonitorView: applying poll results, stale-on-error, teardown."""

from datetime import datetime, timezone

import pytest

from syncwatch.metrics import RESOURCE_CHANNELS
from syncwatch.scheduler import PollScheduler
from syncwatch.tree import FilterSet
from syncwatch.view import MonitorView


class FakeSource:
    """In-memory stand-in for SqliteFeedSource."""

    def __init__(self):
        self.phases = {
            "orders": [
                {"id": 1, "status": "IN_PROGRESS", "start_time": "2024-01-15T10:00:00Z"},
                {"id": 2, "status": "SUCCESS", "start_time": "2024-01-15T10:00:30Z",
                 "end_time": "2024-01-15T10:00:30Z"},
            ],
        }
        self.items = {
            "queries": [
                {"pid": 101, "datname": "sales", "state": "active", "query": "SELECT * FROM crm.accounts"},
                {"pid": 102, "datname": "billing", "state": "idle", "query": "SELECT 1"},
            ],
            "live": [
                {"id": 1, "db_engine": "PostgreSQL", "schema_name": "public", "status": "SUCCESS"},
                {"id": 2, "db_engine": "PostgreSQL", "schema_name": "audit", "status": "ERROR"},
            ],
        }
        self.history = [
            {"timestamp": "2024-01-15T09:59:00Z", "systemResources": {"cpuUsage": 10}},
            {"timestamp": "2024-01-15T09:59:10Z", "systemResources": {"cpuUsage": 20}},
        ]
        self.sample = {"systemResources": {"cpuUsage": 30}}
        self.failing = set()
        self.terminated = []

    def _check(self, feed):
        if feed in self.failing:
            raise RuntimeError(f"{feed} unavailable")

    def streams(self):
        return sorted(self.phases)

    def fetch_phase_history(self, stream):
        self._check(f"phases:{stream}")
        return list(self.phases.get(stream, []))

    def fetch_items(self, feed):
        self._check(feed)
        return list(self.items.get(feed, []))

    def fetch_resource_history(self, limit=60):
        self._check("resources")
        return self.history[-limit:]

    def fetch_resource_sample(self):
        self._check("resources")
        return self.sample

    def terminate(self, pid):
        self.terminated.append(pid)
        return {"success": True}


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def started(source):
    view = MonitorView(source)
    sched = PollScheduler()
    view.start(sched, fast_interval=5, resource_interval=10)
    return view, sched


class TestStart:
    def test_streams_are_discovered_from_source(self, started):
        view, _ = started
        assert view.streams == ["orders"]

    def test_explicit_streams_are_kept(self, source):
        view = MonitorView(source, streams=["inventory"])
        view.start(PollScheduler())
        assert view.streams == ["inventory"]

    def test_history_is_hydrated(self, started):
        view, _ = started
        assert view.metrics.values("cpu_usage") == [10, 20]
        assert all(view.metrics.length(c) == 2 for c in RESOURCE_CHANNELS)

    def test_one_job_per_feed(self, started):
        _, sched = started
        assert set(sched.status) == {"phases:orders", "queries", "live", "transfer", "performance", "resources"}
        assert sched.job("resources").interval == 10
        assert sched.job("queries").interval == 5

    def test_hydration_failure_is_reported_not_raised(self, source):
        source.failing.add("resources")
        view = MonitorView(source)
        view.start(PollScheduler())

        assert view.error_banner == "resources unavailable"
        assert view.metrics.length("cpu_usage") == 0


class TestStreamDiscovery:
    def test_new_streams_are_polled(self, source, started):
        view, sched = started
        source.phases["invoices"] = [
            {"id": 9, "status": "ERROR", "start_time": "2024-01-15T11:00:00Z", "error_message": "timeout"},
        ]

        assert view.discover_streams() == ["invoices"]
        assert view.streams == ["orders", "invoices"]
        assert sched.job("phases:invoices").interval == 5

        sched.tick(now=0)
        assert [s.final_status for s in view.sessions("invoices")] == ["ERROR"]

    def test_known_streams_are_not_registered_twice(self, started):
        view, _ = started
        assert view.discover_streams() == []
        assert view.streams == ["orders"]

    def test_explicit_streams_are_not_extended(self, source):
        view = MonitorView(source, streams=["orders"])
        view.start(PollScheduler())
        source.phases["invoices"] = []

        assert view.discover_streams() == []
        assert view.streams == ["orders"]

    def test_discovery_failure_is_reported(self, source, started):
        view, _ = started

        def broken():
            raise RuntimeError("cache locked")

        source.streams = broken

        assert view.discover_streams() == []
        assert view.errors["phases"] == "cache locked"

    def test_no_discovery_after_teardown(self, source, started):
        view, sched = started
        view.teardown()
        source.phases["invoices"] = []

        assert view.discover_streams() == []
        assert sched.job("phases:invoices") is None

class TestApply:
    def test_tick_applies_sessions_and_items(self, started):
        view, sched = started
        sched.tick(now=0)

        sessions = view.sessions("orders")
        assert len(sessions) == 1
        assert sessions[0].duration_seconds == 30

        tree, summary = view.tree("queries")
        assert list(tree) == ["sales", "billing"]
        assert summary["total"] == 2

    def test_tree_applies_filters(self, started):
        view, sched = started
        sched.tick(now=0)

        tree, summary = view.tree("live", FilterSet(status="ERROR"))
        assert list(tree["PostgreSQL"]) == ["audit"]
        assert summary["total"] == 1

    def test_resource_tick_appends_one_point_per_channel(self, started):
        view, sched = started
        sched.tick(now=0)

        assert view.metrics.values("cpu_usage") == [10, 20, 30]
        assert all(view.metrics.length(c) == 3 for c in RESOURCE_CHANNELS)

    def test_missing_resource_sample_appends_nothing(self, source, started):
        view, sched = started
        source.sample = None
        sched.tick(now=0)

        assert view.metrics.length("cpu_usage") == 2

    def test_apply_resource_sample_uses_given_time(self, started):
        view, _ = started
        now = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        view.apply_resource_sample({"systemResources": {"cpuUsage": 5}}, now=now)

        assert view.metrics.snapshot("cpu_usage")[-1].timestamp == now

    def test_unknown_feed_raises(self, started):
        view, _ = started
        with pytest.raises(KeyError):
            view.items("jobs")


class TestErrors:
    def test_failure_keeps_stale_state_and_sets_banner(self, source, started):
        view, sched = started
        sched.tick(now=0)

        source.failing.add("queries")
        source.items["queries"] = []
        sched.tick(now=5)

        assert len(view.items("queries")) == 2
        assert view.error_banner == "queries unavailable"

    def test_success_clears_banner(self, source, started):
        view, sched = started
        source.failing.add("queries")
        sched.tick(now=0)
        assert view.error_banner is not None

        source.failing.clear()
        sched.tick(now=5)
        assert view.error_banner is None

    def test_banner_is_first_error(self, source, started):
        view, sched = started
        source.failing.update({"phases:orders", "live"})
        sched.tick(now=0)

        assert view.error_banner == "phases:orders unavailable"
        assert set(view.errors) == {"phases:orders", "live"}


class TestSelection:
    def test_selection_survives_refresh_when_item_remains(self, started):
        view, sched = started
        sched.tick(now=0)
        view.select("queries", "key:101|SELECT * FROM crm.accounts")

        sched.tick(now=5)
        assert view.state.selected == "key:101|SELECT * FROM crm.accounts"

    def test_selection_cleared_when_item_disappears(self, source, started):
        view, sched = started
        sched.tick(now=0)
        view.select("queries", "key:101|SELECT * FROM crm.accounts")

        source.items["queries"] = source.items["queries"][1:]
        sched.tick(now=5)
        assert view.state.selected is None

    def test_selecting_in_another_feed_switches_feed(self, started):
        view, _ = started
        view.select("queries", "key:101|x")
        state = view.select("live", "id:2")

        assert state.feed == "live"
        assert state.selected == "id:2"

    def test_toggle(self, started):
        view, _ = started
        view.toggle("db-sales")
        assert view.state.expanded == {"db-sales"}
        view.toggle("db-sales")
        assert view.state.expanded == frozenset()


class TestTeardown:
    def test_teardown_discards_late_results(self, source):
        class Held:
            def __init__(self):
                self.pending = []

            def submit(self, fn, *args):
                self.pending.append((fn, args))

        executor = Held()
        view = MonitorView(source)
        sched = PollScheduler(executor=executor)
        view.start(sched)
        sched.tick(now=0)
        job = sched.job("queries")

        view.teardown()
        for fn, args in executor.pending:
            fn(*args)

        assert job.discarded == 1
        assert view.items("queries") == []
        assert view.sessions("orders") == []

    def test_teardown_clears_buffers_and_unregisters(self, started):
        view, sched = started
        view.teardown()

        assert not view.live
        assert view.metrics.length("cpu_usage") == 0
        assert sched.status == {}

    def test_apply_after_teardown_is_ignored(self, started):
        view, _ = started
        view.teardown()

        assert view.apply_items("queries", [{"pid": 1}]) is False
        assert view.apply_phases("orders", []) is False
        assert view.apply_resource_sample({}) is False
        view.record_error("queries", RuntimeError("late"))
        assert view.error_banner is None

    def test_teardown_during_resource_apply_discards_the_sample(self, started):
        view, _ = started

        class TearsDown(dict):
            def get(self, key, default=None):
                view.teardown()
                return super().get(key, default)

        applied = view.apply_resource_sample(TearsDown(systemResources={"cpuUsage": 99}))

        assert applied is False
        assert not view.live
        assert view.metrics.length("cpu_usage") == 0

    def test_teardown_during_items_apply_discards_the_snapshot(self, started):
        view, _ = started

        def rows():
            yield {"id": 1, "db_engine": "PostgreSQL"}
            view.teardown()
            yield {"id": 2, "db_engine": "MySQL"}

        assert view.apply_items("live", rows()) is False
        assert view.items("live") == []


class TestCommands:
    def test_terminate_forwards_and_refreshes_queries(self, source, started):
        view, sched = started
        sched.tick(now=0)
        assert sched.tick(now=1) == []

        result = view.terminate(101)

        assert result == {"success": True}
        assert source.terminated == [101]
        assert sched.tick(now=1) == ["queries"]

    def test_metric_snapshot(self, started):
        view, _ = started
        snap = view.metric_snapshot(width=30)

        assert set(snap) == set(RESOURCE_CHANNELS)
        assert snap["cpu_usage"]["levels"] == [0, 7]
        assert len(snap["cpu_usage"]["sparkline"]) == 2
        assert snap["cpu_usage"]["points"][0]["timestamp"] == "2024-01-15T09:59:00Z"

    def test_metric_snapshot_with_other_level_count_has_no_glyphs(self, started):
        view, _ = started
        snap = view.metric_snapshot(level_count=4)

        assert snap["cpu_usage"]["levels"] == [0, 3]
        assert snap["cpu_usage"]["sparkline"] is None

    def test_status(self, started):
        view, _ = started
        status = view.status

        assert status["live"] is True
        assert status["feed"] == "queries"
        assert "queries" in status["jobs"]
