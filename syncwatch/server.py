"""Flask REST API."""

from flask import Flask, jsonify, request

from syncwatch.config import SPARKLINE_LEVELS, SPARKLINE_WIDTH
from syncwatch.feeds import CommandError, FeedError
from syncwatch.sessions import max_duration
from syncwatch.tree import FEEDS, FilterSet, tree_to_dict
from syncwatch.version import get_version_info

app = Flask(__name__)

# Set by __main__.py so the API can read view and worker state
_view = None
_worker = None


def set_view(view):
    global _view
    _view = view


def set_worker(worker):
    global _worker
    _worker = worker


@app.errorhandler(CommandError)
def _command_error(e):
    return jsonify({"error": str(e)}), e.status


@app.errorhandler(FeedError)
def _feed_error(e):
    return jsonify({"error": str(e), "feed": e.feed}), 503


def _require_view():
    if _view is None:
        raise FeedError("view", "monitoring view not started")
    return _view


def _int_arg(name: str, default):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise CommandError(f"{name} must be an integer") from None


def _unknown_feed(feed: str):
    return jsonify({"error": f"unknown feed {feed!r}", "feeds": list(FEEDS)}), 404


@app.route("/api/status")
def api_status():
    status = {"view": None, "worker": None}
    if _view is not None:
        status["view"] = _view.status
    if _worker is not None:
        status["worker"] = _worker.status
    return jsonify(status)


@app.route("/api/version")
def api_version():
    return jsonify(get_version_info())


@app.route("/api/streams")
def api_streams():
    view = _require_view()
    return jsonify({"streams": list(view.streams)})


@app.route("/api/sessions")
def api_sessions():
    view = _require_view()
    stream = request.args.get("stream")
    if not stream:
        if not view.streams:
            return jsonify({"stream": None, "sessions": [], "max_duration": 1, "error": view.error_banner})
        stream = view.streams[0]
    elif stream not in view.streams:
        return jsonify({"error": f"unknown stream {stream!r}"}), 404

    sessions = view.sessions(stream)
    return jsonify(
        {
            "stream": stream,
            "sessions": [s.to_dict() for s in sessions],
            "max_duration": max_duration(sessions),
            "error": view.error_banner,
        }
    )


@app.route("/api/tree/<feed>")
def api_tree(feed):
    if feed not in FEEDS:
        return _unknown_feed(feed)
    view = _require_view()
    filters = FilterSet.from_mapping(request.args)
    tree, summary = view.tree(feed, filters)
    state = view.state
    return jsonify(
        {
            "feed": feed,
            "filters": filters.active(),
            "tree": tree_to_dict(tree),
            "summary": summary,
            "expanded": sorted(state.expanded),
            "selected": state.selected if state.feed == feed else None,
            "error": view.error_banner,
        }
    )


@app.route("/api/tree/<feed>/toggle", methods=["POST"])
def api_tree_toggle(feed):
    if feed not in FEEDS:
        return _unknown_feed(feed)
    view = _require_view()
    key = (request.get_json(silent=True) or {}).get("key")
    if not key:
        raise CommandError("key is required")
    state = view.toggle(str(key))
    return jsonify({"expanded": sorted(state.expanded)})


@app.route("/api/tree/<feed>/select", methods=["POST"])
def api_tree_select(feed):
    if feed not in FEEDS:
        return _unknown_feed(feed)
    view = _require_view()
    key = (request.get_json(silent=True) or {}).get("key")
    state = view.select(feed, str(key) if key else None)
    return jsonify({"feed": state.feed, "selected": state.selected})


@app.route("/api/metrics")
def api_metrics():
    view = _require_view()
    width = _int_arg("width", SPARKLINE_WIDTH)
    level_count = _int_arg("levels", SPARKLINE_LEVELS)
    if level_count < 1:
        raise CommandError("levels must be at least 1")
    return jsonify(
        {
            "capacity": view.metrics.capacity,
            "channels": view.metric_snapshot(width=width, level_count=level_count),
            "error": view.error_banner,
        }
    )


@app.route("/api/queries/<pid>/terminate", methods=["POST"])
def api_terminate(pid):
    view = _require_view()
    return jsonify(view.terminate(pid))
