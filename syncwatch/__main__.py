"""CLI entry point: syncwatch serve / ingest / watch / sessions / reset."""

import logging
import os
import time

import click

from syncwatch.config import get_streams


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity.",
)
def cli(log_level: str):
    """syncwatch: live monitoring for database sync pipelines."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _refresh_all(scheduler, view=None):
    if view is not None:
        view.discover_streams()
    for feed in scheduler.status:
        scheduler.request_now(feed)


@cli.command()
@click.option("--port", type=int, default=None, help="HTTP port (defaults to SYNCWATCH_PORT).")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option(
    "--stream",
    "streams",
    multiple=True,
    help="Operation stream to reconstruct (repeatable). Defaults to every stream in the cache.",
)
@click.option("--no-watch", is_flag=True, default=False, help="Do not watch the snapshot directory.")
def serve(port, host: str, streams: tuple[str, ...], no_watch: bool):
    """Start the poll scheduler, the monitoring view and the JSON API."""
    from werkzeug.serving import make_server

    from syncwatch.config import SERVER_PORT
    from syncwatch.db import get_writer
    from syncwatch.feeds import SqliteFeedSource
    from syncwatch.scheduler import PollScheduler
    from syncwatch.server import app, set_view, set_worker
    from syncwatch.view import MonitorView
    from syncwatch.watcher import IngestionWorker

    get_writer()

    scheduler = PollScheduler()
    views = []
    worker = None
    if not no_watch:
        worker = IngestionWorker(
            run_immediately=True,
            on_ingested=lambda _stats: _refresh_all(scheduler, views[0] if views else None),
        )
        set_worker(worker)
        worker.start()
        # Streams are discovered from the cache, so let the first pass land.
        if not streams:
            while worker.status["runs"] == 0 and worker.status["last_error"] is None and worker.is_alive():
                time.sleep(0.1)

    view = MonitorView(SqliteFeedSource(), streams=get_streams(streams))
    view.start(scheduler)
    views.append(view)
    set_view(view)
    scheduler.start()

    port = port or SERVER_PORT
    server = make_server(host, port, app, threaded=True)
    click.echo(f"Serving on http://{host}:{port} (streams: {', '.join(view.streams) or 'none'})")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()
        view.teardown()
        scheduler.stop()
        if worker is not None:
            worker.stop()


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Re-ingest all files, ignoring the ingestion log.")
@click.option("--snapshots", default=None, help="Snapshot directory (defaults to SYNCWATCH_SNAPSHOTS).")
def ingest(force: bool, snapshots):
    """Run a one-shot incremental ingestion of all snapshot files."""
    from syncwatch.config import SNAPSHOT_DIR
    from syncwatch.ingest import reset_ingestion_log, run_ingest

    if force:
        reset_ingestion_log()
        click.echo("Cleared ingestion log, all files will be re-ingested.")

    snapshot_dir = os.path.expanduser(snapshots) if snapshots else SNAPSHOT_DIR
    stats = run_ingest(snapshot_dir)
    click.echo(
        f"Done. "
        f"{stats['ingested_files']}/{stats['total_files']} files ingested, "
        f"{stats['total_records']} records "
        f"({stats['skipped_files']} skipped, {stats['failed_files']} failed). "
        f"DB totals: {stats['phase_records_in_db']} phase records in {stats['streams']} streams."
    )


@cli.command()
@click.option("--snapshots", default=None, help="Snapshot directory (defaults to SYNCWATCH_SNAPSHOTS).")
def watch(snapshots):
    """Watch the snapshot directory and ingest on every change."""
    from syncwatch.config import SNAPSHOT_DIR
    from syncwatch.watcher import IngestionWorker

    snapshot_dir = os.path.expanduser(snapshots) if snapshots else SNAPSHOT_DIR
    click.echo(f"Watching {snapshot_dir}")
    worker = IngestionWorker(snapshot_dir=snapshot_dir, run_immediately=True)
    worker.start()
    try:
        worker.join()
    except KeyboardInterrupt:
        worker.stop()


@cli.command()
@click.option("--stream", required=True, help="Operation stream name.")
@click.option("--limit", type=int, default=20, show_default=True, help="Sessions to print.")
@click.option(
    "--strategy",
    type=click.Choice(["first", "nearest"]),
    default=None,
    help="Matching strategy (defaults to SYNCWATCH_MATCH_STRATEGY).",
)
def sessions(stream: str, limit: int, strategy):
    """Print the reconstructed execution timeline of one stream."""
    from syncwatch.config import MATCH_STRATEGY
    from syncwatch.feeds import FeedError, SqliteFeedSource
    from syncwatch.sessions import format_duration, max_duration, phase_split, reconstruct

    try:
        rows = SqliteFeedSource().fetch_phase_history(stream)
    except FeedError as e:
        raise click.ClickException(str(e)) from e

    result = reconstruct(rows, strategy=strategy or MATCH_STRATEGY)
    if not result:
        click.echo(f"No phase records for stream {stream!r}.")
        return

    longest = max_duration(result)
    for session in result[:limit]:
        started = session.start_time.isoformat() if session.start_time else "?"
        flow = " → ".join(session.status_flow)
        bar_width = max(1, round(session.duration_seconds / longest * 30))
        waited, _final = phase_split(session)
        waited_width = round(bar_width * waited / 100)
        bar = "░" * waited_width + "█" * (bar_width - waited_width)
        click.echo(f"{started}  {format_duration(session.duration_seconds):>12}  {bar:<30}  {flow}")
        if session.error_message:
            click.echo(f"    error: {session.error_message}")


@cli.command()
def reset():
    """Delete the snapshot cache."""
    from syncwatch.config import DB_PATH

    if DB_PATH.exists():
        DB_PATH.unlink()
        click.echo(f"Deleted {DB_PATH}")
    else:
        click.echo("No database to reset.")


if __name__ == "__main__":
    cli()
