"""Version and deployment information for syncwatch."""

import subprocess
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path

from syncwatch import config

__version__ = "0.1.0"

PACKAGE_DIR = Path(__file__).resolve().parent


def installed_version() -> str:
    """Version of the installed distribution, else the source tree's."""
    try:
        return metadata.version("syncwatch")
    except metadata.PackageNotFoundError:
        return __version__


def source_commit(path: Path = PACKAGE_DIR) -> str:
    """Short commit of the checkout syncwatch runs from ("unknown" outside git)."""
    try:
        return (
            subprocess.check_output(
                ["git", "rev-parse", "--short", "HEAD"], cwd=path, stderr=subprocess.DEVNULL
            )
            .decode()
            .strip()
        ) or "unknown"
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def get_version_info() -> dict:
    """Get version, commit, build date and the cache locations in use."""
    built = datetime.fromtimestamp(Path(__file__).stat().st_mtime, tz=timezone.utc)
    return {
        "version": installed_version(),
        "commit": source_commit(),
        "build_date": built.isoformat().replace("+00:00", "Z"),
        "db_path": str(config.DB_PATH),
        "snapshot_dir": str(config.SNAPSHOT_DIR),
    }
