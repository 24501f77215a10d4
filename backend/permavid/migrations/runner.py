"""Schema migrations for databases created by older PermaVid releases.

Each module in `versions/` is named `<number>_<name>.py` and defines
`upgrade(connection)`. Applied numbers are recorded in `schema_migrations`;
every migration runs in its own transaction, so a failing one leaves the
earlier ones applied and is retried on the next start.
"""
from pathlib import Path
from typing import List, Tuple
import importlib.util
import logging

from sqlalchemy import text

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "versions"

_CREATE_TRACKING_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
"""


def get_applied_version(connection) -> int:
    """Highest applied migration number, 0 for a database never migrated."""
    row = connection.execute(
        text("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1")
    ).fetchone()
    return int(row[0]) if row else 0


def discover_migrations(versions_dir: Path = MIGRATIONS_DIR) -> List[Tuple[int, Path]]:
    """(number, path) of every migration module, lowest number first."""
    found = []
    for path in versions_dir.glob("*.py"):
        prefix = path.stem.split("_", 1)[0]
        if path.name.startswith("_") or not prefix.isdigit():
            continue
        found.append((int(prefix), path))
    return sorted(found)


def _load_upgrade(version: int, path: Path):
    spec = importlib.util.spec_from_file_location(f"permavid_migration_{version:03d}", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    upgrade = getattr(module, "upgrade", None)
    if upgrade is None:
        raise RuntimeError(f"Migration {path.name} does not define upgrade(connection)")
    return upgrade


def run_migrations(engine, versions_dir: Path = MIGRATIONS_DIR) -> int:
    """Apply every migration newer than the recorded version. Returns how many ran."""
    with engine.begin() as conn:
        conn.execute(text(_CREATE_TRACKING_TABLE))
        current = get_applied_version(conn)

    if not versions_dir.is_dir():
        logger.info(f"No migrations folder at {versions_dir}, skipping")
        return 0

    pending = [(v, p) for v, p in discover_migrations(versions_dir) if v > current]
    for version, path in pending:
        upgrade = _load_upgrade(version, path)
        logger.info(f"Applying migration {path.stem}")
        with engine.begin() as conn:
            upgrade(conn)
            conn.execute(
                text("INSERT INTO schema_migrations (version, name) VALUES (:v, :n)"),
                {"v": version, "n": path.stem},
            )
    return len(pending)
