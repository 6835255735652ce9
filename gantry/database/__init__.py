"""SQLite run store for gantry.

One file holds the ``runs`` table. Every connection runs in WAL mode so the
API can read snapshots while a worker thread writes them.
"""
from pathlib import Path
import sqlite3
from typing import Iterator, Optional
from contextlib import contextmanager
import logging

from gantry.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Bumped whenever schema.sql changes shape
SCHEMA_VERSION = 1

BUSY_TIMEOUT_MS = 30000


class Database:
    """Run store file: schema bootstrap plus per-call connections."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._bootstrap()

    def _bootstrap(self) -> None:
        """Create the runs table on first use and refuse files from a newer gantry."""
        with self.get_connection() as conn:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if version > SCHEMA_VERSION:
                raise ConfigurationError(
                    f"Run store {self.db_path} has schema version {version}, "
                    f"this gantry understands up to {SCHEMA_VERSION}"
                )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript((Path(__file__).parent / "schema.sql").read_text(encoding="utf-8"))
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
        logger.info(f"Run store ready at {self.db_path} (schema v{SCHEMA_VERSION})")

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection with Row results; uncommitted work is rolled back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT_MS / 1000)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Run store error on {self.db_path}: {e}")
            raise
        finally:
            conn.close()


def init_db(db_path: Optional[str] = None) -> Database:
    """Open the run store at ``db_path`` (GANTRY_DB_PATH when omitted)."""
    if db_path is None:
        from gantry.config import Config
        db_path = Config.DB_PATH
    return Database(db_path)
