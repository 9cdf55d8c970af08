"""Snapshot persistence for live operations.

Supports two backends:
- PostgreSQL (production, set TRANSCRIPTION_DATABASE_URL env var)
- SQLite (local development, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite) for simplicity.
No ORM. One table, one row per live operation, keyed by job id.

Only the tracker writes here. On process start the tracker reads every row
back to recover operations that were interrupted mid-flight.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from src.transcription.schemas import Operation, utc_now_iso

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty for SQLite
DATABASE_URL = os.environ.get("TRANSCRIPTION_DATABASE_URL", "")

# SQLite default path
SQLITE_PATH = Path(
    os.environ.get("TRANSCRIPTION_SQLITE_PATH", str(Path(__file__).parent / "transcription.db"))
)


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, dict):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


class SnapshotStore:
    """Persists one recoverable snapshot per live operation.

    Thread-safety: Postgres uses a ThreadedConnectionPool. SQLite uses
    per-call connections with check_same_thread=False.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        sqlite_path: Optional[Path] = None,
    ):
        self.database_url = DATABASE_URL if database_url is None else database_url
        self.sqlite_path = Path(sqlite_path) if sqlite_path else SQLITE_PATH
        self._initialized = False
        self._pg_pool = None

    def _is_postgres(self) -> bool:
        return self.database_url.startswith("postgres")

    def _get_pg_pool(self):
        """Get or create the Postgres connection pool (lazy)."""
        if self._pg_pool is None:
            import psycopg2.pool
            self._pg_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=5,
                dsn=self.database_url,
            )
            logger.info("PostgreSQL connection pool initialized (1-5 connections)")
        return self._pg_pool

    @contextmanager
    def get_connection(self):
        """Get a database connection (Postgres or SQLite).

        Usage:
            with store.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(...)
                conn.commit()
        """
        if self._is_postgres():
            pool = self._get_pg_pool()
            conn = pool.getconn()
            try:
                yield conn
            finally:
                pool.putconn(conn)
        else:
            conn = sqlite3.connect(str(self.sqlite_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            try:
                yield conn
            finally:
                conn.close()

    def execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        """Execute a SQL statement.

        Args:
            sql: SQL statement (use %s placeholders; adapted for SQLite)
            params: Parameters tuple
            fetch: "none", "one", "all"

        Returns:
            None for "none", dict for "one", list[dict] for "all"
        """
        self.init_db()
        adapted_sql = sql if self._is_postgres() else sql.replace("%s", "?")

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(adapted_sql, params)

            if fetch == "one":
                row = cursor.fetchone()
                if row is None:
                    return None
                if self._is_postgres():
                    columns = [desc[0] for desc in cursor.description]
                    return dict(zip(columns, row))
                return dict(row)
            elif fetch == "all":
                rows = cursor.fetchall()
                if self._is_postgres():
                    columns = [desc[0] for desc in cursor.description]
                    return [dict(zip(columns, row)) for row in rows]
                return [dict(row) for row in rows]

            conn.commit()
            return None

    def init_db(self) -> None:
        """Create the snapshot table if it doesn't exist."""
        if self._initialized:
            return

        if self._is_postgres():
            ddl = """
            CREATE TABLE IF NOT EXISTS transcription_operations (
                job_id VARCHAR(100) PRIMARY KEY,
                status VARCHAR(20) NOT NULL,
                snapshot JSONB NOT NULL,
                updated_at TIMESTAMP DEFAULT NOW()
            );
            """
        else:
            self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            ddl = """
            CREATE TABLE IF NOT EXISTS transcription_operations (
                job_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                snapshot TEXT NOT NULL,
                updated_at TEXT
            );
            """

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(ddl)
            conn.commit()

        self._initialized = True
        backend = "PostgreSQL" if self._is_postgres() else f"SQLite ({self.sqlite_path})"
        logger.info(f"Transcription snapshot store initialized: {backend}")

    # --- Snapshot operations ---

    def save(self, op: Operation) -> None:
        """Upsert the snapshot for one operation."""
        self.execute(
            """INSERT INTO transcription_operations (job_id, status, snapshot, updated_at)
               VALUES (%s, %s, %s, %s)
               ON CONFLICT (job_id) DO UPDATE SET
                   status = excluded.status,
                   snapshot = excluded.snapshot,
                   updated_at = excluded.updated_at""",
            (op.id, op.status.value, _json_dumps(op.model_dump(mode="json")), utc_now_iso()),
        )

    def delete(self, job_id: str) -> None:
        self.execute(
            "DELETE FROM transcription_operations WHERE job_id = %s",
            (job_id,),
        )

    def load(self, job_id: str) -> Optional[Operation]:
        row = self.execute(
            "SELECT snapshot FROM transcription_operations WHERE job_id = %s",
            (job_id,),
            fetch="one",
        )
        if row is None:
            return None
        return Operation.model_validate(_json_loads(row["snapshot"]))

    def load_all(self) -> list[dict]:
        """Return every persisted snapshot as a raw dict (may be malformed)."""
        rows = self.execute(
            "SELECT job_id, snapshot FROM transcription_operations",
            fetch="all",
        )
        snapshots = []
        for row in rows:
            try:
                data = _json_loads(row["snapshot"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Unreadable snapshot for {row['job_id']}: {e}")
                data = {"id": row["job_id"]}
            data.setdefault("id", row["job_id"])
            snapshots.append(data)
        return snapshots
