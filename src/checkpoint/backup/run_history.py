"""Run history for backup cycles, stored in SQLite.

One row per completed cycle plus one row per failed file. Only the most
recent ``MAX_RUNS`` runs are kept; older rows are pruned on insert.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_RUNS = 100


class RunHistory:
    """Thread-safe SQLite store of backup run outcomes."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(str(self.db_path), timeout=10)
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA journal_mode=WAL")
            self._local.connection.execute("PRAGMA synchronous=NORMAL")
            self._local.connection.execute("PRAGMA foreign_keys=ON")
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                project TEXT NOT NULL,
                outcome TEXT NOT NULL,
                exit_code INTEGER NOT NULL,
                succeeded INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                archived INTEGER NOT NULL DEFAULT 0,
                pruned INTEGER NOT NULL DEFAULT 0,
                duration_seconds REAL
            );

            CREATE TABLE IF NOT EXISTS file_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                file_path TEXT NOT NULL,
                error_code TEXT NOT NULL,
                message TEXT,
                suggestion TEXT,
                attempts INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_runs_timestamp
                ON runs(timestamp);
            CREATE INDEX IF NOT EXISTS idx_failures_run
                ON file_failures(run_id);
        """)
        conn.commit()
        logger.debug("Run history initialized at %s", self.db_path)

    def record_run(
        self,
        project: str,
        outcome: str,
        exit_code: int,
        succeeded: int = 0,
        failed: int = 0,
        archived: int = 0,
        pruned: int = 0,
        duration_seconds: float = None,
        failures: list = None,
    ) -> int:
        """Insert a run and its file failures. Returns the run ID."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO runs (
                timestamp, project, outcome, exit_code, succeeded,
                failed, archived, pruned, duration_seconds
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                datetime.now().isoformat(),
                project,
                outcome,
                int(exit_code),
                succeeded,
                failed,
                archived,
                pruned,
                duration_seconds,
            ),
        )
        run_id = cursor.lastrowid
        for f in failures or []:
            conn.execute(
                """
                INSERT INTO file_failures (
                    run_id, file_path, error_code, message, suggestion, attempts
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, f.path, f.error_code, f.message, f.suggestion, f.attempts),
            )
        self._prune(conn)
        conn.commit()
        logger.debug("Recorded %s run for %s (id=%d)", outcome, project, run_id)
        return run_id

    def _prune(self, conn: sqlite3.Connection):
        conn.execute(
            "DELETE FROM runs WHERE id NOT IN "
            "(SELECT id FROM runs ORDER BY id DESC LIMIT ?)",
            (MAX_RUNS,),
        )

    def get_runs(self, limit: int = 20, outcome: str = None) -> list[dict]:
        """Most recent runs first."""
        conn = self._get_connection()
        query = "SELECT * FROM runs WHERE 1=1"
        params = []
        if outcome:
            query += " AND outcome = ?"
            params.append(outcome)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [dict(row) for row in conn.execute(query, params).fetchall()]

    def get_failures(self, run_id: int) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM file_failures WHERE run_id = ? ORDER BY id",
            (run_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def close(self):
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None
