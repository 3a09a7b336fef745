"""
SQLite-backed run journal.
Records each task run and the per-object outcome so administrators can see
later which objects a run reported on or changed.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger("m365_admin_toolkit.journal")


class RunJournal:
    """
    Persistent journal backed by SQLite.
    Connection-per-call; runs are sequential so no locking is needed.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_db(self):
        """Initialize the journal schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_log (
                    run_id TEXT PRIMARY KEY,
                    task TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    completed_at REAL,
                    status TEXT DEFAULT 'running',
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS outcomes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    target TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detail TEXT,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_outcomes_run
                ON outcomes(run_id)
            """)
            conn.commit()

    def start_run(self, run_id: str, task: str, mode: str, metadata: Optional[dict] = None):
        """Record the start of a run."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO run_log (run_id, task, mode, started_at, status, metadata)
                VALUES (?, ?, ?, ?, 'running', ?)
                """,
                (run_id, task, mode, time.time(), json.dumps(metadata or {}, default=str)),
            )
            conn.commit()

    def record_outcomes(self, run_id: str, outcomes: list[tuple[str, str, str]]):
        """Store (target, status, detail) tuples for a run."""
        if not outcomes:
            return
        now = time.time()
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO outcomes (run_id, target, status, detail, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(run_id, target, status, detail, now) for target, status, detail in outcomes],
            )
            conn.commit()
        logger.debug(f"Journaled {len(outcomes)} outcomes for run {run_id}")

    def record_outcome(self, run_id: str, target: str, status: str, detail: str = ""):
        self.record_outcomes(run_id, [(target, status, detail)])

    def complete_run(self, run_id: str, status: str = "completed"):
        """Record run completion."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE run_log SET completed_at = ?, status = ?
                WHERE run_id = ?
                """,
                (time.time(), status, run_id),
            )
            conn.commit()

    def get_outcomes(self, run_id: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT target, status, detail, timestamp FROM outcomes
                WHERE run_id = ? ORDER BY id
                """,
                (run_id,),
            ).fetchall()
        return [
            {"target": r[0], "status": r[1], "detail": r[2], "timestamp": r[3]}
            for r in rows
        ]

    def get_run_history(self, limit: int = 10) -> list[dict]:
        """Retrieve recent runs, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, task, mode, started_at, completed_at, status, metadata
                FROM run_log ORDER BY started_at DESC, rowid DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            {
                "run_id": r[0],
                "task": r[1],
                "mode": r[2],
                "started_at": r[3],
                "completed_at": r[4],
                "status": r[5],
                "metadata": json.loads(r[6]) if r[6] else {},
            }
            for r in rows
        ]
