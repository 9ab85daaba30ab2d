from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

from .models import StageStatus, WorkflowStage
from .utils import utc_now_iso


@dataclass(slots=True)
class RunRecord:
    run_id: str
    config_id: str
    stage: WorkflowStage
    last_error: str | None
    started_at: str
    finished_at: str | None


@dataclass(slots=True)
class StageEvent:
    run_id: str
    stage: WorkflowStage
    status: StageStatus
    message: str
    timestamp: str


def _row_to_run(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        run_id=row["run_id"],
        config_id=row["config_id"],
        stage=WorkflowStage(row["stage"]),
        last_error=row["last_error"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


class RunStore:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        # Written from the workflow thread, read from the caller's thread.
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    config_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    last_error TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                );

                CREATE TABLE IF NOT EXISTS stage_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(run_id),
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_runs_started_at
                    ON runs(started_at);
                CREATE INDEX IF NOT EXISTS idx_stage_events_run
                    ON stage_events(run_id, id);
                """
            )
            self.conn.commit()

    def start_run(self, run_id: str, config_id: str) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO runs(run_id, config_id, stage, last_error, started_at, finished_at)
                VALUES (?, ?, ?, NULL, ?, NULL)
                """,
                (run_id, config_id, WorkflowStage.IDLE.value, utc_now_iso()),
            )
            self.conn.commit()

    def add_stage_event(self, run_id: str, stage: WorkflowStage, status: StageStatus, message: str) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO stage_events(run_id, stage, status, message, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (run_id, stage.value, status.value, message, utc_now_iso()),
            )
            self.conn.execute("UPDATE runs SET stage = ? WHERE run_id = ?", (stage.value, run_id))
            self.conn.commit()

    def finish_run(self, run_id: str, stage: WorkflowStage, last_error: str | None) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE runs SET stage = ?, last_error = ?, finished_at = ? WHERE run_id = ?",
                (stage.value, last_error, utc_now_iso(), run_id),
            )
            self.conn.commit()

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return _row_to_run(row)

    def list_runs(self, limit: int = 20) -> list[RunRecord]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_run(row) for row in rows]

    def list_stage_events(self, run_id: str) -> list[StageEvent]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM stage_events WHERE run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
        return [
            StageEvent(
                run_id=row["run_id"],
                stage=WorkflowStage(row["stage"]),
                status=StageStatus(row["status"]),
                message=row["message"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]
