"""SQLite persistence for simulation runs, card statistics and violations.

Tables:
    runs            completed runs, FIFO-evicted once ``max_runs`` is exceeded
    subject_stats   per-card aggregates keyed by normalized card name
    violations      deduplicated violations keyed by fingerprint
    metadata        small JSON values (session ids, counters)

Every public write runs in a single transaction: it is committed on success
and rolled back on any error. Connections are opened per operation, so a
store can be shared by the foreground recorder and the background syncer;
each table has its own lock guarding read-modify-write sequences.

Usage:
    from simharness.db import SimulationStore

    store = SimulationStore("data/simulation/simulation.db")
    run_id = store.save_run(record)
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from simharness.errors import StorageError, StoreUnavailableError
from simharness.metrics import RUNS_EVICTED
from simharness.models import (
    ParticipantSummary,
    RunRecord,
    SubjectStatDelta,
    SubjectStats,
    ViolationRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RUNS = 500

_UNSET = object()

# sqlite3.OperationalError messages that mean the file itself is unusable.
_UNAVAILABLE_MARKERS = (
    "unable to open",
    "disk i/o error",
    "readonly database",
    "file is not a database",
    "database disk image is malformed",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    duration_seconds REAL NOT NULL DEFAULT 0,
    turns INTEGER NOT NULL DEFAULT 0,
    steps INTEGER NOT NULL DEFAULT 0,
    winner INTEGER,
    participants_json TEXT NOT NULL DEFAULT '[]',
    action_counts_json TEXT NOT NULL DEFAULT '{}',
    violations_detected INTEGER NOT NULL DEFAULT 0,
    session_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_runs_timestamp ON runs(timestamp);
CREATE INDEX IF NOT EXISTS idx_runs_winner ON runs(winner);

CREATE TABLE IF NOT EXISTS subject_stats (
    subject_id TEXT PRIMARY KEY,
    play_count INTEGER NOT NULL DEFAULT 0,
    win_count INTEGER NOT NULL DEFAULT 0,
    loss_count INTEGER NOT NULL DEFAULT 0,
    total_kills INTEGER NOT NULL DEFAULT 0,
    total_deaths INTEGER NOT NULL DEFAULT 0,
    total_damage_dealt INTEGER NOT NULL DEFAULT 0,
    runs_in_deck INTEGER NOT NULL DEFAULT 0,
    win_rate INTEGER NOT NULL DEFAULT 0,
    violation_involvements INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_subject_stats_win_rate ON subject_stats(win_rate);
CREATE INDEX IF NOT EXISTS idx_subject_stats_play_count ON subject_stats(play_count);

CREATE TABLE IF NOT EXISTS violations (
    fingerprint TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    first_seen REAL NOT NULL,
    last_seen REAL NOT NULL,
    occurrence_count INTEGER NOT NULL,
    sample_reports_json TEXT NOT NULL DEFAULT '[]',
    synced_to_remote INTEGER NOT NULL DEFAULT 0,
    remote_id TEXT,
    fingerprint_components TEXT
);
CREATE INDEX IF NOT EXISTS idx_violations_occurrence ON violations(occurrence_count);
CREATE INDEX IF NOT EXISTS idx_violations_last_seen ON violations(last_seen);
CREATE INDEX IF NOT EXISTS idx_violations_severity ON violations(severity);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value_json TEXT
);
"""


def _is_unavailable(exc: sqlite3.Error) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _UNAVAILABLE_MARKERS)


def _win_rate(wins: int, losses: int) -> int:
    total = wins + losses
    if total == 0:
        return 0
    # Half-up rounding: 2 wins of 3 is 67, 1 of 8 is 13.
    return int(math.floor(wins * 100 / total + 0.5))


class SimulationStore:
    """Bounded persistent store for one harness instance."""

    def __init__(self, db_path: str | Path, max_runs: int = DEFAULT_MAX_RUNS):
        self.db_path = Path(db_path)
        self.max_runs = max_runs
        self.runs_lock = threading.RLock()
        self.subjects_lock = threading.RLock()
        self.violations_lock = threading.RLock()
        self.metadata_lock = threading.RLock()
        self._init_db()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(
                f"Cannot create store directory: {e}",
                context={"path": str(self.db_path)},
            ) from e
        with self._get_conn() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _get_conn(self, table: str | None = None) -> Iterator[sqlite3.Connection]:
        """Open a connection for one transaction.

        Commits when the block exits cleanly and rolls back otherwise.
        sqlite errors are re-raised as StoreUnavailableError when the file
        cannot be used at all, else as StorageError.
        """
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StoreUnavailableError(
                f"Cannot open simulation store: {e}",
                table=table,
                context={"path": str(self.db_path)},
            ) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            if _is_unavailable(e):
                raise StoreUnavailableError(
                    f"Simulation store unavailable: {e}",
                    table=table,
                    context={"path": str(self.db_path)},
                ) from e
            raise StorageError(f"Store operation failed: {e}", table=table) from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def save_run(self, record: RunRecord) -> int:
        """Insert a run, evict the oldest runs past capacity, bump runCount.

        All three steps share one transaction, so a failure leaves neither a
        half-written run nor an un-evicted overflow.

        Returns:
            The new run's id.
        """
        participants = [p.model_dump(by_alias=True) for p in record.participants]
        with self.runs_lock, self.metadata_lock, self._get_conn("runs") as conn:
            cursor = conn.execute(
                """
                INSERT INTO runs (
                    timestamp, duration_seconds, turns, steps, winner,
                    participants_json, action_counts_json, violations_detected, session_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.timestamp,
                    record.duration_seconds,
                    record.turns,
                    record.steps,
                    record.winner,
                    json.dumps(participants),
                    json.dumps(record.action_counts),
                    record.violations_detected,
                    record.session_id,
                ),
            )
            run_id = cursor.lastrowid

            count = conn.execute("SELECT COUNT(*) FROM runs").fetchone()[0]
            evicted = 0
            if count > self.max_runs:
                evicted = count - self.max_runs
                conn.execute(
                    """
                    DELETE FROM runs WHERE id IN (
                        SELECT id FROM runs ORDER BY timestamp ASC, id ASC LIMIT ?
                    )
                    """,
                    (evicted,),
                )

            row = conn.execute(
                "SELECT value_json FROM metadata WHERE key = 'runCount'"
            ).fetchone()
            run_count = (json.loads(row["value_json"]) if row else 0) + 1
            self._put_metadata(conn, "runCount", run_count)

        if evicted:
            RUNS_EVICTED.inc(evicted)
            logger.debug(f"Evicted {evicted} oldest run(s); store holds {self.max_runs}")
        return run_id

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            timestamp=row["timestamp"],
            duration_seconds=row["duration_seconds"],
            turns=row["turns"],
            steps=row["steps"],
            winner=row["winner"],
            participants=[
                ParticipantSummary.model_validate(p)
                for p in json.loads(row["participants_json"] or "[]")
            ],
            action_counts=json.loads(row["action_counts_json"] or "{}"),
            violations_detected=row["violations_detected"],
            session_id=row["session_id"],
        )

    def get_recent_runs(self, limit: int = 50) -> list[RunRecord]:
        """Most recent runs first."""
        with self._get_conn("runs") as conn:
            rows = conn.execute(
                "SELECT * FROM runs ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def get_run_count(self) -> int:
        with self._get_conn("runs") as conn:
            return conn.execute("SELECT COUNT(*) FROM runs").fetchone()[0]

    # ------------------------------------------------------------------
    # Subject statistics
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_subject(row: sqlite3.Row) -> SubjectStats:
        return SubjectStats(
            subject_id=row["subject_id"],
            play_count=row["play_count"],
            win_count=row["win_count"],
            loss_count=row["loss_count"],
            total_kills=row["total_kills"],
            total_deaths=row["total_deaths"],
            total_damage_dealt=row["total_damage_dealt"],
            runs_in_deck=row["runs_in_deck"],
            win_rate=row["win_rate"],
            violation_involvements=row["violation_involvements"],
        )

    def update_subject_stats(self, deltas: Iterable[SubjectStatDelta]) -> None:
        """Fold one run's per-card deltas into the aggregates."""
        deltas = list(deltas)
        if not deltas:
            return
        with self.subjects_lock, self._get_conn("subject_stats") as conn:
            for delta in deltas:
                row = conn.execute(
                    "SELECT * FROM subject_stats WHERE subject_id = ?",
                    (delta.subject_id,),
                ).fetchone()
                stats = self._row_to_subject(row) if row else SubjectStats(subject_id=delta.subject_id)

                win_count = stats.win_count + int(delta.was_in_winning_deck)
                loss_count = stats.loss_count + int(delta.was_in_losing_deck)
                conn.execute(
                    """
                    INSERT OR REPLACE INTO subject_stats (
                        subject_id, play_count, win_count, loss_count, total_kills,
                        total_deaths, total_damage_dealt, runs_in_deck, win_rate,
                        violation_involvements
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        delta.subject_id,
                        stats.play_count + int(delta.was_played),
                        win_count,
                        loss_count,
                        stats.total_kills + delta.kills,
                        stats.total_deaths + delta.deaths,
                        stats.total_damage_dealt + delta.damage_dealt,
                        stats.runs_in_deck + 1,
                        _win_rate(win_count, loss_count),
                        stats.violation_involvements,
                    ),
                )

    def increment_subject_violation_count(self, subject_id: str) -> None:
        if not subject_id:
            return
        with self.subjects_lock, self._get_conn("subject_stats") as conn:
            conn.execute(
                """
                INSERT INTO subject_stats (subject_id, violation_involvements) VALUES (?, 1)
                ON CONFLICT(subject_id) DO UPDATE SET
                    violation_involvements = violation_involvements + 1
                """,
                (subject_id,),
            )

    def get_subject_stats(self, subject_id: str) -> SubjectStats | None:
        with self._get_conn("subject_stats") as conn:
            row = conn.execute(
                "SELECT * FROM subject_stats WHERE subject_id = ?", (subject_id,)
            ).fetchone()
        return self._row_to_subject(row) if row else None

    def get_all_subject_stats(self) -> list[SubjectStats]:
        with self._get_conn("subject_stats") as conn:
            rows = conn.execute(
                "SELECT * FROM subject_stats ORDER BY subject_id"
            ).fetchall()
        return [self._row_to_subject(row) for row in rows]

    def get_top_subjects_by_win_rate(self, limit: int = 10, min_runs: int = 5) -> list[SubjectStats]:
        with self._get_conn("subject_stats") as conn:
            rows = conn.execute(
                """
                SELECT * FROM subject_stats WHERE runs_in_deck >= ?
                ORDER BY win_rate DESC, runs_in_deck DESC, subject_id LIMIT ?
                """,
                (min_runs, limit),
            ).fetchall()
        return [self._row_to_subject(row) for row in rows]

    def get_worst_subjects_by_win_rate(self, limit: int = 10, min_runs: int = 5) -> list[SubjectStats]:
        with self._get_conn("subject_stats") as conn:
            rows = conn.execute(
                """
                SELECT * FROM subject_stats WHERE runs_in_deck >= ?
                ORDER BY win_rate ASC, runs_in_deck DESC, subject_id LIMIT ?
                """,
                (min_runs, limit),
            ).fetchall()
        return [self._row_to_subject(row) for row in rows]

    # ------------------------------------------------------------------
    # Violations
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_violation(row: sqlite3.Row) -> ViolationRecord:
        return ViolationRecord(
            fingerprint=row["fingerprint"],
            type=row["type"],
            category=row["category"],
            severity=row["severity"],
            message=row["message"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            occurrence_count=row["occurrence_count"],
            sample_reports=json.loads(row["sample_reports_json"] or "[]"),
            synced_to_remote=bool(row["synced_to_remote"]),
            remote_id=row["remote_id"],
            fingerprint_components=row["fingerprint_components"],
        )

    def get_violation(self, fingerprint: str) -> ViolationRecord | None:
        with self._get_conn("violations") as conn:
            row = conn.execute(
                "SELECT * FROM violations WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
        return self._row_to_violation(row) if row else None

    def upsert_violation(self, record: ViolationRecord) -> None:
        """Write a violation record, replacing any row with its fingerprint.

        Callers doing read-modify-write must hold ``violations_lock``.
        """
        with self.violations_lock, self._get_conn("violations") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO violations (
                    fingerprint, type, category, severity, message, first_seen,
                    last_seen, occurrence_count, sample_reports_json,
                    synced_to_remote, remote_id, fingerprint_components
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.fingerprint,
                    record.type,
                    record.category.value,
                    record.severity.value,
                    record.message,
                    record.first_seen,
                    record.last_seen,
                    record.occurrence_count,
                    json.dumps(record.sample_reports, default=str),
                    int(record.synced_to_remote),
                    record.remote_id,
                    record.fingerprint_components,
                ),
            )

    def get_all_violations(self) -> list[ViolationRecord]:
        """All violation records, most frequent first."""
        with self._get_conn("violations") as conn:
            rows = conn.execute(
                "SELECT * FROM violations ORDER BY occurrence_count DESC, last_seen DESC"
            ).fetchall()
        return [self._row_to_violation(row) for row in rows]

    def get_unsynced_violations(self) -> list[ViolationRecord]:
        with self._get_conn("violations") as conn:
            rows = conn.execute(
                """
                SELECT * FROM violations WHERE synced_to_remote = 0
                ORDER BY occurrence_count DESC, last_seen DESC
                """
            ).fetchall()
        return [self._row_to_violation(row) for row in rows]

    def mark_violation_synced(self, fingerprint: str, remote_id: str | None) -> bool:
        """Flag a record as synced. Returns False if the fingerprint is unknown."""
        with self.violations_lock, self._get_conn("violations") as conn:
            cursor = conn.execute(
                """
                UPDATE violations SET synced_to_remote = 1, remote_id = ?
                WHERE fingerprint = ?
                """,
                (None if remote_id is None else str(remote_id), fingerprint),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @staticmethod
    def _put_metadata(conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value_json) VALUES (?, ?)",
            (key, json.dumps(value, default=str)),
        )

    def metadata(self, key: str, value: Any = _UNSET) -> Any:
        """Get ``key`` when called with one argument, else set it to ``value``."""
        if value is _UNSET:
            with self._get_conn("metadata") as conn:
                row = conn.execute(
                    "SELECT value_json FROM metadata WHERE key = ?", (key,)
                ).fetchone()
            return json.loads(row["value_json"]) if row and row["value_json"] is not None else None
        with self.metadata_lock, self._get_conn("metadata") as conn:
            self._put_metadata(conn, key, value)
        return value

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_simulation_stats(self) -> dict[str, Any]:
        """Aggregate view over everything stored."""
        run_count = self.get_run_count()
        recent = self.get_recent_runs(100)
        violations = self.get_all_violations()
        subjects = self.get_all_subject_stats()

        wins = {"player0": 0, "player1": 0, "draw": 0}
        for run in recent:
            if run.winner == 0:
                wins["player0"] += 1
            elif run.winner == 1:
                wins["player1"] += 1
            else:
                wins["draw"] += 1

        average_turns = (
            int(math.floor(sum(r.turns for r in recent) / len(recent) + 0.5)) if recent else 0
        )
        involved = sorted(
            (s for s in subjects if s.violation_involvements > 0),
            key=lambda s: s.violation_involvements,
            reverse=True,
        )[:5]

        return {
            "totalRuns": run_count,
            "recentRuns": len(recent),
            "winDistribution": wins,
            "averageTurns": average_turns,
            "violations": {
                "unique": len(violations),
                "totalOccurrences": sum(v.occurrence_count for v in violations),
                "top": [v.model_dump(mode="json", by_alias=True) for v in violations[:10]],
            },
            "subjects": {
                "tracked": len(subjects),
                "mostInvolved": [s.model_dump(by_alias=True) for s in involved],
            },
        }

    def clear_all(self) -> None:
        """Delete every run, statistic, violation and metadata value."""
        with self.runs_lock, self.subjects_lock, self.violations_lock, self.metadata_lock:
            with self._get_conn() as conn:
                conn.execute("DELETE FROM runs")
                conn.execute("DELETE FROM subject_stats")
                conn.execute("DELETE FROM violations")
                conn.execute("DELETE FROM metadata")
        logger.info(f"Cleared simulation store at {self.db_path}")
