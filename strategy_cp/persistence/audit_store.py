"""Append-only SQLite audit trail for specs, plans, transitions and outcomes."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import orjson

from ..errors import PersistenceError
from ..logging.config import get_logger
from ..models.plan import ExecutionPlan
from ..state.models import OutcomeEvent, TransitionRecord
from ..utils.time import utc_now

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS spec_versions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        author TEXT,
        spec_data TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        UNIQUE(strategy_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS compile_attempts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        fingerprint TEXT,
        success INTEGER NOT NULL,
        diagnostics TEXT NOT NULL,
        attempted_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plans (
        fingerprint TEXT PRIMARY KEY,
        compiler_version TEXT NOT NULL,
        risk_grade TEXT,
        plan_data TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transitions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instance_id TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        prior_state TEXT NOT NULL,
        event TEXT NOT NULL,
        new_state TEXT NOT NULL,
        cause TEXT,
        plan_fingerprint TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outcomes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instance_id TEXT NOT NULL,
        plan_fingerprint TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        flagged INTEGER NOT NULL,
        payload TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS halt_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        operator TEXT,
        reason TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_attempts_strategy ON compile_attempts(strategy_id)",
    "CREATE INDEX IF NOT EXISTS idx_transitions_instance ON transitions(instance_id)",
    "CREATE INDEX IF NOT EXISTS idx_outcomes_instance ON outcomes(instance_id)",
)


def _dumps(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_SORT_KEYS).decode()


class AuditStore:
    """SQLite-based audit persistence layer."""

    def __init__(self, db_path: str = "strategy_cp.db"):
        self.db_path = Path(db_path)
        self.logger = get_logger("audit.store")
        self._lock = threading.Lock()
        self._closed = False

        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        try:
            with self._get_connection() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Cannot initialize audit store: {e}", operation="init", target=str(self.db_path)
            ) from e

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            self.logger.error("Database error", error=str(e), db_path=str(self.db_path))
            raise
        finally:
            if conn:
                conn.close()

    def _write(self, operation: str, sql: str, params: tuple) -> int:
        if self._closed:
            raise PersistenceError("Audit store is closed", operation=operation, target=str(self.db_path))
        with self._lock:
            try:
                with self._get_connection() as conn:
                    cursor = conn.execute(sql, params)
                    conn.commit()
                    return cursor.lastrowid
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Audit write failed: {e}", operation=operation, target=str(self.db_path)
                ) from e

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._get_connection() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Audit read failed: {e}", operation="read", target=str(self.db_path)
            ) from e

    def record_spec(self, strategy_id: str, version: int, author: str,
                    spec_data: dict[str, Any]) -> int:
        """Store an accepted spec version. Re-recording a version is ignored."""
        return self._write(
            "record_spec",
            """
            INSERT OR IGNORE INTO spec_versions (strategy_id, version, author, spec_data, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (strategy_id, version, author, _dumps(spec_data), utc_now().isoformat()),
        )

    def record_attempt(self, strategy_id: str, version: int, fingerprint: Optional[str],
                       diagnostics: list[dict[str, str]]) -> int:
        """Store one compilation attempt."""
        return self._write(
            "record_attempt",
            """
            INSERT INTO compile_attempts (
                strategy_id, version, fingerprint, success, diagnostics, attempted_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (strategy_id, version, fingerprint, int(fingerprint is not None),
             _dumps(diagnostics), utc_now().isoformat()),
        )

    def record_plan(self, plan: ExecutionPlan) -> None:
        """Store plan content by fingerprint. Existing fingerprints are kept."""
        self._write(
            "record_plan",
            """
            INSERT OR IGNORE INTO plans (fingerprint, compiler_version, risk_grade, plan_data, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (plan.fingerprint, plan.compiler_version, plan.risk_grade.value,
             _dumps(plan.to_canonical()), utc_now().isoformat()),
        )

    def record_transition(self, instance_id: str, record: TransitionRecord) -> int:
        return self._write(
            "record_transition",
            """
            INSERT INTO transitions (
                instance_id, timestamp, prior_state, event, new_state, cause, plan_fingerprint
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (instance_id, record.timestamp.isoformat(), record.prior_state.value,
             record.event.value, record.new_state.value, record.cause, record.plan_fingerprint),
        )

    def record_outcome(self, event: OutcomeEvent, flagged: bool) -> int:
        return self._write(
            "record_outcome",
            """
            INSERT INTO outcomes (instance_id, plan_fingerprint, timestamp, flagged, payload, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (event.instance_id, event.plan_fingerprint, event.timestamp.isoformat(),
             int(flagged), _dumps(event.payload or {}), utc_now().isoformat()),
        )

    def record_halt(self, action: str, reason: str, operator: Optional[str] = None) -> int:
        """Store a global halt or halt clearance."""
        return self._write(
            "record_halt",
            "INSERT INTO halt_events (action, operator, reason, timestamp) VALUES (?, ?, ?, ?)",
            (action, operator, reason, utc_now().isoformat()),
        )

    def get_spec(self, strategy_id: str, version: int) -> Optional[dict[str, Any]]:
        rows = self._read(
            "SELECT spec_data FROM spec_versions WHERE strategy_id = ? AND version = ?",
            (strategy_id, version),
        )
        return orjson.loads(rows[0]["spec_data"]) if rows else None

    def get_plan(self, fingerprint: str) -> Optional[dict[str, Any]]:
        rows = self._read("SELECT plan_data FROM plans WHERE fingerprint = ?", (fingerprint,))
        return orjson.loads(rows[0]["plan_data"]) if rows else None

    def get_attempts(self, strategy_id: str) -> list[dict[str, Any]]:
        rows = self._read(
            "SELECT * FROM compile_attempts WHERE strategy_id = ? ORDER BY id", (strategy_id,)
        )
        return [
            {
                "strategy_id": row["strategy_id"],
                "version": row["version"],
                "fingerprint": row["fingerprint"],
                "success": bool(row["success"]),
                "diagnostics": orjson.loads(row["diagnostics"]),
                "attempted_at": row["attempted_at"],
            }
            for row in rows
        ]

    def get_transitions(self, instance_id: str) -> list[dict[str, Any]]:
        rows = self._read(
            "SELECT * FROM transitions WHERE instance_id = ? ORDER BY id", (instance_id,)
        )
        return [
            {
                "timestamp": row["timestamp"],
                "prior_state": row["prior_state"],
                "event": row["event"],
                "new_state": row["new_state"],
                "cause": row["cause"],
                "plan_fingerprint": row["plan_fingerprint"],
            }
            for row in rows
        ]

    def get_outcomes(self, instance_id: str, flagged_only: bool = False) -> list[dict[str, Any]]:
        sql = "SELECT * FROM outcomes WHERE instance_id = ?"
        if flagged_only:
            sql += " AND flagged = 1"
        rows = self._read(sql + " ORDER BY id", (instance_id,))
        return [
            {
                "instance_id": row["instance_id"],
                "plan_fingerprint": row["plan_fingerprint"],
                "timestamp": row["timestamp"],
                "flagged": bool(row["flagged"]),
                "payload": orjson.loads(row["payload"]) if row["payload"] else {},
            }
            for row in rows
        ]

    def get_stats(self) -> dict[str, int]:
        """Row counts per table."""
        stats = {}
        for table in ("spec_versions", "compile_attempts", "plans", "transitions",
                      "outcomes", "halt_events"):
            stats[table] = self._read(f"SELECT COUNT(*) FROM {table}")[0][0]
        return stats

    def close(self) -> None:
        """Refuse further writes. Connections are per call, so nothing stays open."""
        self._closed = True
