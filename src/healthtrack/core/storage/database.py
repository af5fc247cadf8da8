"""SQLite database management for the health tracker record store.

Handles connection lifecycle, schema creation, migrations and transactions.
The schema is passive: no triggers, no stored procedures. Derived values are
computed by the engine and written inside the same transaction as the raw
row that caused them.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

# Decimal quantities are stored as TEXT so they round-trip exactly.
_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS users (
    id         TEXT PRIMARY KEY,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Append-only raw logs, one row per reading, all modalities
CREATE TABLE IF NOT EXISTS measurements (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    modality    TEXT NOT NULL,
    metric      TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    started_at  TEXT,
    value       TEXT NOT NULL,
    unit        TEXT NOT NULL,
    components_json TEXT,
    source      TEXT NOT NULL DEFAULT 'manual',
    notes_enc   TEXT,
    is_anomaly  INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL DEFAULT (datetime('now')),
    CONSTRAINT valid_modality CHECK (modality IN
        ('weight', 'nutrition', 'exercise', 'hydration', 'sleep', 'heart_rate', 'hrv'))
);

CREATE TABLE IF NOT EXISTS food_items (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    brand           TEXT,
    serving_size    TEXT NOT NULL,
    serving_unit    TEXT NOT NULL DEFAULT 'g',
    calories        TEXT NOT NULL DEFAULT '0',
    protein_g       TEXT NOT NULL DEFAULT '0',
    carbohydrates_g TEXT NOT NULL DEFAULT '0',
    fat_g           TEXT NOT NULL DEFAULT '0',
    fiber_g         TEXT NOT NULL DEFAULT '0',
    created_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS recipes (
    id                   TEXT PRIMARY KEY,
    user_id              TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name                 TEXT NOT NULL,
    description          TEXT,
    servings             TEXT NOT NULL DEFAULT '1',
    calories_per_serving TEXT NOT NULL DEFAULT '0.00',
    protein_per_serving  TEXT NOT NULL DEFAULT '0.00',
    carbs_per_serving    TEXT NOT NULL DEFAULT '0.00',
    fat_per_serving      TEXT NOT NULL DEFAULT '0.00',
    fiber_per_serving    TEXT NOT NULL DEFAULT '0.00',
    created_at           TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at           TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS recipe_ingredients (
    id           TEXT PRIMARY KEY,
    recipe_id    TEXT NOT NULL REFERENCES recipes(id) ON DELETE CASCADE,
    food_item_id TEXT NOT NULL REFERENCES food_items(id) ON DELETE CASCADE,
    servings     TEXT NOT NULL DEFAULT '1',
    sort_order   INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (recipe_id, food_item_id)
);

CREATE TABLE IF NOT EXISTS goals (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name          TEXT NOT NULL,
    description   TEXT,
    goal_type     TEXT NOT NULL,
    metric        TEXT NOT NULL,
    target_value  TEXT NOT NULL,
    start_value   TEXT,
    current_value TEXT,
    direction     TEXT NOT NULL DEFAULT 'decreasing',
    start_date    TEXT NOT NULL,
    target_date   TEXT,
    status        TEXT NOT NULL DEFAULT 'active',
    completed_at  TEXT,
    created_at    TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at    TEXT NOT NULL DEFAULT (datetime('now')),
    CONSTRAINT valid_goal_type CHECK (goal_type IN
        ('weight', 'exercise', 'nutrition', 'hydration', 'sleep', 'custom')),
    CONSTRAINT valid_direction CHECK (direction IN ('increasing', 'decreasing')),
    CONSTRAINT valid_status CHECK (status IN ('active', 'completed', 'abandoned', 'paused'))
);

CREATE TABLE IF NOT EXISTS goal_milestones (
    id           TEXT PRIMARY KEY,
    goal_id      TEXT NOT NULL REFERENCES goals(id) ON DELETE CASCADE,
    name         TEXT NOT NULL,
    target_value TEXT,
    percentage   INTEGER NOT NULL,
    achieved_at  TEXT,
    actual_value TEXT,
    created_at   TEXT NOT NULL DEFAULT (datetime('now')),
    CONSTRAINT valid_percentage CHECK (percentage >= 0 AND percentage <= 100)
);

-- Reference data, seeded from YAML at startup
CREATE TABLE IF NOT EXISTS biomarker_ranges (
    name           TEXT PRIMARY KEY,
    display_name   TEXT NOT NULL,
    category       TEXT NOT NULL,
    unit           TEXT NOT NULL,
    low_threshold  TEXT,
    optimal_min    TEXT,
    optimal_max    TEXT,
    high_threshold TEXT,
    description    TEXT
);

CREATE TABLE IF NOT EXISTS biomarker_logs (
    id             TEXT PRIMARY KEY,
    user_id        TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    biomarker_name TEXT NOT NULL REFERENCES biomarker_ranges(name),
    value          TEXT NOT NULL,
    classification TEXT NOT NULL,
    test_date      TEXT NOT NULL,
    lab_name       TEXT,
    notes_enc      TEXT,
    source         TEXT NOT NULL DEFAULT 'manual',
    created_at     TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS heart_rate_zones (
    user_id            TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    max_heart_rate     INTEGER NOT NULL,
    resting_heart_rate INTEGER,
    zone1_min INTEGER NOT NULL, zone1_max INTEGER NOT NULL,
    zone2_min INTEGER NOT NULL, zone2_max INTEGER NOT NULL,
    zone3_min INTEGER NOT NULL, zone3_max INTEGER NOT NULL,
    zone4_min INTEGER NOT NULL, zone4_max INTEGER NOT NULL,
    zone5_min INTEGER NOT NULL, zone5_max INTEGER NOT NULL,
    calculation_method TEXT NOT NULL DEFAULT 'percentage',
    created_at         TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at         TEXT NOT NULL DEFAULT (datetime('now')),
    CONSTRAINT valid_method CHECK (calculation_method IN ('percentage', 'karvonen'))
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common query patterns
CREATE INDEX IF NOT EXISTS idx_measurements_user_modality ON measurements(user_id, modality, recorded_at);
CREATE INDEX IF NOT EXISTS idx_measurements_user_metric   ON measurements(user_id, metric, recorded_at);
CREATE INDEX IF NOT EXISTS idx_recipes_user               ON recipes(user_id);
CREATE INDEX IF NOT EXISTS idx_ingredients_recipe         ON recipe_ingredients(recipe_id);
CREATE INDEX IF NOT EXISTS idx_goals_user_status          ON goals(user_id, status);
CREATE INDEX IF NOT EXISTS idx_milestones_goal            ON goal_milestones(goal_id);
CREATE INDEX IF NOT EXISTS idx_biomarker_logs_user        ON biomarker_logs(user_id, biomarker_name, test_date);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (operation trail, no raw health data)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL DEFAULT (datetime('now')),
    action          TEXT NOT NULL,
    tool_name       TEXT,
    tool_input_hash TEXT,
    entity_id       TEXT,
    duration_ms     REAL,
    status          TEXT NOT NULL DEFAULT 'success',
    error_type      TEXT,
    metadata_json   TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_tool      ON audit_log(tool_name);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class HealthDatabase:
    """SQLite database manager for the health tracker record store.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    Writes go through one shared connection under an internal re-entrant
    lock, and :meth:`transaction` holds that lock for the whole unit of work
    so a raw write and its derived updates commit or roll back together.
    SQLite admits a single writer, so write units are serialized process-wide;
    per-entity ordering on top of that comes from the engine's keyed locks.

    Reads outside the calling thread's own transaction do not take the lock
    for a file-backed database: each thread reads through its own query-only
    connection and sees the last committed state (WAL). In-memory databases
    cannot be shared across connections and always use the locked path.

    Usage::

        db = HealthDatabase(":memory:")
        db.initialize()
        with db.transaction():
            db.execute("INSERT INTO users (id) VALUES (?)", ("u1",))
        rows = db.query("SELECT * FROM users")
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: int | None = None
        self._target = ":memory:"
        self._readers = threading.local()
        self._reader_conns: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return  # Already initialized

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)
        else:
            target = ":memory:"
        self._target = target

        # isolation_level=None: transactions are opened explicitly by transaction()
        self._conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Health database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        # V1: core tables (CREATE IF NOT EXISTS, safe to re-run)
        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        # V2: Audit log table
        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log table")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        row = self.query("SELECT MAX(version) FROM schema_version")[0]
        return row[0] if row[0] is not None else 0

    # ------------------------------------------------------------------
    # Statement execution
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic unit of work.

        Nested calls join the outermost transaction. Any exception rolls the
        whole unit back and is re-raised.
        """
        with self._lock:
            conn = self.connection
            outermost = self._depth == 0
            if outermost:
                conn.execute("BEGIN IMMEDIATE")
                self._owner = threading.get_ident()
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._owner = None
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                        logger.debug("Transaction rolled back")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._owner = None
                    conn.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write statement and return the affected row count."""
        with self._lock:
            return self.connection.execute(sql, params).rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Execute a read statement and return all rows.

        Inside this thread's transaction the read sees its uncommitted writes.
        """
        if self._target != ":memory:" and self._owner != threading.get_ident():
            return self._reader().execute(sql, params).fetchall()
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def _reader(self) -> sqlite3.Connection:
        """This thread's query-only connection, opened on first use."""
        conn = getattr(self._readers, "conn", None)
        if conn is None:
            _ = self.connection  # raises if not initialized
            conn = sqlite3.connect(self._target, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA query_only=ON")
            self._readers.conn = conn
            with self._readers_lock:
                self._reader_conns.append(conn)
        return conn

    def close(self) -> None:
        """Close the database connection."""
        with self._readers_lock:
            for reader in self._reader_conns:
                reader.close()
            self._reader_conns.clear()
            self._readers = threading.local()
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Health database closed")

    def __enter__(self) -> HealthDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
