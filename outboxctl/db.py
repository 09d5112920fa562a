import sqlite3
from contextlib import contextmanager
from typing import Optional

from .config import DEFAULT_CONFIG, Settings

# Seconds a connection waits on another writer's lock before raising "database is locked".
BUSY_TIMEOUT = 5.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS events_outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    company_id INTEGER,
    driver_id INTEGER,
    request_id INTEGER,
    ticket_id INTEGER,
    audience_type TEXT,
    audience_id INTEGER,
    event_key TEXT,
    metadata TEXT,
    queue_status TEXT NOT NULL DEFAULT 'pending',
    queued_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_queue ON events_outbox(queue_status, id);

CREATE TABLE IF NOT EXISTS jobs_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    run_at TEXT NOT NULL,
    locked_by TEXT,
    locked_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    idempotency_key TEXT UNIQUE,
    source_event_id INTEGER UNIQUE,
    CHECK (attempts >= 0 AND attempts <= max_attempts),
    CHECK (status <> 'processing' OR (locked_by IS NOT NULL AND locked_at IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_jobs_fetch ON jobs_queue(status, run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_lock ON jobs_queue(locked_at);
CREATE INDEX IF NOT EXISTS idx_jobs_type ON jobs_queue(job_type);

CREATE TABLE IF NOT EXISTS worker_heartbeat (
    worker_name TEXT PRIMARY KEY,
    last_seen TEXT NOT NULL,
    status TEXT,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def resolve_db_path(path: Optional[str] = None) -> str:
    return path or Settings.from_env().db_path


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(resolve_db_path(path), timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection):
    """
    Run a block under BEGIN IMMEDIATE.

    SQLite takes the database write lock up front, so a select followed by an update
    inside the block cannot interleave with another connection's writes. Commits on
    normal exit, rolls back on any exception.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
