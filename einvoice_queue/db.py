import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import DB_FILE, DEFAULT_CONFIG

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    owner_id TEXT,
    priority INTEGER NOT NULL,
    status TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    config TEXT NOT NULL,
    progress TEXT NOT NULL,
    result TEXT,
    cancellation TEXT,
    claim_token TEXT,
    picked_by TEXT,
    not_before TEXT,
    cancel_deadline TEXT,
    retry_of TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_id);

CREATE TABLE IF NOT EXISTS pending_index (
    job_id TEXT PRIMARY KEY,
    priority INTEGER NOT NULL,
    seq INTEGER NOT NULL,
    not_before TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_order ON pending_index(priority DESC, seq ASC);

CREATE TABLE IF NOT EXISTS retry_history (
    job_id TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    error TEXT NOT NULL,
    error_kind TEXT NOT NULL,
    failed_at TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    PRIMARY KEY (job_id, attempt)
);

CREATE TABLE IF NOT EXISTS dead_letter (
    job_id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    last_error TEXT,
    failed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None, check_same_thread: bool = True) -> sqlite3.Connection:
    # Autocommit mode; writers open their own BEGIN IMMEDIATE via transaction()
    conn = sqlite3.connect(
        path or DB_FILE, timeout=30, isolation_level=None, check_same_thread=check_same_thread
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(path: Optional[str] = None) -> None:
    conn = connect_db(path)
    try:
        conn.executescript(SCHEMA)
        with transaction(conn):
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Write transaction holding the database's reserved lock until commit."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")
