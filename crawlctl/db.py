import os
import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG
from .errors import StorageUnavailable

DB_FILE = os.environ.get("CRAWLCTL_DB", "commands.sqlite")

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS commands (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    payload BLOB NOT NULL,
    status INTEGER NOT NULL DEFAULT 0,
    kind TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    claimed_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_commands_status_id ON commands(status, id);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    path = path or DB_FILE
    try:
        # Each worker thread opens its own connection; the busy timeout covers
        # short write transactions from peers.
        conn = sqlite3.connect(path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise StorageUnavailable(f"Cannot open command store at {path}: {e}") from e
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    except sqlite3.Error as e:
        raise StorageUnavailable(f"Cannot initialize command store at {path or DB_FILE}: {e}") from e
    finally:
        conn.close()
