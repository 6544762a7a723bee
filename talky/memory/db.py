# talky/memory/db.py

import sqlite3
from pathlib import Path
from typing import Union

# Writers wait this long for a competing transaction before failing
BUSY_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Return a SQLite connection in autocommit mode.
    Transactions are opened explicitly by the repository (BEGIN IMMEDIATE).
    Uses Row factory for dict-like access. Caller is responsible for closing.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: Union[str, Path]) -> None:
    """
    Initialize the database schema if it does not exist.
    Safe to call multiple times.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    try:
        cur = conn.cursor()

        # prompt_records: one governing prompt per user id, never deleted
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS prompt_records (
                user_id TEXT PRIMARY KEY,
                prompt TEXT NOT NULL DEFAULT '',
                flush_failures INTEGER NOT NULL DEFAULT 0,
                last_flush_size INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        # modifications: append-only history; pending = 1 while awaiting a regeneration
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS modifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                type TEXT NOT NULL,
                description TEXT NOT NULL,
                pending INTEGER NOT NULL DEFAULT 1,
                consumed_at TEXT,
                FOREIGN KEY (user_id) REFERENCES prompt_records (user_id)
            )
            """
        )

        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_modifications_user_pending
            ON modifications (user_id, pending)
            """
        )
    finally:
        conn.close()
