"""
Database connection management.

Provides SQLite connections, the schema, and the write-transaction primitive
that serializes ledger read-modify-write cycles.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


DEFAULT_DB_PATH = "triage_guard.db"

# Seconds a writer waits for a competing write lock before failing
BUSY_TIMEOUT_SECONDS = 10.0

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS billing_accounts (
        caller_id TEXT PRIMARY KEY,
        balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
        updated_at TEXT,
        customer_id TEXT,
        customer_email TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_transactions (
        id TEXT PRIMARY KEY,
        caller_id TEXT NOT NULL REFERENCES billing_accounts (caller_id),
        type TEXT NOT NULL CHECK (type IN ('topup', 'debit')),
        amount_cents INTEGER NOT NULL,
        balance_after_cents INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        metadata TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_billing_transactions_caller
        ON billing_transactions (caller_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_webhook_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        processed_at TEXT NOT NULL,
        session_id TEXT,
        caller_id TEXT,
        amount_total INTEGER,
        currency TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triage_runs (
        id TEXT PRIMARY KEY,
        caller_id TEXT,
        provider TEXT NOT NULL,
        usage_mode TEXT NOT NULL,
        decision TEXT NOT NULL,
        heuristics TEXT,
        token_usage TEXT,
        cost TEXT,
        warning TEXT,
        timestamp TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_triage_runs_caller
        ON triage_runs (caller_id, timestamp)
    """,
)


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled and row access by name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``billing_transactions`` and ``triage_runs`` are append-only: no UPDATE or
    DELETE is ever issued against them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


@contextmanager
def write_transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection inside an immediate write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so two writers can never both observe the same pre-write balance.
    Commits on normal exit and rolls back on any exception.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
