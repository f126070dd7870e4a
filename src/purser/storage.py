"""
Local storage for ledger, payment, registry and workflow records.

A single SQLite database holds every record type. Writers take the
database lock with BEGIN IMMEDIATE, so read-check-write sequences inside
``Store.transaction()`` are atomic across threads and processes.
Transactions are re-entrant per thread: a component method called inside
an open transaction joins it instead of committing on its own.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS budgets (
        agent_id TEXT PRIMARY KEY,
        wallet_address TEXT NOT NULL,
        max_per_transaction TEXT NOT NULL,
        max_per_session TEXT NOT NULL,
        max_daily TEXT NOT NULL,
        max_total TEXT NOT NULL,
        spent_session TEXT NOT NULL DEFAULT '0',
        spent_today TEXT NOT NULL DEFAULT '0',
        spent_total TEXT NOT NULL DEFAULT '0',
        available TEXT NOT NULL DEFAULT '0',
        reserved TEXT NOT NULL DEFAULT '0',
        last_checked REAL NOT NULL,
        daily_reset_at REAL NOT NULL,
        session_started_at REAL NOT NULL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        payment_id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        workflow_id TEXT,
        tool_id TEXT NOT NULL,
        tool_endpoint TEXT NOT NULL,
        amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        network TEXT NOT NULL,
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        status TEXT NOT NULL,
        tx_hash TEXT,
        evidence TEXT,
        error TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        initiated_at REAL NOT NULL,
        completed_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_agent ON payments (agent_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_payments_session ON payments (agent_id, session_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_workflow ON payments (workflow_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_tool ON payments (tool_id, status)",
    """
    CREATE TABLE IF NOT EXISTS tools (
        tool_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        endpoint TEXT NOT NULL,
        category TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        price_amount TEXT NOT NULL,
        price_currency TEXT NOT NULL,
        price_network TEXT NOT NULL,
        pay_to TEXT NOT NULL,
        total_calls INTEGER NOT NULL DEFAULT 0,
        successful_calls INTEGER NOT NULL DEFAULT 0,
        average_latency_ms INTEGER NOT NULL DEFAULT 0,
        total_spent TEXT NOT NULL DEFAULT '0',
        is_active INTEGER NOT NULL DEFAULT 1,
        last_used REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tools_endpoint ON tools (endpoint)",
    """
    CREATE TABLE IF NOT EXISTS workflows (
        workflow_id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        original_intent TEXT NOT NULL,
        planned_steps TEXT NOT NULL,
        executed_steps TEXT NOT NULL DEFAULT '[]',
        current_step_index INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        pause_requested INTEGER NOT NULL DEFAULT 0,
        final_result TEXT,
        estimated_total_cost TEXT NOT NULL,
        actual_total_cost TEXT NOT NULL DEFAULT '0',
        last_error TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        started_at REAL NOT NULL,
        completed_at REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_workflows_agent ON workflows (agent_id, created_at)",
)


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


class Store:
    """SQLite-backed record store shared by all Purser components."""

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        ensure_private_dir(self.db_path.parent)
        self._local = threading.local()
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Exclusive write transaction; nested calls join the outer one."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return

        conn = self._connect()
        self._local.conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            self._local.conn = None
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Read-only access; reuses the thread's open transaction if any."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None
