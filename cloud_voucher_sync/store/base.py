"""
Base database store utilities.

Provides connection management and schema setup shared by the counter
and ledger stores.
"""
from __future__ import annotations
import psycopg
from psycopg.rows import dict_row
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional
from loguru import logger
from ..config import SyncConfig


def get_connection(config: Optional[SyncConfig] = None):
    """
    Create a database connection.

    Autocommit is on: statements outside ``transaction()`` take effect
    immediately, and session-level advisory locks survive across them.
    """
    config = config or SyncConfig.from_env()
    conn = psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)
    return conn


class DatabaseStore:
    """
    Base class for database access.

    Stores built with the same ``conn`` share one session, so their
    writes can be grouped in a single ``transaction()`` and they see the
    same advisory locks.
    """

    def __init__(self, config: Optional[SyncConfig] = None, conn=None):
        self.config = config or SyncConfig.from_env()
        self._conn = conn
        self._owns_conn = conn is None

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            if not self._owns_conn:
                raise psycopg.InterfaceError("shared connection is closed")
            self._conn = get_connection(self.config)
        return self._conn

    @property
    def schema(self) -> str:
        return self.config.db_schema

    def close(self):
        """Close database connection if this store opened it."""
        if self._owns_conn and self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @contextmanager
    def transaction(self) -> Generator:
        """Commit on success, roll back on exception."""
        with self.conn.transaction():
            yield

    def ping(self):
        """Fail fast if the database is unreachable."""
        with self.conn.cursor() as cur:
            cur.execute("SELECT 1")

    def ensure_schema(self):
        """Create schema if it doesn't exist."""
        with self.conn.cursor() as cur:
            cur.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")

    def execute_ddl(self, ddl_path: str):
        """Execute DDL from a SQL file, substituting the configured schema."""
        ddl_file = Path(ddl_path)
        if not ddl_file.exists():
            raise FileNotFoundError(f"DDL file not found: {ddl_path}")

        ddl = ddl_file.read_text(encoding="utf-8").replace("{schema}", self.schema)
        with self.conn.cursor() as cur:
            cur.execute(ddl)
        logger.info(f"Executed DDL from {ddl_path}")
