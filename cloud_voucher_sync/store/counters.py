"""
Voucher counter access.

One row per (region, voucher_type, fiscal_year). ``current_no`` is the
last number the cloud accepted and only moves forward.
"""
from __future__ import annotations
from contextlib import contextmanager
from typing import Generator, Optional
from loguru import logger

from ..errors import CounterConsistencyError
from .base import DatabaseStore
from .locks import advisory_lock, lock_name


class CounterStore(DatabaseStore):
    """Reads and advances voucher counters."""

    def _fy(self, fiscal_year: Optional[str]) -> str:
        return self.config.fiscal_year if fiscal_year is None else fiscal_year

    @contextmanager
    def named_lock(self, region: str, voucher_type: str, timeout: float) -> Generator:
        """Hold the numbering lock for (region, voucher_type)."""
        with advisory_lock(self.conn, lock_name(region, voucher_type), region, voucher_type, timeout):
            yield

    def ensure_row(self, region: str, voucher_type: str, fiscal_year: Optional[str] = None):
        """Create a zero counter for the key if it does not exist."""
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.schema}.voucher_counter
                    (region, voucher_type, fiscal_year, current_no)
                VALUES (%s, %s, %s, 0)
                ON CONFLICT (region, voucher_type, fiscal_year) DO NOTHING
                """,
                (region, voucher_type, self._fy(fiscal_year)),
            )

    def read_current(self, region: str, voucher_type: str, fiscal_year: Optional[str] = None) -> int:
        """
        Return the last committed number for the key (0 if none).

        Only meaningful as the basis for a commit while the numbering
        lock for the key is held.
        """
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT current_no
                FROM {self.schema}.voucher_counter
                WHERE region = %s AND voucher_type = %s AND fiscal_year = %s
                """,
                (region, voucher_type, self._fy(fiscal_year)),
            )
            row = cur.fetchone()
            return int(row["current_no"]) if row else 0

    def commit_next(
        self, region: str, voucher_type: str, next_no: int, fiscal_year: Optional[str] = None
    ):
        """
        Set the counter to ``next_no``.

        Raises:
            CounterConsistencyError: If no row was updated (row missing,
                or the counter already reached ``next_no``)
        """
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.voucher_counter
                SET current_no = %s, updated_at = NOW()
                WHERE region = %s AND voucher_type = %s AND fiscal_year = %s
                  AND current_no < %s
                """,
                (next_no, region, voucher_type, self._fy(fiscal_year), next_no),
            )
            if cur.rowcount != 1:
                raise CounterConsistencyError(
                    f"Counter {region}/{voucher_type} not advanced to {next_no} "
                    f"({cur.rowcount} rows affected)"
                )
        logger.debug(f"Counter {region}/{voucher_type} -> {next_no}")

    def raise_to(self, region: str, voucher_type: str, n: int, fiscal_year: Optional[str] = None) -> int:
        """Move the counter up to at least ``n`` and return the resulting value."""
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.schema}.voucher_counter
                SET current_no = GREATEST(current_no, %s), updated_at = NOW()
                WHERE region = %s AND voucher_type = %s AND fiscal_year = %s
                RETURNING current_no
                """,
                (n, region, voucher_type, self._fy(fiscal_year)),
            )
            row = cur.fetchone()
            if not row:
                raise CounterConsistencyError(f"Counter {region}/{voucher_type} does not exist")
            return int(row["current_no"])
