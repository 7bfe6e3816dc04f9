"""
Idempotency ledger access.

Append-only: rows are inserted in the same transaction that advances
the counter and are never updated or deleted.
"""
from __future__ import annotations
from typing import Optional

from .base import DatabaseStore


class IdempotencyLedger(DatabaseStore):
    """Maps idempotency keys to the voucher numbers the cloud accepted."""

    def lookup(self, idempotency_key: str) -> Optional[str]:
        """Return the committed voucher number for the key, or None."""
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT voucher_no FROM {self.schema}.voucher_idempotency WHERE idempotency_key = %s",
                (idempotency_key,),
            )
            row = cur.fetchone()
            return row["voucher_no"] if row else None

    def find_by_number(self, region: str, voucher_type: str, voucher_no: str) -> Optional[str]:
        """Return the idempotency key that owns a voucher number, or None."""
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT idempotency_key FROM {self.schema}.voucher_idempotency
                WHERE region = %s AND voucher_type = %s AND voucher_no = %s
                """,
                (region, voucher_type, voucher_no),
            )
            row = cur.fetchone()
            return row["idempotency_key"] if row else None

    def record(self, idempotency_key: str, region: str, voucher_type: str, voucher_no: str):
        """
        Insert a ledger row.

        A second insert for the same key violates the primary key and
        raises ``psycopg.errors.UniqueViolation``.
        """
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.schema}.voucher_idempotency
                    (idempotency_key, region, voucher_type, voucher_no)
                VALUES (%s, %s, %s, %s)
                """,
                (idempotency_key, region, voucher_type, voucher_no),
            )
