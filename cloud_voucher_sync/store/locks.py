"""Session-level PostgreSQL advisory locks with a bounded wait."""
from __future__ import annotations
from contextlib import contextmanager
from typing import Generator
from psycopg import errors as pg_errors
from loguru import logger

from ..errors import LockTimeoutError


def lock_name(region: str, voucher_type: str) -> str:
    return f"lock:{region}:{voucher_type}"


@contextmanager
def advisory_lock(conn, name: str, region: str, voucher_type: str, timeout: float) -> Generator:
    """
    Hold an exclusive advisory lock on ``name`` for the body of the block.

    ``conn`` must be in autocommit mode: the lock belongs to the session
    and outlives the transactions run while it is held. It is released
    even if the body raises.

    Raises:
        LockTimeoutError: If the lock is not granted within ``timeout`` seconds
    """
    with conn.cursor() as cur:
        # set_config() because SET cannot take bound parameters
        cur.execute(
            "SELECT set_config('lock_timeout', %s, false)", (f"{max(1, int(timeout * 1000))}ms",)
        )
        try:
            cur.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (name,))
        except pg_errors.LockNotAvailable as e:
            logger.warning(f"Lock {name} not granted within {timeout:g}s")
            raise LockTimeoutError(region, voucher_type, timeout) from e
        finally:
            cur.execute("SELECT set_config('lock_timeout', '0', false)")
    logger.debug(f"Acquired {name}")
    try:
        yield
    finally:
        # A dead session has already dropped the lock; keep the body's error
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (name,))
        except pg_errors.Error as e:
            logger.error(f"Could not release {name}: {e}")
        else:
            logger.debug(f"Released {name}")
