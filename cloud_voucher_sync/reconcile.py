"""
Repair local numbering state after a commit-after-accept failure.

When the cloud accepts a voucher but the local commit fails, the cloud
holds a number the ledger does not know about. Resubmitting the key
would offer the same candidate again and book a duplicate. Backfilling
records the accepted number against its key and moves the counter past
it, after which a resubmission short-circuits to the ledger.

Usage:
    python -m cloud_voucher_sync reconcile nepal:Sales:1042 AQNS/118
"""
from __future__ import annotations
from loguru import logger

from .allocator import SequenceAllocator
from .errors import VoucherSyncError
from .numbering import format_voucher_no, parse_voucher_no


def backfill_accepted(
    allocator: SequenceAllocator,
    idempotency_key: str,
    voucher_no: str,
    region: str = "nepal",
    voucher_type: str = "Sales",
) -> bool:
    """
    Record a voucher number the cloud already accepted.

    Returns:
        True if the ledger was changed, False if the key was already
        recorded with this number

    Raises:
        VoucherSyncError: If the key or the number is already recorded
            against something else
    """
    n = parse_voucher_no(voucher_no, allocator.prefix)
    # Stored in canonical form so the number-uniqueness checks compare like with like
    voucher_no = format_voucher_no(n, allocator.prefix)
    counters, ledger = allocator.counters, allocator.ledger

    with counters.named_lock(region, voucher_type, allocator.lock_timeout):
        existing = ledger.lookup(idempotency_key)
        if existing == voucher_no:
            logger.info(f"{idempotency_key} already recorded as {voucher_no}")
            return False
        if existing:
            raise VoucherSyncError(
                f"{idempotency_key} is recorded as {existing}, refusing to backfill {voucher_no}"
            )
        owner = ledger.find_by_number(region, voucher_type, voucher_no)
        if owner:
            raise VoucherSyncError(f"{voucher_no} already belongs to {owner}")

        counters.ensure_row(region, voucher_type)
        with counters.transaction():
            current = counters.raise_to(region, voucher_type, n)
            ledger.record(idempotency_key, region, voucher_type, voucher_no)
    allocator.resume(region, voucher_type)

    logger.success(f"Backfilled {idempotency_key} -> {voucher_no} (counter {region}/{voucher_type} at {current})")
    return True
