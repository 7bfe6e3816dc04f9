"""
Sequential voucher number allocation.

A number becomes real only once the cloud has accepted a voucher
carrying it. Until then it is a candidate: read under the numbering
lock, shown to the cloud, and thrown away if the cloud says no. The
lock is held from the read until the commit, so two submissions for
the same (region, voucher type) can never be offered the same
candidate.

Per voucher::

    ledger lookup ──found──> reuse number (no lock, no cloud call)
        │
        └─ lock(region, type)
             ledger lookup again ──found──> reuse number
             ensure_row, read_current, candidate = current + 1
             submit(candidate) ──rejected──> raise, nothing persisted
             transaction: commit_next + ledger.record
               └─failed──> raise_to(candidate), else halt the sequence
           unlock (always)
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional
from loguru import logger

from .client import CloudOutcome
from .config import SyncConfig
from .errors import CommitAfterAcceptError, SequenceHaltedError
from .numbering import DEFAULT_PREFIX
from .store import CounterStore, IdempotencyLedger, get_connection
from .vouchers import CandidateAllocation, VoucherLineItem

# Called with the candidate voucher number; must report whether the
# cloud accepted the voucher carrying it.
Submit = Callable[[str], CloudOutcome]


@dataclass(frozen=True)
class Allocation:
    voucher_no: str
    reused: bool = False


class SequenceAllocator:
    """
    Allocates voucher numbers for one (region, voucher type) sequence at a time.

    Usage:
        with SequenceAllocator.from_config(config) as allocator:
            allocation = allocator.allocate(item, submit)
    """

    def __init__(
        self,
        counters: CounterStore,
        ledger: IdempotencyLedger,
        prefix: str = DEFAULT_PREFIX,
        lock_timeout: float = 15.0,
        conn=None,
    ):
        self.counters = counters
        self.ledger = ledger
        self.prefix = prefix
        self.lock_timeout = lock_timeout
        self._conn = conn
        # (region, voucher_type) -> accepted number the counter could not move past
        self._halted: dict[tuple[str, str], str] = {}

    @classmethod
    def from_config(cls, config: Optional[SyncConfig] = None) -> "SequenceAllocator":
        """Connect to the database; counters and ledger share one session."""
        config = config or SyncConfig.from_env()
        conn = get_connection(config)
        return cls(
            CounterStore(config, conn=conn),
            IdempotencyLedger(config, conn=conn),
            prefix=config.sale_prefix,
            lock_timeout=config.lock_timeout,
            conn=conn,
        )

    def ping(self):
        self.counters.ping()

    def lookup(self, idempotency_key: str) -> Optional[str]:
        return self.ledger.lookup(idempotency_key)

    def candidate(self, region: str, voucher_type: str) -> CandidateAllocation:
        """Next number for the key. Caller must hold the numbering lock."""
        self.counters.ensure_row(region, voucher_type)
        current = self.counters.read_current(region, voucher_type)
        return CandidateAllocation.after(current, self.prefix)

    def commit(self, item: VoucherLineItem, candidate: CandidateAllocation):
        """Advance the counter and record the key in one transaction."""
        with self.counters.transaction():
            self.counters.commit_next(item.region, item.voucher_type, candidate.next)
            self.ledger.record(
                item.idempotency_key, item.region, item.voucher_type, candidate.formatted
            )

    def _burn(self, item: VoucherLineItem, candidate: CandidateAllocation):
        """
        Move the counter past a number the cloud holds but the ledger does not.

        If even that fails the sequence is halted for this allocator, so the
        number is never offered again before it is reconciled.
        """
        try:
            self.counters.raise_to(item.region, item.voucher_type, candidate.next)
        except Exception as e:
            self._halted[(item.region, item.voucher_type)] = candidate.formatted
            logger.critical(
                f"Counter {item.region}/{item.voucher_type} could not be moved past "
                f"{candidate.formatted}: {e}. Sequence halted until reconcile."
            )
        else:
            logger.warning(
                f"Counter {item.region}/{item.voucher_type} moved past {candidate.formatted}; "
                f"ledger row for {item.idempotency_key} still missing"
            )

    def resume(self, region: str, voucher_type: str):
        """Lift a halt once the accepted number has been reconciled."""
        if self._halted.pop((region, voucher_type), None):
            logger.info(f"Sequence {region}/{voucher_type} resumed")

    def allocate(self, item: VoucherLineItem, submit: Submit) -> Allocation:
        """
        Give ``item`` a voucher number the cloud has accepted.

        Never retries: a failed item is retried by resubmitting it with
        the same idempotency key.

        Raises:
            LockTimeoutError: If the numbering lock is busy for too long
            CloudRejectedError: If the cloud rejected or could not be reached
            CommitAfterAcceptError: If the cloud accepted but the local
                commit failed
            SequenceHaltedError: If an earlier accepted number for the
                sequence still awaits reconcile
        """
        existing = self.lookup(item.idempotency_key)
        if existing:
            logger.info(f"{item.idempotency_key}: reusing {existing}")
            return Allocation(existing, reused=True)

        with self.counters.named_lock(item.region, item.voucher_type, self.lock_timeout):
            # A concurrent request with the same key may have committed
            # while we waited for the lock.
            existing = self.lookup(item.idempotency_key)
            if existing:
                logger.info(f"{item.idempotency_key}: committed concurrently as {existing}")
                return Allocation(existing, reused=True)

            halted = self._halted.get((item.region, item.voucher_type))
            if halted:
                raise SequenceHaltedError(item.region, item.voucher_type, halted)

            candidate = self.candidate(item.region, item.voucher_type)
            logger.debug(f"{item.idempotency_key}: candidate {candidate.formatted}")

            outcome = submit(candidate.formatted)
            if not outcome.accepted:
                if outcome.transport:
                    logger.warning(
                        f"{item.idempotency_key}: cloud unreachable for {candidate.formatted}, "
                        f"not committed ({outcome.message})"
                    )
                else:
                    logger.warning(
                        f"{item.idempotency_key}: cloud rejected {candidate.formatted} "
                        f"(code {outcome.status_code}): {outcome.message}"
                    )
                outcome.raise_for_rejection()

            try:
                self.commit(item, candidate)
            except Exception as e:
                logger.critical(
                    f"Cloud ACCEPTED {candidate.formatted} for {item.idempotency_key} "
                    f"({item.region}/{item.voucher_type}) but the local commit failed: {e}. "
                    f"Run reconcile before resubmitting this key."
                )
                self._burn(item, candidate)
                raise CommitAfterAcceptError(item.idempotency_key, candidate.formatted, e) from e

        logger.success(f"{item.idempotency_key}: committed {candidate.formatted}")
        return Allocation(candidate.formatted)

    def close(self):
        if self._conn is not None and not self._conn.closed:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
