"""Exceptions raised while numbering and submitting vouchers."""
from __future__ import annotations
from typing import Optional


class VoucherSyncError(Exception):
    """Base class for all voucher sync failures."""
    pass


class MissingIdempotencyKey(VoucherSyncError):
    """Raised when a line item arrives without an idempotency key."""

    def __init__(self, message: str = "idempotencyKey required"):
        super().__init__(message)


class LockTimeoutError(VoucherSyncError):
    """Raised when the numbering lock could not be taken in time."""

    def __init__(self, region: str, voucher_type: str, timeout: float):
        self.region = region
        self.voucher_type = voucher_type
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for numbering lock {region}/{voucher_type}"
        )


class CloudRejectedError(VoucherSyncError):
    """Raised when the cloud did not accept a voucher (rejected or unreachable)."""

    def __init__(self, message: str, status_code: Optional[str] = None, transport: bool = False):
        self.status_code = status_code
        self.transport = transport
        super().__init__(message)


class CloudTransportError(VoucherSyncError):
    """Raised when the cloud could not be reached or answered with garbage."""
    pass


class CounterConsistencyError(VoucherSyncError):
    """Raised when a counter update touches no row."""
    pass


class CommitAfterAcceptError(VoucherSyncError):
    """
    The cloud accepted a voucher but the local commit failed.

    The cloud now holds ``voucher_no`` while the ledger does not. Repair
    with ``python -m cloud_voucher_sync reconcile`` before resubmitting.
    """

    def __init__(self, idempotency_key: str, voucher_no: str, cause: BaseException):
        self.idempotency_key = idempotency_key
        self.voucher_no = voucher_no
        super().__init__(
            f"Cloud accepted {voucher_no} but local commit failed: {cause}"
        )


class SequenceHaltedError(VoucherSyncError):
    """
    Raised for a sequence whose counter could not be moved past a number
    the cloud accepted. Numbering resumes after ``reconcile``.
    """

    def __init__(self, region: str, voucher_type: str, voucher_no: str):
        self.region = region
        self.voucher_type = voucher_type
        self.voucher_no = voucher_no
        super().__init__(
            f"Sequence {region}/{voucher_type} halted pending reconcile of {voucher_no}"
        )


class SourceAPIError(VoucherSyncError):
    """Raised when the source accounting API cannot be read."""
    pass


class NoDataFound(VoucherSyncError):
    """Raised when the source API reports no vouchers for the range."""
    pass
