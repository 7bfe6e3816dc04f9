"""
Cloud Voucher Sync - push accounting vouchers to the regional cloud APIs.

Pulls sale records from the source accounting API, builds the documents
each cloud expects, and submits them. For Nepal Sales every voucher gets
a gapless sequential number (AQNS/001, AQNS/002, ...) that is committed
only after the cloud accepts it, and every line item carries an
idempotency key so retries never book a voucher twice.

Key Features:
- Sequential numbering serialized per (region, voucher type)
- Idempotent resubmission through an append-only ledger
- Per-item results: one bad voucher never fails the batch
- Reconciliation for vouchers the cloud accepted but we failed to record
- HTTP API for the admin front-end and a CLI for operators

Usage:
    # Create tables
    python -m cloud_voucher_sync --init-only

    # Submit line items
    python -m cloud_voucher_sync submit vouchers.json

    # Serve the API
    uvicorn --factory cloud_voucher_sync.api:create_app
"""

__version__ = "1.0.0"

from .config import SyncConfig
from .numbering import format_voucher_no
from .sync import VoucherSubmitter, PurchaseSubmitter

__all__ = ["SyncConfig", "VoucherSubmitter", "PurchaseSubmitter", "format_voucher_no", "__version__"]
