"""
Submission orchestration for the Nepal cloud pathways.

Provides:
- Nepal Sales: numbered, effectively-once submission per line item
- Nepal Purchase: pass-through batch post with retry (source numbers)
- Pull: build Nepal documents from the source API
- CLI entry point
"""
from __future__ import annotations
import json
import sys
from datetime import date
from pathlib import Path
from typing import Any, Optional
from loguru import logger

from .allocator import SequenceAllocator
from .client import CloudClient, extract_statuses
from .config import SyncConfig, configure_logging
from .errors import MissingIdempotencyKey, VoucherSyncError
from .models import SCHEMA_FILE
from .reconcile import backfill_accepted
from .source import SourceClient
from .store import DatabaseStore
from .vouchers import SubmissionResult, VoucherLineItem, build_purchase_voucher, build_sales_item


def _raw_key(raw: Any) -> str:
    if isinstance(raw, dict):
        key = str(raw.get("idempotencyKey") or "").strip()
        if key:
            return key
    return "(missing)"


class VoucherSubmitter:
    """
    Drives a batch of Nepal Sales line items through numbering and submission.

    Items are processed one after another, in input order. One failing
    item never stops the batch; every item gets a result.

    Usage:
        with VoucherSubmitter() as submitter:
            results = submitter.submit_batch(items)
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        client: Optional[CloudClient] = None,
        allocator: Optional[SequenceAllocator] = None,
    ):
        self.config = config or SyncConfig.from_env()
        self.client = client or CloudClient.for_destination("nepal_sale", self.config)
        self.allocator = allocator or SequenceAllocator.from_config(self.config)

    def submit_batch(self, items: list) -> list[SubmissionResult]:
        """
        Submit every item and return one result per item, in order.

        Raises:
            TypeError: If ``items`` is not a list
            psycopg.OperationalError: If the database is unreachable
                before the first item
        """
        if not isinstance(items, list):
            raise TypeError("data must be a list of vouchers")
        self.allocator.ping()

        logger.info(f"Submitting {len(items)} Nepal sales vouchers")
        results = [self.submit_one(raw) for raw in items]

        ok = sum(1 for r in results if r.ok)
        reused = sum(1 for r in results if r.reused)
        logger.info(f"Batch done: {ok} ok ({reused} reused), {len(results) - ok} failed")
        return results

    def submit_one(self, raw: Any) -> SubmissionResult:
        key = _raw_key(raw)
        try:
            item = VoucherLineItem.from_payload(
                raw, self.config.default_region, self.config.default_voucher_type
            )
            allocation = self.allocator.allocate(
                item, lambda voucher_no: self.client.submit_voucher(item.to_wire(voucher_no))
            )
        except MissingIdempotencyKey as e:
            logger.warning(f"Skipping item without idempotency key: {e}")
            return SubmissionResult.failure(key, str(e))
        except VoucherSyncError as e:
            return SubmissionResult.failure(key, str(e))
        except Exception as e:
            logger.exception(f"{key}: unexpected error: {e}")
            return SubmissionResult.failure(key, str(e) or "failed")
        return SubmissionResult.success(key, allocation.voucher_no, reused=allocation.reused)

    def close(self):
        self.client.close()
        self.allocator.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class PurchaseSubmitter:
    """Posts Nepal Purchase documents, which already carry their numbers."""

    def __init__(self, config: Optional[SyncConfig] = None, client: Optional[CloudClient] = None):
        self.config = config or SyncConfig.from_env()
        self.client = client or CloudClient.for_destination("nepal_purchase", self.config)

    def submit_batch(self, documents: list[dict]) -> Any:
        """Post the batch (retrying transport failures) and return the cloud's body."""
        if not isinstance(documents, list):
            raise TypeError("data must be a list of vouchers")
        if not documents:
            return {"data": []}
        logger.info(f"Submitting {len(documents)} Nepal purchase vouchers")
        body = self.client.post_batch(documents)
        accepted = self.client.destination.accept_codes
        statuses = extract_statuses(body)
        ok = sum(1 for s in statuses if str(s.get("statuscode")).strip() in accepted)
        logger.info(f"  Cloud accepted {ok} of {len(documents)} purchase vouchers")
        return body

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def initialize_schema(config: Optional[SyncConfig] = None):
    """Create the counter and ledger tables if they don't exist."""
    with DatabaseStore(config) as store:
        store.execute_ddl(str(SCHEMA_FILE))
    logger.info("Database schema initialized")


def check_connection(config: Optional[SyncConfig] = None) -> dict:
    """Check the database and report which destinations are configured."""
    config = config or SyncConfig.from_env()
    result: dict[str, Any] = {
        "nepal_sale": config.destination("nepal_sale").is_configured(),
        "nepal_purchase": config.destination("nepal_purchase").is_configured(),
    }
    try:
        with DatabaseStore(config) as store:
            store.ping()
        result["database"] = "connected"
    except Exception as e:
        result["database"] = f"failed: {e}"
    return result


def pull_nepal_documents(
    start_date: date,
    end_date: date,
    rate: float,
    config: Optional[SyncConfig] = None,
) -> dict[str, list[dict]]:
    """Fetch Nepal records and build sales items and purchase documents for them."""
    config = config or SyncConfig.from_env()
    with SourceClient(config) as source:
        records = source.fetch_nepal_sales(start_date, end_date)
    logger.info(f"Building documents for {len(records)} Nepal records at rate {rate}")
    purchases = []
    for r in records:
        try:
            purchases.append(build_purchase_voucher(r, rate, prefix=config.purchase_prefix))
        except ValueError as e:
            logger.warning(f"Skipping purchase for sale {r.get('SaleID')}: {e}")
    return {
        "sales": [build_sales_item(r, rate) for r in records],
        "purchases": purchases,
    }


def _load_items(path: str) -> list:
    body = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(body, dict):
        body = body.get("data")
    if not isinstance(body, list):
        raise ValueError(f"{path} must contain a list or {{\"data\": [...]}}")
    return body


def main(argv: Optional[list[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Cloud Voucher Sync - number and push vouchers to the Nepal cloud"
    )
    parser.add_argument(
        "--init-only",
        action="store_true",
        help="Only initialize database schema, don't sync",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Test database connection and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    commands = parser.add_subparsers(dest="command")

    submit = commands.add_parser("submit", help="Submit Nepal sales line items from a JSON file")
    submit.add_argument("file", help="JSON list of line items (or {\"data\": [...]})")

    purchase = commands.add_parser("purchase", help="Submit Nepal purchase documents from a JSON file")
    purchase.add_argument("file", help="JSON list of purchase documents")

    pull = commands.add_parser("pull", help="Fetch Nepal records and build cloud documents")
    pull.add_argument("--from-date", required=True, type=lambda s: date.fromisoformat(s),
                      help="Start date (YYYY-MM-DD)")
    pull.add_argument("--to-date", required=True, type=lambda s: date.fromisoformat(s),
                      help="End date (YYYY-MM-DD)")
    pull.add_argument("--rate", type=float, help="INR to NPR rate (default: NPR_EXCHANGE_RATE)")
    pull.add_argument("--out", help="Write documents to this file instead of stdout")

    reconcile = commands.add_parser("reconcile", help="Record a voucher the cloud already accepted")
    reconcile.add_argument("key", help="Idempotency key")
    reconcile.add_argument("voucher_no", help="Voucher number the cloud holds, e.g. AQNS/118")
    reconcile.add_argument("--region", default=None)
    reconcile.add_argument("--voucher-type", default=None)

    args = parser.parse_args(argv)

    config = SyncConfig.from_env()
    configure_logging(config, verbose=args.verbose)

    try:
        if args.test_connection:
            result = check_connection(config)
            print(f"Connection test: {result}")
            return 0 if result["database"] == "connected" else 1

        if args.init_only:
            initialize_schema(config)
            print("Schema initialized successfully")
            return 0

        if args.command == "submit":
            with VoucherSubmitter(config) as submitter:
                results = submitter.submit_batch(_load_items(args.file))
            print(json.dumps({"results": [r.to_dict() for r in results]}, indent=2))
            return 0 if all(r.ok for r in results) else 1

        if args.command == "purchase":
            with PurchaseSubmitter(config) as submitter:
                body = submitter.submit_batch(_load_items(args.file))
            print(json.dumps(body, indent=2, default=str))
            return 0

        if args.command == "pull":
            rate = args.rate if args.rate is not None else config.exchange_rate
            documents = pull_nepal_documents(args.from_date, args.to_date, rate, config)
            text = json.dumps(documents, indent=2, default=str)
            if args.out:
                Path(args.out).write_text(text, encoding="utf-8")
                logger.info(f"Wrote {len(documents['sales'])} sales items to {args.out}")
            else:
                print(text)
            return 0

        if args.command == "reconcile":
            with SequenceAllocator.from_config(config) as allocator:
                changed = backfill_accepted(
                    allocator,
                    args.key,
                    args.voucher_no,
                    region=args.region or config.default_region,
                    voucher_type=args.voucher_type or config.default_voucher_type,
                )
            print("Backfilled" if changed else "Already recorded")
            return 0

        parser.print_help()
        return 2

    except VoucherSyncError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        return 1


# CLI entry point
if __name__ == "__main__":
    sys.exit(main())
