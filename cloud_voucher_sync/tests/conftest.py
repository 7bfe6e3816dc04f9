"""
Shared fixtures: in-memory counter/ledger stores and a scripted cloud.

The fakes honour the same contracts as the PostgreSQL stores: commits are
atomic, counters only move forward, the ledger rejects duplicate keys and
the numbering lock has a bounded wait.
"""
import threading
import time
from collections import defaultdict
from contextlib import contextmanager

import pytest

from cloud_voucher_sync.allocator import SequenceAllocator
from cloud_voucher_sync.client import CloudOutcome
from cloud_voucher_sync.config import Destination, SyncConfig
from cloud_voucher_sync.errors import CounterConsistencyError, LockTimeoutError
from cloud_voucher_sync.sync import VoucherSubmitter


class FakeDatabase:
    def __init__(self):
        self.counters = {}
        self.ledger = {}
        self.locks = defaultdict(threading.Lock)
        self.fail_commit = None
        self.fail_commit_once = None
        self.commits = 0

    def lock_for(self, region, voucher_type):
        return self.locks[(region, voucher_type)]


class FakeCounterStore:
    def __init__(self, db):
        self.db = db

    def ping(self):
        pass

    @contextmanager
    def named_lock(self, region, voucher_type, timeout):
        lock = self.db.lock_for(region, voucher_type)
        if not lock.acquire(timeout=timeout):
            raise LockTimeoutError(region, voucher_type, timeout)
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def transaction(self):
        counters, ledger = dict(self.db.counters), dict(self.db.ledger)
        try:
            yield
        except BaseException:
            self.db.counters, self.db.ledger = counters, ledger
            raise
        self.db.commits += 1

    def ensure_row(self, region, voucher_type, fiscal_year=None):
        self.db.counters.setdefault((region, voucher_type), 0)

    def read_current(self, region, voucher_type, fiscal_year=None):
        return self.db.counters.get((region, voucher_type), 0)

    def commit_next(self, region, voucher_type, next_no, fiscal_year=None):
        key = (region, voucher_type)
        if key not in self.db.counters or self.db.counters[key] >= next_no:
            raise CounterConsistencyError(f"Counter {region}/{voucher_type} not advanced to {next_no}")
        self.db.counters[key] = next_no

    def raise_to(self, region, voucher_type, n, fiscal_year=None):
        key = (region, voucher_type)
        if key not in self.db.counters:
            raise CounterConsistencyError(f"Counter {region}/{voucher_type} does not exist")
        self.db.counters[key] = max(self.db.counters[key], n)
        return self.db.counters[key]


class FakeLedger:
    def __init__(self, db):
        self.db = db

    def lookup(self, idempotency_key):
        row = self.db.ledger.get(idempotency_key)
        return row["voucher_no"] if row else None

    def find_by_number(self, region, voucher_type, voucher_no):
        for key, row in self.db.ledger.items():
            if (row["region"], row["voucher_type"], row["voucher_no"]) == (region, voucher_type, voucher_no):
                return key
        return None

    def record(self, idempotency_key, region, voucher_type, voucher_no):
        if self.db.fail_commit_once:
            error, self.db.fail_commit_once = self.db.fail_commit_once, None
            raise error
        if self.db.fail_commit:
            raise self.db.fail_commit
        if idempotency_key in self.db.ledger:
            raise ValueError(f"duplicate key value violates unique constraint: {idempotency_key}")
        self.db.ledger[idempotency_key] = {
            "region": region,
            "voucher_type": voucher_type,
            "voucher_no": voucher_no,
        }


class FakeCloud:
    """
    Stands in for CloudClient.

    ``script`` is consumed one entry per submission: a CloudOutcome, an
    exception to raise, or a callable taking the document. Once the
    script is exhausted every voucher is accepted.
    """

    def __init__(self, script=None, delay=0.0):
        self.script = list(script or [])
        self.delay = delay
        self.documents = []
        self.destination = Destination("nepal_sale", "http://cloud.test/sale", "token")
        self.closed = False
        self._guard = threading.Lock()

    def submit_voucher(self, document):
        with self._guard:
            self.documents.append(document)
            step = self.script.pop(0) if self.script else None
        if self.delay:
            time.sleep(self.delay)
        if step is None:
            return CloudOutcome(accepted=True, message="Created", status_code="200")
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(document)
        return step

    def close(self):
        self.closed = True


def rejected(message="Ledger not found", code="400"):
    return CloudOutcome(accepted=False, message=message, status_code=code)


def unreachable(message="Request timeout: read timed out"):
    return CloudOutcome(accepted=False, message=message, transport=True)


def sale_item(key, **fields):
    item = {
        "idempotencyKey": key,
        "region": "nepal",
        "vouchertype": "Sales",
        "branchName": "AirIQ Nepal",
        "voucherdate": "2025/01/05",
        "narration": f"AQ-{key}",
        "ledgerAllocation": [
            {"lineno": 1, "ledgerName": "Customer", "amount": "160.00", "drCr": "dr", "description": []},
            {"lineno": 2, "ledgerName": "Domestic Base Fare", "amount": "160.00", "drCr": "cr", "description": []},
        ],
    }
    item.update(fields)
    return item


@pytest.fixture
def config():
    return SyncConfig(
        db_url="postgresql://test/test",
        nepal_sale_url="http://cloud.test/sale",
        nepal_sale_token="token",
        nepal_purchase_url="http://cloud.test/purchase",
        nepal_purchase_token="token",
        default_region="nepal",
        default_voucher_type="Sales",
        sale_prefix="AQNS",
        lock_timeout=1.0,
        retry_attempts=3,
    )


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def allocator(db):
    return SequenceAllocator(FakeCounterStore(db), FakeLedger(db), prefix="AQNS", lock_timeout=1.0)


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def make_submitter(config, allocator):
    def _make(cloud):
        return VoucherSubmitter(config, client=cloud, allocator=allocator)
    return _make
