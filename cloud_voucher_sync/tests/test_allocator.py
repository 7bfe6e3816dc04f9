"""
Tests for SequenceAllocator.

Runs against the in-memory stores from conftest, which keep the same
contracts as the PostgreSQL ones.
"""
import threading
from unittest.mock import Mock

import pytest
from loguru import logger

from cloud_voucher_sync.client import CloudOutcome
from cloud_voucher_sync.errors import (
    CloudRejectedError,
    CommitAfterAcceptError,
    LockTimeoutError,
    SequenceHaltedError,
)
from cloud_voucher_sync.vouchers import VoucherLineItem

from conftest import FakeCloud, rejected, sale_item, unreachable


def _item(key, **fields):
    return VoucherLineItem.from_payload(sale_item(key, **fields))


def _submit(cloud, item):
    return lambda voucher_no: cloud.submit_voucher(item.to_wire(voucher_no))


@pytest.fixture
def log_records():
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


class TestAllocate:
    """Tests for the happy path and ledger reuse."""

    def test_first_allocation(self, allocator, db, cloud):
        item = _item("k1")
        allocation = allocator.allocate(item, _submit(cloud, item))
        assert allocation.voucher_no == "AQNS/001"
        assert not allocation.reused
        assert db.counters[("nepal", "Sales")] == 1
        assert db.ledger["k1"]["voucher_no"] == "AQNS/001"
        assert cloud.documents[0]["voucherno"] == "AQNS/001"

    def test_sequential_numbers(self, allocator, db, cloud):
        numbers = []
        for key in ("k1", "k2", "k3"):
            item = _item(key)
            numbers.append(allocator.allocate(item, _submit(cloud, item)).voucher_no)
        assert numbers == ["AQNS/001", "AQNS/002", "AQNS/003"]
        assert db.counters[("nepal", "Sales")] == 3

    def test_reuse_skips_lock_and_cloud(self, allocator, db, cloud):
        """Test that a committed key returns its number without a new submission."""
        item = _item("k1")
        allocator.allocate(item, _submit(cloud, item))

        allocation = allocator.allocate(item, _submit(cloud, item))
        assert allocation.voucher_no == "AQNS/001"
        assert allocation.reused
        assert len(cloud.documents) == 1
        assert db.counters[("nepal", "Sales")] == 1
        assert db.commits == 1

    def test_sequences_are_independent(self, allocator, db, cloud):
        sale = _item("k1")
        other = _item("k2", vouchertype="Receipt")
        allocator.allocate(sale, _submit(cloud, sale))
        assert allocator.allocate(other, _submit(cloud, other)).voucher_no == "AQNS/001"
        assert db.counters == {("nepal", "Sales"): 1, ("nepal", "Receipt"): 1}

    def test_large_counter(self, allocator, db, cloud):
        db.counters[("nepal", "Sales")] = 999
        item = _item("k1")
        assert allocator.allocate(item, _submit(cloud, item)).voucher_no == "AQNS/1000"


class TestFailures:
    """Tests that failed submissions leave no trace."""

    def test_rejection_leaves_no_trace(self, allocator, db):
        cloud = FakeCloud([rejected("Party ledger missing")])
        item = _item("k1")
        with pytest.raises(CloudRejectedError, match="Party ledger missing"):
            allocator.allocate(item, _submit(cloud, item))
        assert db.counters[("nepal", "Sales")] == 0
        assert "k1" not in db.ledger

    def test_transport_failure_leaves_no_trace(self, allocator, db):
        cloud = FakeCloud([unreachable()])
        item = _item("k1")
        with pytest.raises(CloudRejectedError) as exc_info:
            allocator.allocate(item, _submit(cloud, item))
        assert exc_info.value.transport
        assert db.counters[("nepal", "Sales")] == 0
        assert db.ledger == {}

    def test_candidate_reoffered_after_rejection(self, allocator, db):
        """Test that committed numbers stay gapless across rejected attempts."""
        cloud = FakeCloud([rejected(), rejected()])
        offered = []
        for key in ("a", "b", "c"):
            item = _item(key)
            try:
                allocator.allocate(item, _submit(cloud, item))
            except CloudRejectedError:
                pass
            offered.append(cloud.documents[-1]["voucherno"])
        assert offered == ["AQNS/001", "AQNS/001", "AQNS/001"]
        assert db.ledger["c"]["voucher_no"] == "AQNS/001"
        assert db.counters[("nepal", "Sales")] == 1

    def test_submit_exception_releases_lock(self, allocator, db):
        cloud = FakeCloud([RuntimeError("socket closed")])
        item = _item("k1")
        with pytest.raises(RuntimeError):
            allocator.allocate(item, _submit(cloud, item))
        assert not db.lock_for("nepal", "Sales").locked()
        assert db.counters[("nepal", "Sales")] == 0

    def test_commit_failure_after_accept(self, allocator, db, cloud, log_records):
        """Test that a failed commit after acceptance is critical and burns the number."""
        db.fail_commit = RuntimeError("deadlock detected")
        item = _item("k1")
        with pytest.raises(CommitAfterAcceptError) as exc_info:
            allocator.allocate(item, _submit(cloud, item))
        assert exc_info.value.voucher_no == "AQNS/001"
        assert exc_info.value.idempotency_key == "k1"
        assert db.counters[("nepal", "Sales")] == 1
        assert db.ledger == {}
        assert not db.lock_for("nepal", "Sales").locked()
        critical = [r for r in log_records if r["level"].name == "CRITICAL"]
        assert len(critical) == 1
        assert "AQNS/001" in critical[0]["message"]
        assert "k1" in critical[0]["message"]

    def test_number_not_reoffered_after_commit_failure(self, allocator, db, cloud):
        db.fail_commit_once = RuntimeError("server closed the connection unexpectedly")
        first, second = _item("a"), _item("b")
        with pytest.raises(CommitAfterAcceptError):
            allocator.allocate(first, _submit(cloud, first))

        assert allocator.allocate(second, _submit(cloud, second)).voucher_no == "AQNS/002"
        assert [d["voucherno"] for d in cloud.documents] == ["AQNS/001", "AQNS/002"]
        assert db.counters[("nepal", "Sales")] == 2

    def test_sequence_halts_when_counter_cannot_move(self, allocator, db, cloud, log_records):
        db.fail_commit_once = RuntimeError("server closed the connection unexpectedly")
        allocator.counters.raise_to = Mock(side_effect=RuntimeError("connection is closed"))
        first, second = _item("a"), _item("b")
        with pytest.raises(CommitAfterAcceptError):
            allocator.allocate(first, _submit(cloud, first))

        with pytest.raises(SequenceHaltedError, match="AQNS/001"):
            allocator.allocate(second, _submit(cloud, second))
        assert len(cloud.documents) == 1
        assert not db.lock_for("nepal", "Sales").locked()
        assert any("halted" in r["message"] for r in log_records if r["level"].name == "CRITICAL")

        # Other sequences keep numbering.
        receipt = _item("r", vouchertype="Receipt")
        assert allocator.allocate(receipt, _submit(cloud, receipt)).voucher_no == "AQNS/001"

    def test_lock_timeout(self, allocator, db, cloud):
        allocator.lock_timeout = 0.05
        lock = db.lock_for("nepal", "Sales")
        lock.acquire()
        try:
            item = _item("k1")
            with pytest.raises(LockTimeoutError):
                allocator.allocate(item, _submit(cloud, item))
        finally:
            lock.release()
        assert cloud.documents == []
        assert db.ledger == {}


class TestConcurrency:
    """Tests for serialization per (region, voucher type)."""

    def test_concurrent_allocations_never_share_a_number(self, allocator, db):
        cloud = FakeCloud(delay=0.02)
        results, errors = {}, []

        def worker(key):
            item = _item(key)
            try:
                results[key] = allocator.allocate(item, _submit(cloud, item)).voucher_no
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"k{i}",)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(results.values()) == [f"AQNS/00{i}" for i in range(1, 7)]
        offered = [d["voucherno"] for d in cloud.documents]
        assert len(offered) == len(set(offered)) == 6
        assert db.counters[("nepal", "Sales")] == 6

    def test_same_key_twice_concurrently(self, allocator, db):
        """Test that a double-click commits one number and the loser reuses it."""
        cloud = FakeCloud(delay=0.02)
        results = []

        def worker():
            item = _item("dup")
            results.append(allocator.allocate(item, _submit(cloud, item)))

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert {r.voucher_no for r in results} == {"AQNS/001"}
        assert sorted(r.reused for r in results) == [False, True]
        assert len(cloud.documents) == 1
        assert db.counters[("nepal", "Sales")] == 1

    def test_waits_for_lock_within_timeout(self, allocator, db):
        accepted = CloudOutcome(accepted=True, status_code="200")
        lock = db.lock_for("nepal", "Sales")
        lock.acquire()
        releaser = threading.Timer(0.05, lock.release)
        releaser.start()
        item = _item("k1")
        allocation = allocator.allocate(item, lambda voucher_no: accepted)
        releaser.join()
        assert allocation.voucher_no == "AQNS/001"
