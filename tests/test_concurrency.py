"""
Concurrency tests

Per-key locks, conflict retries, and many threads writing the same loan.
"""

import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from loan_core.api.dependencies import LoanSystem
from loan_core.concurrency import LockManager, retry_on_conflict
from loan_core.config import LoanCoreConfig
from loan_core.exceptions import (
    ConcurrencyConflict, DuplicateTransaction, InvalidTransition, OverpaymentRejected
)
from loan_core.loans import LoanStatus
from loan_core.storage import InMemoryStorage, SQLiteStorage


def run_concurrently(calls, workers=10):
    """Run callables together; returns (results, errors)"""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []
    guard = threading.Lock()

    def runner(call):
        barrier.wait(timeout=10)
        try:
            value = call()
        except Exception as e:
            with guard:
                errors.append(e)
        else:
            with guard:
                results.append(value)

    with ThreadPoolExecutor(max_workers=max(workers, len(calls))) as pool:
        list(pool.map(runner, calls))
    return results, errors


@pytest.fixture(params=["memory", "sqlite"])
def system(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "concurrency.db")
    loan_system = LoanSystem(config=LoanCoreConfig(database_url="memory://"), storage=storage)
    yield loan_system
    storage.close()


class TestLockManager:

    def test_same_key_serializes(self):
        locks = LockManager()
        active = []
        overlaps = []

        def work():
            with locks.lock("loan:1"):
                if active:
                    overlaps.append(True)
                active.append(1)
                threading.Event().wait(0.01)
                active.pop()

        run_concurrently([work] * 8)
        assert overlaps == []

    def test_lock_is_reentrant(self):
        locks = LockManager()
        with locks.lock("loan:1"):
            with locks.lock_many(["loan:1", "account:1"]):
                assert locks.lock_count() == 2
            assert locks.lock_count() == 1
        assert locks.lock_count() == 0

    def test_released_keys_are_dropped(self):
        locks = LockManager()
        for i in range(50):
            with locks.lock(f"loan:{i}"):
                pass
        assert locks.lock_count() == 0

    def test_waiting_thread_keeps_key(self):
        locks = LockManager()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with locks.lock("loan:1"):
                entered.set()
                release.wait(timeout=5)
                order.append("holder")

        def waiter():
            entered.wait(timeout=5)
            with locks.lock("loan:1"):
                order.append("waiter")

        with ThreadPoolExecutor(max_workers=2) as pool:
            first = pool.submit(holder)
            second = pool.submit(waiter)
            entered.wait(timeout=5)
            threading.Event().wait(0.05)
            release.set()
            first.result()
            second.result()

        assert order == ["holder", "waiter"]
        assert locks.lock_count() == 0

    def test_opposite_order_does_not_deadlock(self):
        locks = LockManager()
        done = []

        def forward():
            with locks.lock_many(["loan:1", "account:1"]):
                done.append("forward")

        def backward():
            with locks.lock_many(["account:1", "loan:1"]):
                done.append("backward")

        run_concurrently([forward, backward] * 5)
        assert len(done) == 10


class TestRetryOnConflict:

    def test_retries_until_success(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConcurrencyConflict("stale")
            return "ok"

        assert retry_on_conflict(flaky, max_retries=3) == "ok"
        assert len(attempts) == 3

    def test_gives_up_after_max_retries(self):
        attempts = []

        def always_stale():
            attempts.append(1)
            raise ConcurrencyConflict("stale")

        with pytest.raises(ConcurrencyConflict):
            retry_on_conflict(always_stale, max_retries=2)
        assert len(attempts) == 3

    def test_other_errors_not_retried(self):
        attempts = []

        def invalid():
            attempts.append(1)
            raise InvalidTransition("nope")

        with pytest.raises(InvalidTransition):
            retry_on_conflict(invalid)
        assert len(attempts) == 1


class TestConcurrentLoanWrites:

    def test_parallel_payments_all_apply(self, system):
        loan = system.loan_manager.create_loan("giving", "1000", {"full_name": "Abdul Karim"})

        calls = [lambda: system.payment_recorder.record_payment(loan.id, "100") for _ in range(10)]
        results, errors = run_concurrently(calls)

        assert errors == []
        final = system.loan_manager.get_loan(loan.id)
        assert final.paid_amount == Decimal("1000.00")
        assert final.status == LoanStatus.COMPLETED
        assert system.ledger.paid_total(loan.id) == Decimal("1000.00")
        assert len(system.ledger.list_by_loan(loan.id)) == 11

    def test_racing_overpayments_rejected_exactly(self, system):
        loan = system.loan_manager.create_loan("giving", "1000", {"full_name": "Abdul Karim"})

        calls = [lambda: system.payment_recorder.record_payment(loan.id, "100") for _ in range(20)]
        results, errors = run_concurrently(calls, workers=20)

        assert len(results) == 10
        assert len(errors) == 10
        assert all(isinstance(e, OverpaymentRejected) for e in errors)
        final = system.loan_manager.get_loan(loan.id)
        assert final.paid_amount == Decimal("1000.00")
        assert final.paid_amount + final.due_amount == final.total_amount

    def test_concurrent_approvals_single_winner(self, system):
        account = system.account_manager.create_account("Operating", opening_balance="0")
        loan = system.loan_manager.create_loan("receiving", "5000", {"full_name": "Lender"})

        calls = [lambda: system.approval_workflow.approve(loan.id, account.id) for _ in range(8)]
        results, errors = run_concurrently(calls)

        assert len(results) == 1
        assert all(isinstance(e, InvalidTransition) for e in errors)
        assert len(system.ledger.list_by_loan(loan.id)) == 1
        assert system.account_manager.get_account(account.id).balance == Decimal("5000.00")

    def test_same_idempotency_key_single_winner(self, system):
        loan = system.loan_manager.create_loan("giving", "1000", {"full_name": "Abdul Karim"})

        calls = [
            lambda: system.payment_recorder.record_payment(loan.id, "100", idempotency_key="rcpt-1")
            for _ in range(8)
        ]
        results, errors = run_concurrently(calls)

        assert len(results) == 1
        assert all(isinstance(e, DuplicateTransaction) for e in errors)
        assert system.loan_manager.get_loan(loan.id).paid_amount == Decimal("100.00")

    def test_parallel_writes_on_different_loans(self, system):
        loans = [
            system.loan_manager.create_loan("giving", "500", {"full_name": f"Borrower {i}"})
            for i in range(5)
        ]

        calls = [
            (lambda loan_id=loan.id: system.payment_recorder.record_payment(loan_id, "50"))
            for loan in loans for _ in range(4)
        ]
        results, errors = run_concurrently(calls)

        assert errors == []
        for loan in loans:
            assert system.loan_manager.get_loan(loan.id).paid_amount == Decimal("200.00")

    def test_concurrent_reversals_single_winner(self, system):
        loan = system.loan_manager.create_loan("giving", "1000", {"full_name": "Abdul Karim"})
        system.payment_recorder.record_payment(loan.id, "1000")
        payment = system.ledger.list_by_loan(loan.id)[-1]

        calls = [lambda: system.payment_recorder.reverse_payment(loan.id, payment.id) for _ in range(8)]
        results, errors = run_concurrently(calls)

        assert len(results) == 1
        assert all(isinstance(e, InvalidTransition) for e in errors)
        final = system.loan_manager.get_loan(loan.id)
        assert final.paid_amount == Decimal("0.00")
        assert final.status == LoanStatus.ACTIVE
        assert system.ledger.paid_total(loan.id) == final.paid_amount
