"""
Unit Tests for the Ledger Service

Tests cover:
1. Credit and debit flow
2. Idempotency (duplicate prevention)
3. Global and per-gym balance invariants
4. Concurrent debits
5. Rollback on storage faults
"""

import threading
from uuid import uuid4

import pytest

from ledger.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    DuplicateApplicationError,
    InsufficientBalanceError,
    InvalidAmountError,
    TransientFailureError,
    UnavailableError,
)
from ledger.models import TransactionKind
from ledger.service import LedgerService
from ledger.storage import StorageFault

from conftest import ACCOUNT_ID, GYM_ID, OTHER_ACCOUNT_ID, OTHER_GYM_ID


def log_total(ledger, account_id, gym_id=None):
    return sum(t["amount"] for t in ledger.storage.transactions_for(account_id, gym_id))


class TestApplyFlow:
    """Tests for crediting and debiting an account."""

    def test_credit_updates_balance_and_log(self, ledger):
        """A credit moves the balance and appends one entry."""
        transaction = ledger.apply(ACCOUNT_ID, 100, TransactionKind.EARN_SESSION, "session-1")

        assert transaction.amount == 100
        assert transaction.kind == TransactionKind.EARN_SESSION
        assert transaction.balance_after == 100
        assert transaction.reference_id == "session-1"
        assert ledger.get_balance(ACCOUNT_ID).global_balance == 100
        assert ledger.get_balance(ACCOUNT_ID).total_entries == 1

    def test_debit_then_insufficient(self, ledger):
        """100 - 60 leaves 40; a second -60 is rejected and leaves 40."""
        ledger.apply(ACCOUNT_ID, 100, TransactionKind.EARN_SESSION, "session-1")

        debit = ledger.apply(ACCOUNT_ID, -60, TransactionKind.SPEND_REDEMPTION, "r1")
        assert debit.amount == -60
        assert ledger.get_balance(ACCOUNT_ID).global_balance == 40

        with pytest.raises(InsufficientBalanceError):
            ledger.apply(ACCOUNT_ID, -60, TransactionKind.SPEND_REDEMPTION, "r2")

        balance = ledger.get_balance(ACCOUNT_ID)
        assert balance.global_balance == 40
        assert balance.total_entries == 2
        assert log_total(ledger, ACCOUNT_ID) == 40

    def test_debit_on_empty_account_fails(self, ledger):
        with pytest.raises(InsufficientBalanceError):
            ledger.apply(ACCOUNT_ID, -1, TransactionKind.SPEND_REDEMPTION)

        assert ledger.storage.transactions_for(ACCOUNT_ID) == []

    def test_zero_amount_rejected(self, ledger):
        with pytest.raises(InvalidAmountError):
            ledger.apply(ACCOUNT_ID, 0, TransactionKind.EARN_SESSION)

    def test_kind_accepts_plain_string(self, ledger):
        transaction = ledger.apply(ACCOUNT_ID, 5, "earn-session")
        assert transaction.kind == TransactionKind.EARN_SESSION

    def test_unknown_account_fails(self, ledger):
        with pytest.raises(AccountNotFoundError):
            ledger.apply(uuid4(), 10, TransactionKind.EARN_SESSION)

    def test_deactivated_account_cannot_transact(self, ledger):
        ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION)
        ledger.deactivate_account(ACCOUNT_ID)

        with pytest.raises(AccountInactiveError):
            ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION)
        assert ledger.get_balance(ACCOUNT_ID).global_balance == 10

    def test_deactivated_account_still_receives_refunds(self, ledger):
        ledger.apply(ACCOUNT_ID, 50, TransactionKind.EARN_SESSION, gym_id=GYM_ID)
        ledger.apply(ACCOUNT_ID, -30, TransactionKind.SPEND_REDEMPTION, "r-1", gym_id=GYM_ID)
        ledger.deactivate_account(ACCOUNT_ID)

        refund = ledger.apply(ACCOUNT_ID, 30, TransactionKind.REFUND, "r-1", gym_id=GYM_ID)

        assert refund.balance_after == 50
        assert ledger.get_local_balance(ACCOUNT_ID, GYM_ID) == 50
        with pytest.raises(AccountInactiveError):
            ledger.apply(ACCOUNT_ID, -10, TransactionKind.SPEND_REDEMPTION, "r-2", gym_id=GYM_ID)

    def test_open_account_is_idempotent(self, ledger):
        ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION)

        account = ledger.open_account(ACCOUNT_ID)

        assert account.global_balance == 10


class TestIdempotency:
    """Tests for the (kind, reference) duplicate guard."""

    def test_duplicate_reference_rejected(self, ledger):
        ledger.apply(ACCOUNT_ID, 20, TransactionKind.EARN_CHALLENGE, "challenge-1")

        with pytest.raises(DuplicateApplicationError):
            ledger.apply(ACCOUNT_ID, 20, TransactionKind.EARN_CHALLENGE, "challenge-1")

        assert ledger.get_balance(ACCOUNT_ID).global_balance == 20

    def test_same_reference_different_kind_allowed(self, ledger):
        ledger.apply(ACCOUNT_ID, 50, TransactionKind.EARN_SESSION, "x")
        ledger.apply(ACCOUNT_ID, -30, TransactionKind.SPEND_REDEMPTION, "redemption-1")
        ledger.apply(ACCOUNT_ID, 30, TransactionKind.REFUND, "redemption-1")

        assert ledger.get_balance(ACCOUNT_ID).global_balance == 50

    def test_reference_scoped_per_account(self, ledger):
        ledger.apply(ACCOUNT_ID, 20, TransactionKind.EARN_CHALLENGE, "challenge-1")
        ledger.apply(OTHER_ACCOUNT_ID, 20, TransactionKind.EARN_CHALLENGE, "challenge-1")

        assert ledger.get_balance(OTHER_ACCOUNT_ID).global_balance == 20

    def test_no_reference_never_deduplicated(self, ledger):
        ledger.apply(ACCOUNT_ID, 5, TransactionKind.EARN_SESSION)
        ledger.apply(ACCOUNT_ID, 5, TransactionKind.EARN_SESSION)

        assert ledger.get_balance(ACCOUNT_ID).global_balance == 10


class TestLocalBalances:
    """Tests for gym-scoped balances."""

    def test_credit_creates_membership_lazily(self, ledger):
        assert ledger.get_local_balance(ACCOUNT_ID, GYM_ID) == 0
        assert ledger.storage.get_membership(ACCOUNT_ID, GYM_ID) is None

        ledger.apply(ACCOUNT_ID, 30, TransactionKind.EARN_SESSION, gym_id=GYM_ID)

        assert ledger.get_local_balance(ACCOUNT_ID, GYM_ID) == 30
        assert ledger.get_balance(ACCOUNT_ID).local_balances == {GYM_ID: 30}

    def test_local_debit_limited_by_local_balance(self, ledger):
        ledger.apply(ACCOUNT_ID, 100, TransactionKind.EARN_SESSION, gym_id=OTHER_GYM_ID)
        ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION, gym_id=GYM_ID)

        with pytest.raises(InsufficientBalanceError):
            ledger.apply(ACCOUNT_ID, -20, TransactionKind.SPEND_REDEMPTION, gym_id=GYM_ID)

        assert ledger.get_balance(ACCOUNT_ID).global_balance == 110
        assert ledger.get_local_balance(ACCOUNT_ID, GYM_ID) == 10

    def test_debit_at_gym_without_membership_fails(self, ledger):
        ledger.apply(ACCOUNT_ID, 100, TransactionKind.EARN_SESSION)

        with pytest.raises(InsufficientBalanceError):
            ledger.apply(ACCOUNT_ID, -10, TransactionKind.SPEND_REDEMPTION, gym_id=GYM_ID)

        assert ledger.storage.get_membership(ACCOUNT_ID, GYM_ID) is None

    def test_balances_match_log(self, ledger):
        ledger.apply(ACCOUNT_ID, 40, TransactionKind.EARN_SESSION, gym_id=GYM_ID)
        ledger.apply(ACCOUNT_ID, 25, TransactionKind.EARN_SESSION, gym_id=OTHER_GYM_ID)
        ledger.apply(ACCOUNT_ID, 15, TransactionKind.EARN_SESSION)
        ledger.apply(ACCOUNT_ID, -35, TransactionKind.SPEND_REDEMPTION, "r1", gym_id=GYM_ID)
        ledger.apply(ACCOUNT_ID, 35, TransactionKind.REFUND, "r1", gym_id=GYM_ID)

        balance = ledger.get_balance(ACCOUNT_ID)
        assert balance.global_balance == log_total(ledger, ACCOUNT_ID) == 80
        assert balance.local_balances[GYM_ID] == log_total(ledger, ACCOUNT_ID, GYM_ID) == 40
        assert balance.local_balances[OTHER_GYM_ID] == log_total(ledger, ACCOUNT_ID, OTHER_GYM_ID) == 25
        assert ledger.audit(ACCOUNT_ID).is_consistent


class TestHistoryAndAudit:
    """Tests for history retrieval and reconciliation."""

    def test_history_newest_first(self, ledger):
        ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION, "s1")
        ledger.apply(ACCOUNT_ID, 20, TransactionKind.EARN_SESSION, "s2")
        ledger.apply(ACCOUNT_ID, 30, TransactionKind.EARN_SESSION, "s3")

        history = ledger.get_history(ACCOUNT_ID, limit=2)

        assert history.total_count == 3
        assert [e.reference_id for e in history.entries] == ["s3", "s2"]
        assert history.current_balance == 60

    def test_history_filtered_by_gym(self, ledger):
        ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION, gym_id=GYM_ID)
        ledger.apply(ACCOUNT_ID, 20, TransactionKind.EARN_SESSION, gym_id=OTHER_GYM_ID)

        history = ledger.get_history(ACCOUNT_ID, gym_id=GYM_ID)

        assert history.total_count == 1
        assert history.entries[0].amount == 10

    def test_sequence_is_strictly_increasing(self, ledger):
        for i in range(5):
            ledger.apply(ACCOUNT_ID, 1, TransactionKind.EARN_SESSION, f"s{i}")

        sequences = [t["sequence"] for t in ledger.storage.transactions_for(ACCOUNT_ID)]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 5

    def test_audit_detects_tampered_balance(self, ledger):
        ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION, gym_id=GYM_ID)
        ledger.storage.accounts[ACCOUNT_ID]["global_balance"] = 999
        ledger.storage.memberships[(ACCOUNT_ID, GYM_ID)]["local_balance"] = 3

        report = ledger.audit(ACCOUNT_ID)

        assert not report.is_consistent
        assert report.ledger_total == 10
        assert report.local_mismatches == {GYM_ID: (3, 10)}


class TestConcurrency:
    """Tests for serialized applies on one account."""

    def test_concurrent_debits_cannot_overdraw(self, ledger):
        ledger.apply(ACCOUNT_ID, 100, TransactionKind.EARN_SESSION)
        barrier = threading.Barrier(10)
        outcomes = []

        def debit(i):
            barrier.wait()
            try:
                ledger.apply(ACCOUNT_ID, -30, TransactionKind.SPEND_REDEMPTION, f"r{i}")
                outcomes.append("ok")
            except InsufficientBalanceError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=debit, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 3
        assert outcomes.count("insufficient") == 7
        assert ledger.get_balance(ACCOUNT_ID).global_balance == 10
        assert log_total(ledger, ACCOUNT_ID) == 10

    def test_concurrent_credits_no_lost_updates(self, ledger):
        def credit(worker):
            for i in range(50):
                ledger.apply(ACCOUNT_ID, 1, TransactionKind.EARN_SESSION, f"{worker}-{i}")

        threads = [threading.Thread(target=credit, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.get_balance(ACCOUNT_ID).global_balance == 200
        assert ledger.audit(ACCOUNT_ID).is_consistent

    def test_row_locks_dropped_after_release(self, ledger):
        """Locks for rows nobody is touching do not pile up."""
        def credit(worker):
            for i in range(20):
                ledger.apply(ACCOUNT_ID, 1, TransactionKind.EARN_SESSION, f"{worker}-{i}")
                ledger.apply(OTHER_ACCOUNT_ID, 1, TransactionKind.EARN_SESSION, f"{worker}-{i}")

        threads = [threading.Thread(target=credit, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.get_balance(OTHER_ACCOUNT_ID).global_balance == 80
        assert ledger.storage._locks == {}


class TestFailureHandling:
    """Tests for rollback and availability."""

    def test_storage_fault_rolls_back(self, ledger, monkeypatch):
        ledger.apply(ACCOUNT_ID, 50, TransactionKind.EARN_SESSION, gym_id=GYM_ID)

        def broken_update(*args, **kwargs):
            raise StorageFault("disk full")

        monkeypatch.setattr(ledger.storage, "update_membership", broken_update)

        with pytest.raises(TransientFailureError):
            ledger.apply(ACCOUNT_ID, 25, TransactionKind.EARN_SESSION, "s-fault", gym_id=GYM_ID)

        monkeypatch.undo()
        assert ledger.get_balance(ACCOUNT_ID).global_balance == 50
        assert ledger.get_local_balance(ACCOUNT_ID, GYM_ID) == 50
        assert len(ledger.storage.transactions_for(ACCOUNT_ID)) == 1
        # rolled back, so the retry is not a duplicate
        ledger.apply(ACCOUNT_ID, 25, TransactionKind.EARN_SESSION, "s-fault", gym_id=GYM_ID)
        assert ledger.get_balance(ACCOUNT_ID).global_balance == 75

    def test_unavailable_storage(self, ledger):
        ledger.storage.available = False

        with pytest.raises(UnavailableError):
            ledger.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION)

    def test_writes_outside_transaction_refused(self, ledger):
        with pytest.raises(RuntimeError):
            ledger.storage.update_account(ACCOUNT_ID, global_balance=5)

    def test_lock_timeout_is_transient(self, storage, clock):
        storage.lock_timeout = 0.05
        service = LedgerService(storage, clock=clock)
        service.open_account(ACCOUNT_ID)
        held = threading.Event()
        release = threading.Event()

        def hold_lock():
            with storage.transaction(f"account:{ACCOUNT_ID}"):
                held.set()
                release.wait(2)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        held.wait(2)
        try:
            with pytest.raises(TransientFailureError):
                service.apply(ACCOUNT_ID, 10, TransactionKind.EARN_SESSION)
        finally:
            release.set()
            holder.join()

        assert service.get_balance(ACCOUNT_ID).global_balance == 0
        assert storage._locks == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
