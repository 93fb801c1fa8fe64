"""
Unit tests for the credit ledger.

Covers conversion, conservation, insufficient-credit handling and the
disabled operating mode.
"""

import os
import shutil
import sys
import tempfile
import threading
from decimal import Decimal

import pytest

from triage_guard.core.errors import InsufficientCreditError
from triage_guard.storage.db import get_connection, initialize_schema
from triage_guard.storage.ledger import (
    OfflineLedger,
    UsageLedger,
    build_ledger,
    convert_charge,
    sanitize_metadata,
)
from triage_guard.storage.models import TransactionType


class TestConversion:
    """Test charge-to-credit conversion."""

    @pytest.mark.parametrize("charge,expected", [(1000, 500), (1001, 500), (1, 0), (0, 0), (-5, 0)])
    def test_floor_half(self, charge, expected):
        """Credits are floor(charge * 0.5)."""
        assert convert_charge(charge) == expected

    def test_custom_rate(self):
        """The rate is configurable."""
        assert convert_charge(999, Decimal("0.25")) == 249


class TestSanitizeMetadata:
    """Test metadata filtering."""

    def test_scalars_kept(self):
        """Only scalar or null values survive."""
        cleaned = sanitize_metadata({
            "eventId": "evt_1",
            "amount": 1800,
            "ratio": 0.5,
            "paid": True,
            "customer": None,
            "nested": {"a": 1},
            "items": [1, 2],
        })

        assert cleaned == {"eventId": "evt_1", "amount": 1800, "ratio": 0.5, "paid": True, "customer": None}

    def test_empty_becomes_none(self):
        """Nothing left means no metadata."""
        assert sanitize_metadata({"nested": {"a": 1}}) is None
        assert sanitize_metadata(None) is None
        assert sanitize_metadata({}) is None


class TestUsageLedger:
    """Test the persistent ledger."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = UsageLedger(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_unknown_caller_balance(self):
        """Callers without an account read zero."""
        snapshot = self.ledger.balance("nobody")

        assert snapshot.balance_cents == 0
        assert snapshot.updated_at is None
        assert self.ledger.account("nobody") is None

    def test_credit_fresh_account(self):
        """A 1000 cent charge credits 500 and appends one top-up."""
        result = self.ledger.credit("user-1", 1000, metadata={"eventId": "evt_1", "raw": {"x": 1}})

        assert result.credited_cents == 500
        assert result.previous_balance_cents == 0
        assert result.new_balance_cents == 500
        [transaction] = self.ledger.transactions("user-1")
        assert transaction.type == TransactionType.TOPUP
        assert transaction.amount_cents == 500
        assert transaction.balance_after_cents == 500
        assert transaction.metadata == {"eventId": "evt_1"}
        assert self.ledger.balance("user-1").updated_at is not None

    def test_zero_credit_writes_no_transaction(self):
        """A charge that converts to nothing leaves the log untouched."""
        result = self.ledger.credit("user-1", 1)

        assert result.credited_cents == 0
        assert self.ledger.transactions("user-1") == []

    def test_debit(self):
        """A covered debit lowers the balance and appends a debit row."""
        self.ledger.credit("user-1", 2000)

        result = self.ledger.debit("user-1", 400, metadata={"model": "x"})

        assert result.previous_balance_cents == 1000
        assert result.new_balance_cents == 600
        latest = self.ledger.transactions("user-1")[0]
        assert latest.type == TransactionType.DEBIT
        assert latest.signed_amount_cents == -400

    def test_debit_exceeding_balance(self):
        """An uncovered debit raises and changes nothing."""
        self.ledger.credit("user-1", 1200)
        assert self.ledger.balance("user-1").balance_cents == 600

        with pytest.raises(InsufficientCreditError) as exc_info:
            self.ledger.debit("user-1", 700)

        assert exc_info.value.balance_cents == 600
        assert exc_info.value.requested_cents == 700
        assert self.ledger.balance("user-1").balance_cents == 600
        assert len(self.ledger.transactions("user-1")) == 1

    def test_top_up_then_overdraw(self):
        """A 600 cent payment credits 300, so a 400 debit is refused."""
        self.ledger.credit("user-1", 600)

        with pytest.raises(InsufficientCreditError):
            self.ledger.debit("user-1", 400)

    def test_non_positive_debit_is_noop(self):
        """Zero or negative debits report the balance unchanged."""
        self.ledger.credit("user-1", 1000)

        result = self.ledger.debit("user-1", 0)

        assert result.previous_balance_cents == result.new_balance_cents == 500
        assert len(self.ledger.transactions("user-1")) == 1

    def test_conservation(self):
        """Balance equals credits minus successful debits."""
        self.ledger.credit("user-1", 1000)
        self.ledger.debit("user-1", 120)
        self.ledger.credit("user-1", 401)
        self.ledger.debit("user-1", 80)
        with pytest.raises(InsufficientCreditError):
            self.ledger.debit("user-1", 10_000)

        assert self.ledger.balance("user-1").balance_cents == 500 - 120 + 200 - 80
        audit = self.ledger.audit("user-1")
        assert audit.consistent
        assert audit.transaction_count == 4

    def test_concurrent_debits_never_overdraw(self):
        """Only one of several simultaneous debits fits the balance."""
        self.ledger.credit("user-1", 1000)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def spend():
            barrier.wait()
            try:
                self.ledger.debit("user-1", 300)
                outcome = "ok"
            except InsufficientCreditError:
                outcome = "refused"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=spend) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 1
        assert results.count("refused") == 7
        assert self.ledger.balance("user-1").balance_cents == 200
        assert self.ledger.audit("user-1").consistent
        assert len(self.ledger.transactions("user-1")) == 2

    def test_audit_reports_drift(self):
        """A tampered accumulator shows up as drift."""
        self.ledger.credit("user-1", 1000)
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE billing_accounts SET balance_cents = 450 WHERE caller_id = 'user-1'")
            conn.commit()
        finally:
            conn.close()

        audit = self.ledger.audit("user-1")

        assert audit.consistent is False
        assert audit.drift_cents == -50
        assert audit.replayed_balance_cents == 500

    def test_merge_account_profile(self):
        """Profile fields merge without touching the balance."""
        self.ledger.credit("user-1", 1000)

        assert self.ledger.merge_account_profile("user-1", customer_id="cus_123") is True
        assert self.ledger.merge_account_profile("user-1", customer_email="a@example.com") is True
        assert self.ledger.merge_account_profile("user-1") is False

        account = self.ledger.account("user-1")
        assert account.customer_id == "cus_123"
        assert account.customer_email == "a@example.com"
        assert account.balance_cents == 500

    def test_profile_for_new_account(self):
        """Merging a profile for an unknown caller opens a zero account."""
        self.ledger.merge_account_profile("user-2", customer_id="cus_9")

        assert self.ledger.account("user-2").balance_cents == 0
        assert self.ledger.account("user-2").customer_id == "cus_9"


class TestOfflineLedger:
    """Test the disabled operating mode."""

    def test_behaviour(self):
        """Nothing is enforced or persisted."""
        ledger = OfflineLedger()

        assert ledger.is_active is False
        assert ledger.balance("user-1").balance_cents == 0
        credit = ledger.credit("user-1", 1000)
        assert (credit.credited_cents, credit.previous_balance_cents, credit.new_balance_cents) == (500, 0, 500)
        debit = ledger.debit("user-1", 10_000)
        assert debit.previous_balance_cents == sys.maxsize
        assert ledger.transactions("user-1") == []
        assert ledger.balance("user-1").balance_cents == 0

    def test_build_ledger(self):
        """The disabled flag selects the offline mode."""
        assert isinstance(build_ledger(disabled=True), OfflineLedger)
        ledger = build_ledger(db_path="unused.db", disabled=False)
        assert isinstance(ledger, UsageLedger)
        assert ledger.is_active is True
