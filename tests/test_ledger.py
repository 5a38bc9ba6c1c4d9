"""
Test suite for the ledger store

Tests posting, voiding and querying transactions.
CRITICAL: a posted transaction's lines always sum to zero and voiding
removes its contribution from every balance.
"""

import pytest
from datetime import date

from fund_ledger.chart import AccountType
from fund_ledger.ledger import (
    DesignatedGift, Donation, Line, Transaction, TransactionFilter, TransactionStatus
)
from fund_ledger.audit import AuditEventType
from fund_ledger.errors import (
    AlreadyVoidError, AuthorizationError, DuplicateIdentifierError, NotFoundError,
    ValidationError
)


class TestLine:
    """Test line construction"""

    def test_debit_and_credit(self):
        """Test creation of debit and credit lines"""
        debit = Line.debit("checking", "general", 500)
        credit = Line.credit("donations", "general", 500, donor_id="donor-7")
        assert debit.amount == 500 and debit.is_debit
        assert credit.amount == -500 and credit.is_credit
        assert credit.donor_id == "donor-7"
        assert debit.id != credit.id


class TestCreateTransaction:
    """Test posting"""

    def test_posts(self, ledger_system, bookkeeper, t1):
        """Test posting a balanced transaction"""
        assert t1.status == TransactionStatus.POSTED
        assert t1.created_by == bookkeeper.actor_id
        assert sum(line.amount for line in t1.lines) == 0
        assert t1.total_debits == t1.total_credits == 10000
        assert t1.account_ids() == ["checking", "donations"]

        stored = ledger_system.ledger.get_transaction(t1.id)
        assert stored.entry_date == date(2024, 1, 15)
        assert [l.amount for l in stored.lines] == [10000, -10000]

        events = ledger_system.audit_trail.get_events_for_entity("transaction", t1.id)
        assert events[0].event_type == AuditEventType.TRANSACTION_POSTED

    def test_viewer_cannot_post(self, ledger_system, viewer):
        """Test that viewers cannot post"""
        with pytest.raises(AuthorizationError):
            ledger_system.ledger.create_transaction(viewer, date(2024, 1, 1), "x", [
                Line.debit("checking", "general", 1),
                Line.credit("donations", "general", 1),
            ])

    def test_rejected_posting_writes_nothing(self, ledger_system, bookkeeper):
        """Test that a rejected posting leaves no record or audit event"""
        before = ledger_system.audit_trail.count_events()
        with pytest.raises(ValidationError):
            ledger_system.ledger.create_transaction(bookkeeper, date(2024, 1, 1), "x", [
                Line.debit("checking", "general", 100),
                Line.credit("donations", "general", 99),
            ])
        assert ledger_system.ledger.list_transactions() == []
        assert ledger_system.audit_trail.count_events() == before

    def test_empty_lines(self, ledger_system, bookkeeper):
        """Test that a transaction with no lines raises error"""
        with pytest.raises(ValidationError) as exc_info:
            ledger_system.ledger.create_transaction(bookkeeper, date(2024, 1, 1), "x", [])
        assert exc_info.value.rule == "min_lines"

    def test_stored_lines_get_fresh_ids(self, ledger_system, bookkeeper):
        """Test that posting the same lines twice gives each transaction its own line ids"""
        lines = [Line("checking", "general", 100, id="L1"),
                 Line("donations", "general", -100, id="L1")]
        first = ledger_system.ledger.create_transaction(bookkeeper, date(2024, 1, 1), "x", lines)
        second = ledger_system.ledger.create_transaction(bookkeeper, date(2024, 1, 1), "x", lines)

        first_ids = {line.id for line in first.lines}
        second_ids = {line.id for line in second.lines}
        assert len(first_ids) == len(second_ids) == 2
        assert first_ids.isdisjoint(second_ids)
        assert "L1" not in first_ids | second_ids
        stored = ledger_system.ledger.get_transaction(second.id)
        assert {line.id for line in stored.lines} == second_ids

    def test_caller_objects_not_shared(self, ledger_system, bookkeeper):
        """Test that later changes to caller lines do not reach storage"""
        lines = [Line.debit("checking", "general", 100), Line.credit("donations", "general", 100)]
        txn = ledger_system.ledger.create_transaction(bookkeeper, date(2024, 1, 1), "x", lines)
        lines[0].account_id = "savings"
        assert ledger_system.ledger.get_transaction(txn.id).lines[0].account_id == "checking"


class TestIdempotency:
    """Test retry safety for posting"""

    def lines(self):
        return [Line("checking", "general", 700, id="a"),
                Line("donations", "general", -700, id="b")]

    def test_replay_returns_original(self, ledger_system, bookkeeper):
        """Test that a repeated key returns the original transaction"""
        first = ledger_system.ledger.create_transaction(
            bookkeeper, date(2024, 5, 5), "Gift", self.lines(), idempotency_key="k1")
        second = ledger_system.ledger.create_transaction(
            bookkeeper, date(2024, 5, 5), "Gift", self.lines(), idempotency_key="k1")
        assert second.id == first.id
        assert len(ledger_system.ledger.list_transactions()) == 1

    def test_key_reuse_with_other_payload(self, ledger_system, bookkeeper):
        """Test that a key reused for different content raises error"""
        ledger_system.ledger.create_transaction(
            bookkeeper, date(2024, 5, 5), "Gift", self.lines(), idempotency_key="k1")
        with pytest.raises(DuplicateIdentifierError):
            ledger_system.ledger.create_transaction(
                bookkeeper, date(2024, 5, 6), "Gift", self.lines(), idempotency_key="k1")


class TestVoid:
    """Test voiding"""

    def test_void(self, ledger_system, bookkeeper, t1):
        """Test voiding a transaction"""
        voided = ledger_system.ledger.void_transaction(bookkeeper, t1.id, reason="Entered twice")
        assert voided.is_void
        assert voided.voided_by == bookkeeper.actor_id
        assert voided.void_reason == "Entered twice"

        # Retained for audit queries
        stored = ledger_system.ledger.get_transaction(t1.id)
        assert stored.status == TransactionStatus.VOID
        assert stored.voided_at is not None

    def test_void_twice(self, ledger_system, bookkeeper, t1):
        """Test that voiding twice raises error"""
        ledger_system.ledger.void_transaction(bookkeeper, t1.id)
        with pytest.raises(AlreadyVoidError):
            ledger_system.ledger.void_transaction(bookkeeper, t1.id)

    def test_void_unknown(self, ledger_system, bookkeeper):
        """Test voiding a missing transaction"""
        with pytest.raises(NotFoundError):
            ledger_system.ledger.void_transaction(bookkeeper, "missing")

    def test_viewer_cannot_void(self, ledger_system, viewer, t1):
        """Test that viewers cannot void"""
        with pytest.raises(AuthorizationError):
            ledger_system.ledger.void_transaction(viewer, t1.id)

    def test_create_then_void_restores_balance(self, ledger_system, bookkeeper):
        """Test that voiding restores the prior balance"""
        aggregation = ledger_system.aggregation
        as_of = date(2024, 12, 31)
        original = aggregation.balance_as_of(as_of, "checking")

        txn = ledger_system.ledger.record_giving(
            bookkeeper, date(2024, 6, 1), "checking", "donations", "general", 4200)
        assert aggregation.balance_as_of(as_of, "checking") == original + 4200

        ledger_system.ledger.void_transaction(bookkeeper, txn.id)
        assert aggregation.balance_as_of(as_of, "checking") == original


class TestQueries:
    """Test listing and lookups"""

    @pytest.fixture
    def history(self, ledger_system, bookkeeper):
        ledger = ledger_system.ledger
        a = ledger.record_giving(bookkeeper, date(2024, 3, 1), "checking", "donations",
                                 "general", 1000, memo="March offering")
        b = ledger.record_expense(bookkeeper, date(2024, 1, 20), "utilities", "checking",
                                  "general", 300, memo="Electric bill", reference_number="CHK-101")
        c = ledger.record_giving(bookkeeper, date(2024, 2, 1), "savings", "donations",
                                 "building", 5000, memo="Roof pledge")
        ledger.void_transaction(bookkeeper, c.id)
        return a, b, c

    def test_ordered_by_date(self, ledger_system, history):
        """Test listing order by date then id"""
        a, b, c = history
        listed = ledger_system.ledger.list_transactions()
        assert [t.id for t in listed] == [b.id, c.id, a.id]

    def test_filters(self, ledger_system, history):
        """Test each transaction filter"""
        a, b, c = history
        ledger = ledger_system.ledger
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(include_void=False))] == [b.id, a.id]
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(start_date=date(2024, 2, 1), end_date=date(2024, 3, 1)))] == [c.id, a.id]
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(fund_id="building"))] == [c.id]
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(account_id="utilities"))] == [b.id]
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(text="electric"))] == [b.id]
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(text="chk-101"))] == [b.id]
        assert [t.id for t in ledger.list_transactions(
            TransactionFilter(status=TransactionStatus.VOID))] == [c.id]

    def test_transactions_for_account(self, ledger_system, history):
        """Test posted transactions touching an account"""
        a, b, c = history
        assert [t.id for t in ledger_system.ledger.transactions_for_account("checking")] == [
            b.id, a.id
        ]

    def test_find_duplicates(self, ledger_system, history):
        """Test detection of possible duplicate postings"""
        a, b, c = history
        ledger = ledger_system.ledger
        assert [t.id for t in ledger.find_duplicates(date(2024, 3, 1), 1000)] == [a.id]
        assert ledger.find_duplicates(date(2024, 3, 1), 1000, memo="march OFFERING ")[0].id == a.id
        assert ledger.find_duplicates(date(2024, 3, 1), 999) == []
        # Void transactions are not duplicates
        assert ledger.find_duplicates(date(2024, 2, 1), 5000) == []

    def test_usage(self, ledger_system, history):
        """Test account and fund usage queries"""
        ledger = ledger_system.ledger
        assert ledger.is_account_referenced("utilities")
        assert not ledger.is_account_referenced("salaries")
        assert ledger.is_fund_referenced("building")
        assert ledger.line_count_by_fund() == {"general": 4}
        assert ledger.line_count_by_fund(include_void=True) == {"general": 4, "building": 2}


class TestPostingHelpers:
    """Test the balanced line sets built by helpers"""

    def test_record_giving(self, ledger_system, bookkeeper):
        """Test the lines built for a contribution"""
        txn = ledger_system.ledger.record_giving(
            bookkeeper, date(2024, 1, 7), "checking", "donations", "general", 2500,
            donor_id="donor-1")
        assert [(l.account_id, l.amount) for l in txn.lines] == [
            ("checking", 2500), ("donations", -2500)
        ]
        assert txn.lines[1].donor_id == "donor-1"

    def test_transfer_between_funds(self, ledger_system, bookkeeper):
        """Test the lines built for a fund transfer"""
        txn = ledger_system.ledger.transfer_between_funds(
            bookkeeper, date(2024, 1, 7), "checking", "general", "building", 800)
        assert [(l.fund_id, l.amount) for l in txn.lines] == [("building", 800), ("general", -800)]

    def test_transfer_between_accounts(self, ledger_system, bookkeeper):
        """Test the lines built for an account transfer"""
        txn = ledger_system.ledger.transfer_between_accounts(
            bookkeeper, date(2024, 1, 7), "checking", "savings", "general", 800)
        assert [(l.account_id, l.amount) for l in txn.lines] == [("savings", 800), ("checking", -800)]
        with pytest.raises(ValidationError):
            ledger_system.ledger.transfer_between_accounts(
                bookkeeper, date(2024, 1, 7), "checking", "checking", "general", 800)

    def test_opening_balance_liability(self, ledger_system, bookkeeper):
        """Test an opening balance on a liability account"""
        txn = ledger_system.ledger.record_opening_balance(
            bookkeeper, date(2024, 1, 1), "payables", "general", 1500, "na_unrestricted")
        assert [(l.account_id, l.amount) for l in txn.lines] == [
            ("payables", -1500), ("na_unrestricted", 1500)
        ]

    def test_positive_amount_required(self, ledger_system, bookkeeper):
        """Test that helpers reject non-positive amounts"""
        with pytest.raises(ValidationError) as exc_info:
            ledger_system.ledger.record_expense(
                bookkeeper, date(2024, 1, 7), "utilities", "checking", "general", -5)
        assert exc_info.value.rule == "positive_amount"


class TestOnlineDonationBatch:
    """Test processor payouts split across income accounts and funds"""

    @pytest.fixture
    def fees_account(self, ledger_system, admin):
        ledger_system.chart.create_account(admin, 5030, "Bank Fees", AccountType.EXPENSE,
                                           account_id="bank_fees")
        return "bank_fees"

    def test_net_deposit_and_fees(self, ledger_system, bookkeeper, fees_account):
        """Test that net deposit plus fees balances the donations credited"""
        txn = ledger_system.ledger.record_online_donation_batch(
            bookkeeper, date(2024, 3, 4), "checking", fees_account, 9500, 500, [
                Donation("donations", "general", 6000, donor_id="donor-1"),
                Donation("offerings", "building", 4000),
            ], reference_number="PAYOUT-88")

        assert [(l.account_id, l.fund_id, l.amount) for l in txn.lines] == [
            ("checking", "general", 9500),
            ("bank_fees", "general", 500),
            ("donations", "general", -6000),
            ("offerings", "building", -4000),
        ]
        assert txn.lines[2].donor_id == "donor-1"
        assert txn.memo == "Online donation batch"
        assert txn.reference_number == "PAYOUT-88"

    def test_no_fee_line_without_fees(self, ledger_system, bookkeeper, fees_account):
        """Test that a fee-free payout has no fee line"""
        txn = ledger_system.ledger.record_online_donation_batch(
            bookkeeper, date(2024, 3, 4), "checking", fees_account, 2500, 0,
            [Donation("donations", "general", 2500)])
        assert txn.account_ids() == ["checking", "donations"]

    def test_donations_must_match_gross(self, ledger_system, bookkeeper, fees_account):
        """Test that donations not summing to net deposit plus fees are rejected"""
        with pytest.raises(ValidationError) as exc_info:
            ledger_system.ledger.record_online_donation_batch(
                bookkeeper, date(2024, 3, 4), "checking", fees_account, 9500, 500,
                [Donation("donations", "general", 9500)])
        assert exc_info.value.rule == "batch_total"
        assert exc_info.value.details == {"donations_total": 9500, "gross_amount": 10000}
        assert ledger_system.ledger.list_transactions() == []

    def test_invalid_amounts(self, ledger_system, bookkeeper, fees_account):
        """Test rejection of empty batches, negative fees and a zero deposit"""
        ledger = ledger_system.ledger
        cases = [
            (9500, 500, [], "min_donations"),
            (9500, -1, [Donation("donations", "general", 9499)], "non_negative_amount"),
            (0, 0, [Donation("donations", "general", 1)], "positive_amount"),
        ]
        for net, fees, donations, rule in cases:
            with pytest.raises(ValidationError) as exc_info:
                ledger.record_online_donation_batch(bookkeeper, date(2024, 3, 4), "checking",
                                                    fees_account, net, fees, donations)
            assert exc_info.value.rule == rule


class TestWeeklyDeposit:
    """Test one deposit split across the general fund, missions and designated funds"""

    def test_split_by_fund(self, ledger_system, bookkeeper):
        """Test a deposit account debit and an income credit for each fund portion"""
        txn = ledger_system.ledger.record_weekly_deposit(
            bookkeeper, date(2024, 3, 3), "checking", "donations", "general", 10000,
            missions_fund_id="missions", missions_amount=2000,
            designated=[DesignatedGift("offerings", "building", 3000, "Roof")])

        assert [(l.account_id, l.fund_id, l.amount) for l in txn.lines] == [
            ("checking", "general", 10000), ("donations", "general", -10000),
            ("checking", "missions", 2000), ("donations", "missions", -2000),
            ("checking", "building", 3000), ("offerings", "building", -3000),
        ]
        assert txn.lines[4].memo == "Cash received - Roof"

        aggregation = ledger_system.aggregation
        assert aggregation.balance_as_of(date(2024, 3, 31), "checking") == 15000
        assert aggregation.balance_as_of(date(2024, 3, 31), "checking", fund_id="missions") == 2000

    def test_zero_portions_skipped(self, ledger_system, bookkeeper):
        """Test that empty portions produce no lines"""
        txn = ledger_system.ledger.record_weekly_deposit(
            bookkeeper, date(2024, 3, 3), "checking", "donations", "general", 0,
            missions_fund_id="missions", missions_amount=2000,
            designated=[DesignatedGift("offerings", "building", 0)])
        assert [(l.fund_id, l.amount) for l in txn.lines] == [("missions", 2000),
                                                               ("missions", -2000)]

    def test_invalid_deposits(self, ledger_system, bookkeeper):
        """Test rejection of a missing missions fund, negative and all-zero deposits"""
        ledger = ledger_system.ledger
        with pytest.raises(ValidationError) as exc_info:
            ledger.record_weekly_deposit(bookkeeper, date(2024, 3, 3), "checking", "donations",
                                         "general", 1000, missions_amount=500)
        assert exc_info.value.rule == "missions_fund"

        with pytest.raises(ValidationError) as exc_info:
            ledger.record_weekly_deposit(bookkeeper, date(2024, 3, 3), "checking", "donations",
                                         "general", -1000)
        assert exc_info.value.rule == "non_negative_amount"

        with pytest.raises(ValidationError) as exc_info:
            ledger.record_weekly_deposit(bookkeeper, date(2024, 3, 3), "checking", "donations",
                                         "general", 0)
        assert exc_info.value.rule == "positive_amount"
        assert ledger.list_transactions() == []


class TestSerialization:
    """Test storage round trip of transactions"""

    def test_round_trip(self, ledger_system, bookkeeper, t1):
        """Test restoring a void transaction from storage"""
        ledger_system.ledger.void_transaction(bookkeeper, t1.id, "typo")
        data = ledger_system.storage.load("transactions", t1.id)
        restored = Transaction.from_dict(data)
        assert restored.status == TransactionStatus.VOID
        assert restored.lines[0].account_id == "checking"
        assert isinstance(restored.entry_date, date)
