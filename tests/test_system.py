"""
End-to-end tests over SQLite persistence
"""

import pytest
from datetime import date

from fund_ledger.config import FundLedgerConfig
from fund_ledger.chart import AccountType
from fund_ledger.budgets import BudgetEntry, BudgetStatus
from fund_ledger.ledger import TransactionFilter
from fund_ledger.rbac import Actor, Role
from fund_ledger.storage import SQLiteStorage
from fund_ledger.system import FundLedgerSystem
from fund_ledger.errors import ValidationError

ADMIN = Actor("admin-1", Role.ADMIN)
BOOKKEEPER = Actor("bookkeeper-1", Role.BOOKKEEPER)
VIEWER = Actor("viewer-1", Role.VIEWER)


@pytest.fixture
def sqlite_config(tmp_path):
    return FundLedgerConfig(_env_file=None, database_url=f"sqlite:///{tmp_path}/ledger.db",
                            log_format="text")


def seed(system):
    chart = system.chart
    chart.create_account(ADMIN, 1010, "Checking", AccountType.ASSET, account_id="checking")
    chart.create_account(ADMIN, 1020, "Savings", AccountType.ASSET, account_id="savings")
    chart.create_account(ADMIN, 3010, "Net Assets", AccountType.EQUITY, account_id="net_assets")
    chart.create_account(ADMIN, 4010, "Donations", AccountType.INCOME, account_id="donations")
    chart.create_account(ADMIN, 5010, "Utilities", AccountType.EXPENSE, account_id="utilities")
    chart.create_fund(ADMIN, "General", fund_id="general", net_asset_account_id="net_assets")


class TestFundLedgerSystem:
    """Test the wired system across a restart"""

    def test_uses_configured_backend(self, sqlite_config):
        """Test that the configured database URL picks the backend"""
        with FundLedgerSystem(config=sqlite_config) as system:
            assert isinstance(system.storage, SQLiteStorage)
            assert system.currency.code == "USD"

    def test_end_to_end(self, sqlite_config):
        """Test posting, moving, voiding and reporting across a restart"""
        with FundLedgerSystem(config=sqlite_config) as system:
            seed(system)
            gift = system.ledger.record_giving(BOOKKEEPER, date(2024, 1, 15), "checking",
                                               "donations", "general", 10000,
                                               memo="Sunday giving")
            bill = system.ledger.record_expense(BOOKKEEPER, date(2024, 2, 3), "utilities",
                                                "checking", "general", 2500)
            checking_line = next(l for l in gift.lines if l.account_id == "checking")
            system.mutator.move_lines(BOOKKEEPER, gift.id, [checking_line.id], "savings")
            system.ledger.void_transaction(BOOKKEEPER, bill.id, reason="Duplicate bill")
            system.budget_store.save_budget(BOOKKEEPER, 2025, [
                BudgetEntry("utilities", "general", 30000)
            ], status=BudgetStatus.FINAL)

        with FundLedgerSystem(config=sqlite_config) as system:
            transactions = system.ledger.list_transactions()
            assert len(transactions) == 2
            assert [t.id for t in system.ledger.list_transactions(
                TransactionFilter(include_void=False))] == [gift.id]
            assert system.ledger.get_transaction(bill.id).void_reason == "Duplicate bill"

            sheet = system.reporting.balance_sheet(VIEWER, date(2024, 12, 31))
            assert {l.account_id: l.amount for l in sheet.assets} == {"savings": 10000}
            assert {l.account_id: l.amount for l in sheet.net_assets} == {"net_assets": 10000}

            report = system.reporting.quarterly_income_statement(VIEWER, 2024)
            assert report.annual.net_income == 10000

            projection = system.projector.project(VIEWER, 2025)
            assert projection.row("donations", "general").proposed_amount == 10000
            assert projection.row("utilities", "general").proposed_amount == 30000
            assert system.budget_store.get_budget(2025).is_final

            assert system.audit_trail.verify_integrity()["valid"]

    def test_failed_posting_leaves_database_unchanged(self, sqlite_config):
        """Test that a rejected posting writes nothing to SQLite"""
        with FundLedgerSystem(config=sqlite_config) as system:
            seed(system)
            before = system.audit_trail.count_events()
            with pytest.raises(ValidationError):
                system.ledger.transfer_between_accounts(BOOKKEEPER, date(2024, 1, 1),
                                                        "checking", "missing", "general", 100)
            assert system.ledger.list_transactions() == []
            assert system.audit_trail.count_events() == before

    def test_audit_can_be_disabled(self):
        """Test running with audit logging switched off"""
        config = FundLedgerConfig(_env_file=None, database_url="memory://",
                                  enable_audit_logging=False)
        system = FundLedgerSystem(config=config)
        seed(system)
        assert system.audit_trail.count_events() == 0
