"""
Shared fixtures: in-memory system, a small church chart of accounts and
funds, and one actor per role.
"""

import pytest
from datetime import date

from fund_ledger.config import FundLedgerConfig
from fund_ledger.storage import InMemoryStorage
from fund_ledger.audit import AuditTrail
from fund_ledger.chart import AccountType
from fund_ledger.ledger import Line
from fund_ledger.rbac import Actor, Role
from fund_ledger.system import FundLedgerSystem


@pytest.fixture
def storage():
    """Create in-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def bookkeeper():
    return Actor("bookkeeper-1", Role.BOOKKEEPER)


@pytest.fixture
def viewer():
    return Actor("viewer-1", Role.VIEWER)


@pytest.fixture
def config():
    return FundLedgerConfig(database_url="memory://", enable_audit_logging=True)


@pytest.fixture
def system(storage, config):
    """Unseeded system over in-memory storage"""
    return FundLedgerSystem(storage=storage, config=config)


CHART = [
    ("checking", 1010, "Checking", AccountType.ASSET),
    ("savings", 1020, "Savings", AccountType.ASSET),
    ("payables", 2010, "Accounts Payable", AccountType.LIABILITY),
    ("na_unrestricted", 3010, "Net Assets - Unrestricted", AccountType.EQUITY),
    ("na_restricted", 3020, "Net Assets - Restricted", AccountType.EQUITY),
    ("donations", 4010, "Donation Income", AccountType.INCOME),
    ("offerings", 4020, "Offering Income", AccountType.INCOME),
    ("utilities", 5010, "Utilities", AccountType.EXPENSE),
    ("salaries", 5020, "Salaries", AccountType.EXPENSE),
]


@pytest.fixture
def ledger_system(system, admin):
    """System with the standard chart and three funds"""
    for account_id, number, name, account_type in CHART:
        system.chart.create_account(admin, number, name, account_type, account_id=account_id)

    system.chart.create_fund(admin, "Unrestricted", fund_id="general",
                             net_asset_account_id="na_unrestricted")
    system.chart.create_fund(admin, "Building Fund", is_restricted=True, fund_id="building",
                             net_asset_account_id="na_restricted")
    system.chart.create_fund(admin, "Missions", is_restricted=True, fund_id="missions")
    return system


@pytest.fixture
def t1(ledger_system, bookkeeper):
    """Gift of 100.00 deposited to checking on 2024-01-15"""
    return ledger_system.ledger.create_transaction(
        bookkeeper, date(2024, 1, 15), "Sunday giving", [
            Line.debit("checking", "general", 10000),
            Line.credit("donations", "general", 10000),
        ]
    )
