"""
Chart of Accounts Module

Manages general-ledger accounts and restriction funds. An account's type is
frozen once any transaction line references it, and neither accounts nor
funds can be deleted while referenced; retire them by deactivating instead.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError, DuplicateIdentifierError
from .rbac import Actor, Permission, require_permission
from .logging_config import log_action

logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = "accounts"
FUNDS_TABLE = "funds"
TRANSACTIONS_TABLE = "transactions"
BUDGETS_TABLE = "budgets"


class NormalBalance(Enum):
    """Side on which an account normally carries its balance"""
    DEBIT = "debit"
    CREDIT = "credit"


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance (net assets)
    INCOME = "income"         # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance

    @property
    def normal_balance(self) -> NormalBalance:
        if self in (AccountType.ASSET, AccountType.EXPENSE):
            return NormalBalance.DEBIT
        return NormalBalance.CREDIT

    @property
    def is_balance_sheet(self) -> bool:
        return self in (AccountType.ASSET, AccountType.LIABILITY, AccountType.EQUITY)


def natural_amount(account_type: AccountType, signed_amount: int) -> int:
    """
    Present a debit-positive signed total on the account's normal side.

    Debits are positive and credits negative throughout the engine; credit-
    normal accounts (liability, equity, income) are negated for display.
    """
    if account_type.normal_balance == NormalBalance.CREDIT:
        return -signed_amount
    return signed_amount


@dataclass
class Account(StorageRecord):
    """Chart-of-accounts entry"""
    account_number: int
    name: str
    account_type: AccountType
    is_active: bool = True
    description: str = ""

    @property
    def normal_balance(self) -> NormalBalance:
        return self.account_type.normal_balance

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data['account_type'] = AccountType(data['account_type'])
        return super().from_dict(data)


@dataclass
class Fund(StorageRecord):
    """Restriction bucket orthogonal to account type"""
    name: str
    is_restricted: bool = False
    is_active: bool = True
    description: str = ""
    net_asset_account_id: Optional[str] = None  # Equity account shown on the balance sheet


class ChartOfAccounts:
    """
    Chart of accounts and funds.

    Reads are unrestricted; every change requires an admin actor.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail

    # Account reads

    def get_account(self, account_id: str) -> Account:
        data = self.storage.load(ACCOUNTS_TABLE, account_id)
        if not data:
            raise NotFoundError("account", account_id)
        return Account.from_dict(data)

    def find_account(self, account_id: str) -> Optional[Account]:
        """Like get_account but returns None for unknown ids"""
        data = self.storage.load(ACCOUNTS_TABLE, account_id)
        return Account.from_dict(data) if data else None

    def list_accounts(self, account_type: Optional[AccountType] = None,
                      active_only: bool = False) -> List[Account]:
        """Accounts ordered by account number"""
        accounts = [Account.from_dict(d) for d in self.storage.load_all(ACCOUNTS_TABLE)]
        if account_type is not None:
            accounts = [a for a in accounts if a.account_type == account_type]
        if active_only:
            accounts = [a for a in accounts if a.is_active]
        accounts.sort(key=lambda a: (a.account_number, a.id))
        return accounts

    def accounts_by_id(self) -> Dict[str, Account]:
        return {a.id: a for a in self.list_accounts()}

    # Account changes

    def create_account(
        self,
        actor: Actor,
        account_number: int,
        name: str,
        account_type: AccountType,
        description: str = "",
        account_id: Optional[str] = None
    ) -> Account:
        """
        Add an account to the chart

        Raises:
            ValidationError: blank name or non-integer account number
            DuplicateIdentifierError: id or account number already in use
        """
        require_permission(actor, Permission.MANAGE_CHART_OF_ACCOUNTS)
        self._check_account_fields(account_number, name)

        now = datetime.now(timezone.utc)
        account = Account(
            id=account_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number,
            name=name.strip(),
            account_type=AccountType(account_type),
            description=description
        )

        with self.storage.atomic():
            self._check_account_number_free(account_number)
            self.storage.insert(ACCOUNTS_TABLE, account.id, account.to_dict())
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CREATED, "account", account.id,
                {"account_number": account_number, "name": account.name,
                 "account_type": account.account_type},
                user_id=actor.actor_id
            )

        log_action(logger, "info", f"Created account {account.account_number} {account.name}",
                   user_id=actor.actor_id, action="create_account", resource=account.id)
        return account

    def update_account(
        self,
        actor: Actor,
        account_id: str,
        name: Optional[str] = None,
        account_number: Optional[int] = None,
        account_type: Optional[AccountType] = None,
        description: Optional[str] = None
    ) -> Account:
        """
        Change account attributes.

        The type cannot change once any transaction line references the account.
        """
        require_permission(actor, Permission.MANAGE_CHART_OF_ACCOUNTS)

        with self.storage.atomic():
            account = self.get_account(account_id)
            changes: Dict[str, Any] = {}

            if name is not None:
                self._check_account_fields(account.account_number, name)
                account.name = name.strip()
                changes['name'] = account.name

            if account_number is not None and account_number != account.account_number:
                self._check_account_fields(account_number, account.name)
                self._check_account_number_free(account_number, exclude_id=account_id)
                account.account_number = account_number
                changes['account_number'] = account_number

            if account_type is not None and AccountType(account_type) != account.account_type:
                if self.account_reference_count(account_id) > 0:
                    raise ValidationError(
                        f"Account {account_id} type cannot change after it has been used",
                        rule="account_type_immutable",
                        details={"account_id": account_id}
                    )
                account.account_type = AccountType(account_type)
                changes['account_type'] = account.account_type

            if description is not None:
                account.description = description
                changes['description'] = description

            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(ACCOUNTS_TABLE, account.id, account.to_dict())
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_UPDATED, "account", account.id, changes,
                user_id=actor.actor_id
            )

        return account

    def set_account_active(self, actor: Actor, account_id: str, is_active: bool) -> Account:
        """Activate or retire an account"""
        require_permission(actor, Permission.MANAGE_CHART_OF_ACCOUNTS)

        with self.storage.atomic():
            account = self.get_account(account_id)
            account.is_active = is_active
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(ACCOUNTS_TABLE, account.id, account.to_dict())
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_ACTIVATED if is_active else AuditEventType.ACCOUNT_DEACTIVATED,
                "account", account.id, {"account_number": account.account_number},
                user_id=actor.actor_id
            )

        log_action(logger, "info",
                   f"Account {account.account_number} {'activated' if is_active else 'deactivated'}",
                   user_id=actor.actor_id, action="set_account_active", resource=account.id)
        return account

    def delete_account(self, actor: Actor, account_id: str) -> None:
        """Delete an account that no transaction line has ever referenced"""
        require_permission(actor, Permission.MANAGE_CHART_OF_ACCOUNTS)

        with self.storage.atomic():
            account = self.get_account(account_id)
            usage = self.account_reference_count(account_id)
            if usage > 0:
                raise ValidationError(
                    f"Account {account_id} is used by {usage} transaction line(s); "
                    "deactivate it instead",
                    rule="account_referenced",
                    details={"account_id": account_id, "line_count": usage}
                )
            if self._budgeted('account_id', account_id):
                raise ValidationError(
                    f"Account {account_id} appears in a saved budget",
                    rule="account_referenced",
                    details={"account_id": account_id}
                )
            if any(f.net_asset_account_id == account_id for f in self.list_funds()):
                raise ValidationError(
                    f"Account {account_id} is mapped as a fund's net asset account",
                    rule="account_referenced",
                    details={"account_id": account_id}
                )
            self.storage.delete(ACCOUNTS_TABLE, account_id)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_DELETED, "account", account_id,
                {"account_number": account.account_number, "name": account.name},
                user_id=actor.actor_id
            )

    # Fund reads

    def get_fund(self, fund_id: str) -> Fund:
        data = self.storage.load(FUNDS_TABLE, fund_id)
        if not data:
            raise NotFoundError("fund", fund_id)
        return Fund.from_dict(data)

    def find_fund(self, fund_id: str) -> Optional[Fund]:
        data = self.storage.load(FUNDS_TABLE, fund_id)
        return Fund.from_dict(data) if data else None

    def list_funds(self, active_only: bool = False) -> List[Fund]:
        """Funds ordered unrestricted first, then by name"""
        funds = [Fund.from_dict(d) for d in self.storage.load_all(FUNDS_TABLE)]
        if active_only:
            funds = [f for f in funds if f.is_active]
        funds.sort(key=lambda f: (f.is_restricted, f.name.lower(), f.id))
        return funds

    def funds_by_id(self) -> Dict[str, Fund]:
        return {f.id: f for f in self.list_funds()}

    # Fund changes

    def create_fund(
        self,
        actor: Actor,
        name: str,
        is_restricted: bool = False,
        description: str = "",
        net_asset_account_id: Optional[str] = None,
        fund_id: Optional[str] = None
    ) -> Fund:
        """Add a restriction fund"""
        require_permission(actor, Permission.MANAGE_FUNDS)
        if not name or not name.strip():
            raise ValidationError("Fund name is required", rule="fund_name")

        now = datetime.now(timezone.utc)
        fund = Fund(
            id=fund_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            is_restricted=is_restricted,
            description=description
        )

        with self.storage.atomic():
            if net_asset_account_id is not None:
                self._check_net_asset_account(net_asset_account_id)
                fund.net_asset_account_id = net_asset_account_id
            self.storage.insert(FUNDS_TABLE, fund.id, fund.to_dict())
            self.audit_trail.log_event(
                AuditEventType.FUND_CREATED, "fund", fund.id,
                {"name": fund.name, "is_restricted": is_restricted},
                user_id=actor.actor_id
            )

        log_action(logger, "info", f"Created fund {fund.name}",
                   user_id=actor.actor_id, action="create_fund", resource=fund.id)
        return fund

    def update_fund(
        self,
        actor: Actor,
        fund_id: str,
        name: Optional[str] = None,
        is_restricted: Optional[bool] = None,
        description: Optional[str] = None
    ) -> Fund:
        require_permission(actor, Permission.MANAGE_FUNDS)

        with self.storage.atomic():
            fund = self.get_fund(fund_id)
            changes: Dict[str, Any] = {}
            if name is not None:
                if not name.strip():
                    raise ValidationError("Fund name is required", rule="fund_name")
                fund.name = name.strip()
                changes['name'] = fund.name
            if is_restricted is not None:
                fund.is_restricted = is_restricted
                changes['is_restricted'] = is_restricted
            if description is not None:
                fund.description = description
                changes['description'] = description

            fund.updated_at = datetime.now(timezone.utc)
            self.storage.save(FUNDS_TABLE, fund.id, fund.to_dict())
            self.audit_trail.log_event(
                AuditEventType.FUND_UPDATED, "fund", fund.id, changes,
                user_id=actor.actor_id
            )
        return fund

    def set_fund_net_asset_account(self, actor: Actor, fund_id: str,
                                   account_id: Optional[str]) -> Fund:
        """Map (or unmap with None) the equity account a fund's surplus is shown under"""
        require_permission(actor, Permission.MANAGE_FUNDS)

        with self.storage.atomic():
            fund = self.get_fund(fund_id)
            if account_id is not None:
                self._check_net_asset_account(account_id)
            fund.net_asset_account_id = account_id
            fund.updated_at = datetime.now(timezone.utc)
            self.storage.save(FUNDS_TABLE, fund.id, fund.to_dict())
            self.audit_trail.log_event(
                AuditEventType.FUND_UPDATED, "fund", fund.id,
                {"net_asset_account_id": account_id},
                user_id=actor.actor_id
            )
        return fund

    def set_fund_active(self, actor: Actor, fund_id: str, is_active: bool) -> Fund:
        require_permission(actor, Permission.MANAGE_FUNDS)

        with self.storage.atomic():
            fund = self.get_fund(fund_id)
            fund.is_active = is_active
            fund.updated_at = datetime.now(timezone.utc)
            self.storage.save(FUNDS_TABLE, fund.id, fund.to_dict())
            self.audit_trail.log_event(
                AuditEventType.FUND_ACTIVATED if is_active else AuditEventType.FUND_DEACTIVATED,
                "fund", fund.id, {"name": fund.name},
                user_id=actor.actor_id
            )
        return fund

    def delete_fund(self, actor: Actor, fund_id: str) -> None:
        """Delete a fund that no transaction line has ever referenced"""
        require_permission(actor, Permission.MANAGE_FUNDS)

        with self.storage.atomic():
            fund = self.get_fund(fund_id)
            usage = self.fund_reference_count(fund_id)
            if usage > 0:
                raise ValidationError(
                    f"Fund {fund_id} is used by {usage} transaction line(s); "
                    "deactivate it instead",
                    rule="fund_referenced",
                    details={"fund_id": fund_id, "line_count": usage}
                )
            if self._budgeted('fund_id', fund_id):
                raise ValidationError(
                    f"Fund {fund_id} appears in a saved budget",
                    rule="fund_referenced",
                    details={"fund_id": fund_id}
                )
            self.storage.delete(FUNDS_TABLE, fund_id)
            self.audit_trail.log_event(
                AuditEventType.FUND_DELETED, "fund", fund_id, {"name": fund.name},
                user_id=actor.actor_id
            )

    # Reference counting

    def _count_lines(self, field_name: str, value: str) -> int:
        count = 0
        for txn in self.storage.load_all(TRANSACTIONS_TABLE):
            count += sum(1 for line in txn.get('lines', []) if line.get(field_name) == value)
        return count

    def account_reference_count(self, account_id: str) -> int:
        """Number of lines (posted or void) that reference the account"""
        return self._count_lines('account_id', account_id)

    def fund_reference_count(self, fund_id: str) -> int:
        """Number of lines (posted or void) that reference the fund"""
        return self._count_lines('fund_id', fund_id)

    def _budgeted(self, field_name: str, value: str) -> bool:
        return any(entry.get(field_name) == value
                   for budget in self.storage.load_all(BUDGETS_TABLE)
                   for entry in budget.get('entries', []))

    # Helpers

    def _check_account_fields(self, account_number: int, name: str) -> None:
        if isinstance(account_number, bool) or not isinstance(account_number, int):
            raise ValidationError("Account number must be an integer",
                                  rule="account_number")
        if not name or not name.strip():
            raise ValidationError("Account name is required", rule="account_name")

    def _check_account_number_free(self, account_number: int,
                                   exclude_id: Optional[str] = None) -> None:
        for data in self.storage.find(ACCOUNTS_TABLE, {'account_number': account_number}):
            if data['id'] != exclude_id:
                raise DuplicateIdentifierError(
                    f"Account number {account_number} already exists",
                    table=ACCOUNTS_TABLE, record_id=data['id']
                )

    def _check_net_asset_account(self, account_id: str) -> None:
        account = self.get_account(account_id)
        if account.account_type != AccountType.EQUITY:
            raise ValidationError(
                f"Net asset account {account_id} must be an equity account",
                rule="net_asset_account_type",
                details={"account_id": account_id}
            )
