"""
Reporting Facade

Shapes aggregation output into financial statements: balance sheet, income
statement (single period, monthly, quarterly with annual summary), fund
summary and budget variance.

Statements present natural signs: assets and expenses as recorded,
liabilities, net assets and income negated from the debit-positive ledger.
Accounting identities are checked on every statement; a failure raises
InternalConsistencyError rather than returning figures that do not add up.
"""

from datetime import date, datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging

from .chart import ChartOfAccounts, Account, AccountType, natural_amount
from .aggregation import AggregationEngine, CancellationToken, Granularity, Posting
from .budgets import Budget, BudgetProjector, BudgetStore, BudgetVariance
from .currency import Currency
from .errors import InternalConsistencyError, ValidationError
from .rbac import Actor, Permission, require_permission
from .logging_config import log_action

logger = logging.getLogger(__name__)

UNALLOCATED_NET_ASSETS = "Unallocated change in net assets"


class ReportType(Enum):
    BALANCE_SHEET = "balance_sheet"
    INCOME_STATEMENT = "income_statement"
    QUARTERLY_INCOME_STATEMENT = "quarterly_income_statement"
    FUND_SUMMARY = "fund_summary"
    BUDGET_VARIANCE = "budget_variance"
    DASHBOARD = "dashboard"


@dataclass
class StatementLine:
    """One account's figure on a statement, natural sign"""
    account_id: Optional[str]  # None for synthesized lines
    account_number: Optional[int]
    account_name: str
    amount: int
    budgeted: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FundBalance:
    fund_id: str
    fund_name: str
    is_restricted: bool
    balance: int  # Assets less liabilities held in the fund

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BalanceSheet:
    as_of: date
    assets: List[StatementLine]
    liabilities: List[StatementLine]
    net_assets: List[StatementLine]
    fund_balances: List[FundBalance]
    currency: str = Currency.USD.code
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_assets(self) -> int:
        return sum(line.amount for line in self.assets)

    @property
    def total_liabilities(self) -> int:
        return sum(line.amount for line in self.liabilities)

    @property
    def total_net_assets(self) -> int:
        return sum(line.amount for line in self.net_assets)

    @property
    def total_fund_balances(self) -> int:
        return sum(fund.balance for fund in self.fund_balances)

    @property
    def is_balanced(self) -> bool:
        return self.total_assets == self.total_liabilities + self.total_net_assets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_type": ReportType.BALANCE_SHEET.value,
            "as_of": self.as_of.isoformat(),
            "currency": self.currency,
            "generated_at": self.generated_at.isoformat(),
            "assets": [line.to_dict() for line in self.assets],
            "liabilities": [line.to_dict() for line in self.liabilities],
            "net_assets": [line.to_dict() for line in self.net_assets],
            "fund_balances": [fund.to_dict() for fund in self.fund_balances],
            "total_assets": self.total_assets,
            "total_liabilities": self.total_liabilities,
            "total_net_assets": self.total_net_assets,
            "total_fund_balances": self.total_fund_balances,
            "is_balanced": self.is_balanced,
        }


@dataclass
class IncomeStatement:
    label: str
    start: date
    end: date
    income: List[StatementLine]
    expenses: List[StatementLine]
    fund_id: Optional[str] = None
    currency: str = Currency.USD.code

    @property
    def total_income(self) -> int:
        return sum(line.amount for line in self.income)

    @property
    def total_expenses(self) -> int:
        return sum(line.amount for line in self.expenses)

    @property
    def net_income(self) -> int:
        return self.total_income - self.total_expenses

    @property
    def has_budget(self) -> bool:
        return any(line.budgeted is not None for line in self.income + self.expenses)

    @property
    def budgeted_income(self) -> Optional[int]:
        if not self.has_budget:
            return None
        return sum(line.budgeted or 0 for line in self.income)

    @property
    def budgeted_expenses(self) -> Optional[int]:
        if not self.has_budget:
            return None
        return sum(line.budgeted or 0 for line in self.expenses)

    def line(self, account_id: str) -> Optional[StatementLine]:
        for line in self.income + self.expenses:
            if line.account_id == account_id:
                return line
        return None

    def amounts(self) -> Dict[str, int]:
        return {line.account_id: line.amount for line in self.income + self.expenses}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_type": ReportType.INCOME_STATEMENT.value,
            "label": self.label,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "fund_id": self.fund_id,
            "currency": self.currency,
            "income": [line.to_dict() for line in self.income],
            "expenses": [line.to_dict() for line in self.expenses],
            "total_income": self.total_income,
            "total_expenses": self.total_expenses,
            "net_income": self.net_income,
            "budgeted_income": self.budgeted_income,
            "budgeted_expenses": self.budgeted_expenses,
        }


@dataclass
class QuarterlyIncomeStatement:
    fiscal_year: int
    quarters: List[IncomeStatement]
    annual: IncomeStatement

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_type": ReportType.QUARTERLY_INCOME_STATEMENT.value,
            "fiscal_year": self.fiscal_year,
            "quarters": [q.to_dict() for q in self.quarters],
            "annual": self.annual.to_dict(),
        }


@dataclass
class FundSummaryRow:
    fund_id: str
    fund_name: str
    is_restricted: bool
    beginning_balance: int
    total_income: int
    total_expenses: int
    other_changes: int  # Transfers and direct net-asset entries
    ending_balance: int
    planned_income: Optional[int] = None
    planned_expenses: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FundSummary:
    start: date
    end: date
    rows: List[FundSummaryRow]
    currency: str = Currency.USD.code

    def row(self, fund_id: str) -> Optional[FundSummaryRow]:
        for row in self.rows:
            if row.fund_id == fund_id:
                return row
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_type": ReportType.FUND_SUMMARY.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "currency": self.currency,
            "rows": [row.to_dict() for row in self.rows],
        }


@dataclass
class IncomeExpenseTotals:
    """Income and expense for one dashboard period, natural sign"""
    label: str
    start: date
    end: date
    total_income: int
    total_expenses: int

    @property
    def net_increase(self) -> int:
        return self.total_income - self.total_expenses

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["start"] = self.start.isoformat()
        result["end"] = self.end.isoformat()
        result["net_increase"] = self.net_increase
        return result


@dataclass
class FundActivity:
    fund_id: str
    fund_name: str
    is_restricted: bool
    income: int
    expenses: int

    @property
    def net_change(self) -> int:
        return self.income - self.expenses

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["net_change"] = self.net_change
        return result


def _months_in_range(start: date, end: date) -> List[int]:
    months = []
    cursor = date(start.year, start.month, 1)
    while cursor <= end:
        months.append(cursor.month)
        cursor = (cursor + timedelta(days=32)).replace(day=1)
    return months


class ReportingFacade:
    """Statement builder over the aggregation engine"""

    def __init__(
        self,
        aggregation: AggregationEngine,
        chart: ChartOfAccounts,
        budget_store: BudgetStore,
        projector: BudgetProjector,
        currency: Currency = Currency.USD
    ):
        self.aggregation = aggregation
        self.chart = chart
        self.budget_store = budget_store
        self.projector = projector
        self.currency = currency

    def _accounts(self) -> Dict[str, Account]:
        return self.chart.accounts_by_id()

    def _account_for(self, accounts: Dict[str, Account], account_id: str) -> Account:
        account = accounts.get(account_id)
        if account is None:
            logger.error("Posting references missing account %s", account_id)
            raise InternalConsistencyError(
                f"Posted line references unknown account {account_id}",
                check="referential_integrity", details={"account_id": account_id}
            )
        return account

    # Balance sheet

    def balance_sheet(self, actor: Actor, as_of: date,
                      cancel: Optional[CancellationToken] = None) -> BalanceSheet:
        """
        Point-in-time position. Accumulated income less expense is shown
        inside net assets: under each fund's mapped equity account, or on
        one unallocated line for funds without a mapping.

        Raises:
            InternalConsistencyError: assets differ from liabilities plus net assets
        """
        require_permission(actor, Permission.VIEW_REPORTS)
        raw = self.aggregation.totals_by_account_and_fund(None, as_of, cancel=cancel)
        accounts = self._accounts()
        funds = self.chart.funds_by_id()

        by_account: Dict[str, int] = {}
        surplus_by_fund: Dict[str, int] = {}
        fund_position: Dict[str, int] = {}
        for (account_id, fund_id), amount in raw.items():
            account = self._account_for(accounts, account_id)
            by_account[account_id] = by_account.get(account_id, 0) + amount
            if account.account_type in (AccountType.INCOME, AccountType.EXPENSE):
                surplus_by_fund[fund_id] = surplus_by_fund.get(fund_id, 0) - amount
            elif account.account_type in (AccountType.ASSET, AccountType.LIABILITY):
                fund_position[fund_id] = fund_position.get(fund_id, 0) + amount

        # Fold each fund's surplus into its mapped equity account
        allocated: Dict[str, int] = {}
        unallocated = 0
        for fund_id, surplus in surplus_by_fund.items():
            fund = funds.get(fund_id)
            if (fund is not None and fund.net_asset_account_id in accounts
                    and accounts[fund.net_asset_account_id].account_type == AccountType.EQUITY):
                target = fund.net_asset_account_id
                allocated[target] = allocated.get(target, 0) + surplus
            else:
                unallocated += surplus

        sections: Dict[AccountType, List[StatementLine]] = {
            AccountType.ASSET: [], AccountType.LIABILITY: [], AccountType.EQUITY: []
        }
        for account in self.chart.list_accounts():
            if not account.account_type.is_balance_sheet:
                continue
            amount = natural_amount(account.account_type, by_account.get(account.id, 0))
            amount += allocated.get(account.id, 0)
            if amount == 0 and account.id not in by_account and account.id not in allocated:
                continue
            sections[account.account_type].append(StatementLine(
                account.id, account.account_number, account.name, amount))
        if unallocated:
            sections[AccountType.EQUITY].append(
                StatementLine(None, None, UNALLOCATED_NET_ASSETS, unallocated))

        fund_balances = [
            FundBalance(fund.id, fund.name, fund.is_restricted, fund_position.get(fund.id, 0))
            for fund in self.chart.list_funds()
            if fund.id in fund_position or fund.is_active
        ]

        sheet = BalanceSheet(
            as_of=as_of,
            assets=sections[AccountType.ASSET],
            liabilities=sections[AccountType.LIABILITY],
            net_assets=sections[AccountType.EQUITY],
            fund_balances=fund_balances,
            currency=self.currency.code
        )

        difference = sheet.total_assets - sheet.total_liabilities - sheet.total_net_assets
        if difference != 0:
            logger.error("Balance sheet as of %s out of balance by %d", as_of, difference)
            raise InternalConsistencyError(
                f"Balance sheet as of {as_of} does not balance",
                check="balance_sheet_identity",
                details={"total_assets": sheet.total_assets,
                         "total_liabilities": sheet.total_liabilities,
                         "total_net_assets": sheet.total_net_assets,
                         "difference": difference}
            )
        if sheet.total_fund_balances != sheet.total_assets - sheet.total_liabilities:
            logger.error("Fund balances as of %s do not match net position", as_of)
            raise InternalConsistencyError(
                f"Fund balances as of {as_of} do not match assets less liabilities",
                check="fund_balance_identity",
                details={"total_fund_balances": sheet.total_fund_balances}
            )

        log_action(logger, "info", f"Balance sheet as of {as_of}", user_id=actor.actor_id,
                   action=ReportType.BALANCE_SHEET.value, resource="report")
        return sheet

    # Income statements

    def _budget_for_range(self, start: date, end: date) -> Optional[Budget]:
        fiscal_year = self.aggregation.fiscal_year_of(start)
        if self.aggregation.fiscal_year_of(end) != fiscal_year:
            return None
        return self.budget_store.find_budget(fiscal_year)

    def _build_statement(
        self,
        label: str,
        start: date,
        end: date,
        totals: Dict[str, int],
        accounts: Dict[str, Account],
        budget: Optional[Budget],
        fund_id: Optional[str] = None
    ) -> IncomeStatement:
        budgeted: Dict[str, int] = {}
        if budget is not None:
            for (account_id, entry_fund), amount in budget.amounts_for_months(
                    _months_in_range(start, end),
                    self.aggregation.fiscal_year_start_month).items():
                if fund_id is None or entry_fund == fund_id:
                    budgeted[account_id] = budgeted.get(account_id, 0) + amount

        income, expenses = [], []
        for account in self.chart.list_accounts():
            if account.account_type not in (AccountType.INCOME, AccountType.EXPENSE):
                continue
            if account.id not in totals and account.id not in budgeted:
                continue
            line = StatementLine(
                account.id, account.account_number, account.name,
                natural_amount(account.account_type, totals.get(account.id, 0)),
                budgeted.get(account.id) if budget is not None else None
            )
            if account.account_type == AccountType.INCOME:
                income.append(line)
            else:
                expenses.append(line)

        for account_id in totals:
            self._account_for(accounts, account_id)

        return IncomeStatement(label=label, start=start, end=end, income=income,
                               expenses=expenses, fund_id=fund_id,
                               currency=self.currency.code)

    def _income_totals(self, snapshot: List[Posting], start: date, end: date,
                       accounts: Dict[str, Account], fund_id: Optional[str],
                       cancel: Optional[CancellationToken]) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        raw = self.aggregation.totals_by_account_and_fund(start, end, cancel=cancel,
                                                          snapshot=snapshot)
        for (account_id, entry_fund), amount in raw.items():
            account = self._account_for(accounts, account_id)
            if account.account_type not in (AccountType.INCOME, AccountType.EXPENSE):
                continue
            if fund_id is not None and entry_fund != fund_id:
                continue
            totals[account_id] = totals.get(account_id, 0) + amount
        return totals

    def income_statement(self, actor: Actor, start: date, end: date,
                         fund_id: Optional[str] = None,
                         cancel: Optional[CancellationToken] = None) -> IncomeStatement:
        """
        Income and expense activity for start..end, optionally for one fund.

        When a budget exists for the fiscal year containing the range, each
        line carries the budget for the months the range touches.
        """
        require_permission(actor, Permission.VIEW_REPORTS)
        if fund_id is not None:
            self.chart.get_fund(fund_id)
        accounts = self._accounts()
        snapshot = self.aggregation.postings(cancel)
        totals = self._income_totals(snapshot, start, end, accounts, fund_id, cancel)
        statement = self._build_statement(f"{start.isoformat()} to {end.isoformat()}",
                                          start, end, totals, accounts,
                                          self._budget_for_range(start, end), fund_id)
        log_action(logger, "info", f"Income statement {statement.label}",
                   user_id=actor.actor_id, action=ReportType.INCOME_STATEMENT.value,
                   resource="report")
        return statement

    def monthly_income_statement(self, actor: Actor, year: int, month: int,
                                 fund_id: Optional[str] = None,
                                 cancel: Optional[CancellationToken] = None) -> IncomeStatement:
        if not 1 <= month <= 12:
            raise ValidationError("Month must be 1-12", rule="month", details={"month": month})
        start = date(year, month, 1)
        end = (start + timedelta(days=32)).replace(day=1) - timedelta(days=1)
        statement = self.income_statement(actor, start, end, fund_id=fund_id, cancel=cancel)
        statement.label = start.strftime("%Y-%m")
        return statement

    def quarterly_income_statement(self, actor: Actor, fiscal_year: int,
                                   cancel: Optional[CancellationToken] = None
                                   ) -> QuarterlyIncomeStatement:
        """
        Four quarters plus an annual summary from one snapshot.

        Quarters are grouped by period and the annual column is totalled
        independently; the two must agree exactly.

        Raises:
            InternalConsistencyError: the quarters do not sum to the annual figures
        """
        require_permission(actor, Permission.VIEW_REPORTS)
        accounts = self._accounts()
        income_expense_ids = [a.id for a in accounts.values()
                              if a.account_type in (AccountType.INCOME, AccountType.EXPENSE)]
        year_start, year_end = self.aggregation.fiscal_year_range(fiscal_year)
        budget = self.budget_store.find_budget(fiscal_year)

        snapshot = self.aggregation.postings(cancel)
        periods = self.aggregation.group_by_period(
            Granularity.QUARTER, year_start, year_end, account_ids=income_expense_ids,
            cancel=cancel, snapshot=snapshot)
        quarters = [self._build_statement(p.label, p.start, p.end, p.totals, accounts, budget)
                    for p in periods]
        annual_totals = self._income_totals(snapshot, year_start, year_end, accounts,
                                            None, cancel)
        annual = self._build_statement(self.aggregation.year_label(fiscal_year),
                                       year_start, year_end, annual_totals, accounts, budget)

        mismatches = {}
        for account_id in set(annual_totals) | {a for q in periods for a in q.totals}:
            quarter_sum = sum(q.totals.get(account_id, 0) for q in periods)
            if quarter_sum != annual_totals.get(account_id, 0):
                mismatches[account_id] = {"quarters": quarter_sum,
                                          "annual": annual_totals.get(account_id, 0)}
        if annual.has_budget:
            for field_name in ("budgeted_income", "budgeted_expenses"):
                quarter_sum = sum(getattr(q, field_name) or 0 for q in quarters)
                if quarter_sum != getattr(annual, field_name):
                    mismatches[field_name] = {"quarters": quarter_sum,
                                              "annual": getattr(annual, field_name)}
        if mismatches or sum(q.net_income for q in quarters) != annual.net_income:
            logger.error("Quarterly totals for %s do not sum to annual: %s", fiscal_year, mismatches)
            raise InternalConsistencyError(
                f"Quarterly income for {fiscal_year} does not sum to the annual total",
                check="quarterly_sum", details={"accounts": mismatches}
            )

        log_action(logger, "info", f"Quarterly income statement {fiscal_year}",
                   user_id=actor.actor_id,
                   action=ReportType.QUARTERLY_INCOME_STATEMENT.value, resource="report")
        return QuarterlyIncomeStatement(fiscal_year=fiscal_year, quarters=quarters,
                                        annual=annual)

    # Fund summary

    def fund_summary(self, actor: Actor, start: date, end: date,
                     cancel: Optional[CancellationToken] = None) -> FundSummary:
        """
        Per fund: balance before ``start``, income and expenses in the range,
        other changes (transfers, net-asset entries) and balance at ``end``.
        Balances are assets less liabilities held in the fund.
        """
        require_permission(actor, Permission.VIEW_REPORTS)
        if start > end:
            raise ValidationError(f"Start date {start} is after end date {end}",
                                  rule="date_range")
        accounts = self._accounts()
        snapshot = self.aggregation.postings(cancel)
        before = self.aggregation.totals_by_account_and_fund(
            None, start - timedelta(days=1), cancel=cancel, snapshot=snapshot)
        through = self.aggregation.totals_by_account_and_fund(
            None, end, cancel=cancel, snapshot=snapshot)
        during = self.aggregation.totals_by_account_and_fund(
            start, end, cancel=cancel, snapshot=snapshot)
        budget = self._budget_for_range(start, end)
        planned = (budget.amounts_for_months(_months_in_range(start, end),
                                             self.aggregation.fiscal_year_start_month)
                   if budget else {})

        def position(totals: Dict[Tuple[str, str], int], fund_id: str) -> int:
            return sum(amount for (account_id, f), amount in totals.items()
                       if f == fund_id and self._account_for(accounts, account_id).account_type
                       in (AccountType.ASSET, AccountType.LIABILITY))

        def activity(account_type: AccountType, fund_id: str) -> int:
            return sum(natural_amount(account_type, amount)
                       for (account_id, f), amount in during.items()
                       if f == fund_id and accounts[account_id].account_type == account_type)

        def plan(account_type: AccountType, fund_id: str) -> Optional[int]:
            if budget is None:
                return None
            return sum(amount for (account_id, f), amount in planned.items()
                       if f == fund_id and account_id in accounts
                       and accounts[account_id].account_type == account_type)

        rows = []
        used_funds = {f for (_, f) in through}
        for fund in self.chart.list_funds():
            if not fund.is_active and fund.id not in used_funds:
                continue
            beginning = position(before, fund.id)
            ending = position(through, fund.id)
            income = activity(AccountType.INCOME, fund.id)
            expenses = activity(AccountType.EXPENSE, fund.id)
            rows.append(FundSummaryRow(
                fund_id=fund.id,
                fund_name=fund.name,
                is_restricted=fund.is_restricted,
                beginning_balance=beginning,
                total_income=income,
                total_expenses=expenses,
                other_changes=ending - beginning - (income - expenses),
                ending_balance=ending,
                planned_income=plan(AccountType.INCOME, fund.id),
                planned_expenses=plan(AccountType.EXPENSE, fund.id)
            ))

        log_action(logger, "info", f"Fund summary {start} to {end}", user_id=actor.actor_id,
                   action=ReportType.FUND_SUMMARY.value, resource="report")
        return FundSummary(start=start, end=end, rows=rows, currency=self.currency.code)

    # Budget variance

    def budget_variance(self, actor: Actor, fiscal_year: int, as_of: Optional[date] = None,
                        cancel: Optional[CancellationToken] = None) -> BudgetVariance:
        require_permission(actor, Permission.VIEW_REPORTS)
        variance = self.projector.variance(actor, fiscal_year, as_of=as_of, cancel=cancel)
        log_action(logger, "info", f"Budget variance {fiscal_year}", user_id=actor.actor_id,
                   action=ReportType.BUDGET_VARIANCE.value, resource="report")
        return variance

    # Dashboard

    def _split_income_expense(self, totals: Dict[str, int],
                              accounts: Dict[str, Account]) -> Tuple[int, int]:
        income = expenses = 0
        for account_id, amount in totals.items():
            account_type = self._account_for(accounts, account_id).account_type
            if account_type == AccountType.INCOME:
                income += natural_amount(account_type, amount)
            elif account_type == AccountType.EXPENSE:
                expenses += natural_amount(account_type, amount)
        return income, expenses

    def ytd_income_expense(self, actor: Actor, as_of: Optional[date] = None,
                           cancel: Optional[CancellationToken] = None) -> IncomeExpenseTotals:
        """Income and expenses from the start of the fiscal year through ``as_of``"""
        require_permission(actor, Permission.VIEW_REPORTS)
        as_of = as_of or date.today()
        fiscal_year = self.aggregation.fiscal_year_of(as_of)
        start, _ = self.aggregation.fiscal_year_range(fiscal_year)
        totals = self.aggregation.totals_by_account(start, as_of, cancel=cancel)
        income, expenses = self._split_income_expense(totals, self._accounts())
        log_action(logger, "debug", f"Year-to-date income and expense through {as_of}",
                   user_id=actor.actor_id, action=ReportType.DASHBOARD.value, resource="report")
        return IncomeExpenseTotals(self.aggregation.year_label(fiscal_year), start, as_of,
                                   income, expenses)

    def recent_monthly_income_expense(self, actor: Actor, as_of: Optional[date] = None,
                                      months: int = 6,
                                      cancel: Optional[CancellationToken] = None
                                      ) -> List[IncomeExpenseTotals]:
        """
        Income and expenses for each of the last ``months`` calendar months,
        oldest first, ending with the month containing ``as_of``.
        """
        require_permission(actor, Permission.VIEW_REPORTS)
        if months < 1:
            raise ValidationError("At least one month is required", rule="month_count",
                                  details={"months": months})
        as_of = as_of or date.today()
        index = as_of.year * 12 + as_of.month - 1 - (months - 1)
        start = date(index // 12, index % 12 + 1, 1)
        month_start = date(as_of.year, as_of.month, 1)
        end = (month_start + timedelta(days=32)).replace(day=1) - timedelta(days=1)

        accounts = self._accounts()
        income_expense_ids = [a.id for a in accounts.values()
                              if a.account_type in (AccountType.INCOME, AccountType.EXPENSE)]
        periods = self.aggregation.group_by_period(Granularity.MONTH, start, end,
                                                   account_ids=income_expense_ids,
                                                   cancel=cancel)
        result = []
        for period in periods:
            income, expenses = self._split_income_expense(period.totals, accounts)
            result.append(IncomeExpenseTotals(period.label, period.start, period.end,
                                              income, expenses))
        return result

    def ytd_fund_activity(self, actor: Actor, as_of: Optional[date] = None,
                          cancel: Optional[CancellationToken] = None) -> List[FundActivity]:
        """Year-to-date income and expenses for each fund with activity"""
        require_permission(actor, Permission.VIEW_REPORTS)
        as_of = as_of or date.today()
        start, _ = self.aggregation.fiscal_year_range(self.aggregation.fiscal_year_of(as_of))
        raw = self.aggregation.totals_by_account_and_fund(start, as_of, cancel=cancel)
        accounts = self._accounts()

        by_fund: Dict[str, Dict[str, int]] = {}
        for (account_id, fund_id), amount in raw.items():
            self._account_for(accounts, account_id)
            fund_totals = by_fund.setdefault(fund_id, {})
            fund_totals[account_id] = fund_totals.get(account_id, 0) + amount

        result = []
        for fund in self.chart.list_funds():
            if fund.id not in by_fund:
                continue
            income, expenses = self._split_income_expense(by_fund[fund.id], accounts)
            result.append(FundActivity(fund.id, fund.name, fund.is_restricted, income, expenses))
        return result
