"""
Budget Module

Fiscal-year budgets, projection of a new budget from the prior year's
actuals, and budget-versus-actual variance.

Budget amounts are natural-sign integer minor units: planned income and
planned expense are both positive.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from enum import Enum
import logging

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .chart import ChartOfAccounts, AccountType, Account, BUDGETS_TABLE, natural_amount
from .aggregation import AggregationEngine, CancellationToken
from .currency import round_to_minor
from .errors import ValidationError, NotFoundError
from .rbac import Actor, Permission, require_permission
from .logging_config import log_action

logger = logging.getLogger(__name__)

BUDGET_ACCOUNT_TYPES = (AccountType.INCOME, AccountType.EXPENSE)
NOT_APPLICABLE = "n/a"

PairKey = Tuple[str, str]  # (account_id, fund_id)


class BudgetStatus(Enum):
    DRAFT = "draft"
    FINAL = "final"


class AmountSource(Enum):
    """Where a proposed budget amount came from"""
    HISTORICAL = "historical"
    SAVED = "saved"


@dataclass
class BudgetEntry:
    """Planned amount for an account and fund, annual or for one month"""
    account_id: str
    fund_id: str
    amount: int
    month: Optional[int] = None  # 1-12; None for an annual amount
    notes: str = ""

    @property
    def key(self) -> PairKey:
        return (self.account_id, self.fund_id)


@dataclass
class Budget(StorageRecord):
    """One fiscal year's plan; saving replaces the whole entry set"""
    fiscal_year: int
    entries: List[BudgetEntry]
    status: BudgetStatus = BudgetStatus.DRAFT
    saved_by: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status == BudgetStatus.FINAL

    def annual_amounts(self) -> Dict[PairKey, int]:
        """Full-year amount per (account, fund), monthly entries summed"""
        totals: Dict[PairKey, int] = {}
        for entry in self.entries:
            totals[entry.key] = totals.get(entry.key, 0) + entry.amount
        return totals

    def amounts_for_months(self, months: Sequence[int],
                           fiscal_year_start_month: int = 1) -> Dict[PairKey, int]:
        """
        Budget for a subset of calendar months.

        Monthly entries count when their month is included. Annual entries
        are split month by month as the difference of the half-up rounded
        cumulative twelfths, so the twelve monthly shares (and any partition
        of the year, such as its quarters) add back to the annual amount.
        """
        month_set = set(months)
        totals: Dict[PairKey, int] = {}
        for entry in self.entries:
            if entry.month is not None:
                amount = entry.amount if entry.month in month_set else 0
            else:
                amount = sum(_monthly_share(entry.amount, month, fiscal_year_start_month)
                             for month in month_set)
            totals[entry.key] = totals.get(entry.key, 0) + amount
        return totals

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Budget':
        data['status'] = BudgetStatus(data['status'])
        data['entries'] = [BudgetEntry(**entry) for entry in data['entries']]
        return super().from_dict(data)


def _monthly_share(annual: int, month: int, fiscal_year_start_month: int) -> int:
    position = (month - fiscal_year_start_month) % 12 + 1  # 1 for the first fiscal month
    through = round_to_minor(Decimal(annual) * position / 12)
    before = round_to_minor(Decimal(annual) * (position - 1) / 12)
    return through - before


def budget_id(fiscal_year: int) -> str:
    return f"budget-{fiscal_year}"


@dataclass
class ProposalRow:
    account_id: str
    fund_id: str
    account_number: int
    account_name: str
    account_type: AccountType
    proposed_amount: int
    source: AmountSource
    historical_amount: int
    no_historical_data: bool

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['account_type'] = self.account_type.value
        result['source'] = self.source.value
        return result


@dataclass
class BudgetProjection:
    """Proposed budget for ``fiscal_year`` seeded from ``baseline_year``"""
    fiscal_year: int
    baseline_year: int
    rows: List[ProposalRow]
    no_historical_data: bool
    saved_status: Optional[BudgetStatus] = None

    def row(self, account_id: str, fund_id: str) -> Optional[ProposalRow]:
        for row in self.rows:
            if row.account_id == account_id and row.fund_id == fund_id:
                return row
        return None

    def to_entries(self) -> List[BudgetEntry]:
        """Annual entries ready to save as a draft"""
        return [BudgetEntry(row.account_id, row.fund_id, row.proposed_amount)
                for row in self.rows]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fiscal_year": self.fiscal_year,
            "baseline_year": self.baseline_year,
            "no_historical_data": self.no_historical_data,
            "saved_status": self.saved_status.value if self.saved_status else None,
            "rows": [row.to_dict() for row in self.rows],
        }


@dataclass
class VarianceRow:
    """
    Budget against actual for one (account, fund).

    ``variance_percent`` is already scaled to percent: Decimal("25.00") means
    actual ran 25% over budget, not a ratio of 25.
    """
    account_id: str
    fund_id: str
    account_number: int
    account_name: str
    account_type: AccountType
    budgeted: int
    actual: int
    variance: int  # actual - budgeted
    variance_percent: Optional[Decimal]  # None when nothing was budgeted

    @property
    def variance_percent_display(self) -> str:
        if self.variance_percent is None:
            return NOT_APPLICABLE
        return f"{self.variance_percent}%"

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['account_type'] = self.account_type.value
        result['variance_percent'] = self.variance_percent_display
        return result


@dataclass
class BudgetVariance:
    fiscal_year: int
    start: date
    end: date
    income: List[VarianceRow] = field(default_factory=list)
    expenses: List[VarianceRow] = field(default_factory=list)

    @property
    def total_income_budgeted(self) -> int:
        return sum(r.budgeted for r in self.income)

    @property
    def total_income_actual(self) -> int:
        return sum(r.actual for r in self.income)

    @property
    def total_expense_budgeted(self) -> int:
        return sum(r.budgeted for r in self.expenses)

    @property
    def total_expense_actual(self) -> int:
        return sum(r.actual for r in self.expenses)

    @property
    def rows(self) -> List[VarianceRow]:
        return self.income + self.expenses

    def row(self, account_id: str, fund_id: str) -> Optional[VarianceRow]:
        for row in self.rows:
            if row.account_id == account_id and row.fund_id == fund_id:
                return row
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fiscal_year": self.fiscal_year,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "income": [r.to_dict() for r in self.income],
            "expenses": [r.to_dict() for r in self.expenses],
            "total_income_budgeted": self.total_income_budgeted,
            "total_income_actual": self.total_income_actual,
            "total_expense_budgeted": self.total_expense_budgeted,
            "total_expense_actual": self.total_expense_actual,
        }


def variance_percentage(variance: int, budgeted: int) -> Optional[Decimal]:
    """variance / budgeted as a percentage to two places; None for a zero budget"""
    if budgeted == 0:
        return None
    return (Decimal(variance) * 100 / Decimal(budgeted)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP)


class BudgetStore:
    """Persistence for budgets; last write wins per fiscal year"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 chart: ChartOfAccounts, aggregation: AggregationEngine):
        self.storage = storage
        self.audit_trail = audit_trail
        self.chart = chart
        self.aggregation = aggregation

    def save_budget(
        self,
        actor: Actor,
        fiscal_year: int,
        entries: Iterable[BudgetEntry],
        status: BudgetStatus = BudgetStatus.DRAFT
    ) -> Budget:
        """
        Replace the entry set of a fiscal year's budget

        Raises:
            AuthorizationError: actor may not save budgets
            ValidationError: bad year, unknown account/fund, non-income/expense
                account, bad month or duplicated entry
        """
        require_permission(actor, Permission.SAVE_BUDGET)
        entries = list(entries)
        self._validate(fiscal_year, entries)

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            existing = self.find_budget(fiscal_year)
            budget = Budget(
                id=budget_id(fiscal_year),
                created_at=existing.created_at if existing else now,
                updated_at=now,
                fiscal_year=fiscal_year,
                entries=entries,
                status=BudgetStatus(status),
                saved_by=actor.actor_id
            )
            self.storage.save(BUDGETS_TABLE, budget.id, budget.to_dict())
            self.audit_trail.log_event(
                AuditEventType.BUDGET_SAVED, "budget", budget.id,
                {"fiscal_year": fiscal_year, "entry_count": len(entries),
                 "status": budget.status},
                user_id=actor.actor_id
            )

        log_action(logger, "info", f"Saved {budget.status.value} budget for {fiscal_year}",
                   user_id=actor.actor_id, action="save_budget", resource=budget.id)
        return budget

    def finalize_budget(self, actor: Actor, fiscal_year: int) -> Budget:
        require_permission(actor, Permission.SAVE_BUDGET)

        with self.storage.atomic():
            budget = self.get_budget(fiscal_year)
            budget.status = BudgetStatus.FINAL
            budget.updated_at = datetime.now(timezone.utc)
            self.storage.save(BUDGETS_TABLE, budget.id, budget.to_dict())
            self.audit_trail.log_event(
                AuditEventType.BUDGET_FINALIZED, "budget", budget.id,
                {"fiscal_year": fiscal_year}, user_id=actor.actor_id
            )

        log_action(logger, "info", f"Finalized budget for {fiscal_year}",
                   user_id=actor.actor_id, action="finalize_budget", resource=budget.id)
        return budget

    def find_budget(self, fiscal_year: int) -> Optional[Budget]:
        data = self.storage.load(BUDGETS_TABLE, budget_id(fiscal_year))
        return Budget.from_dict(data) if data else None

    def get_budget(self, fiscal_year: int) -> Budget:
        budget = self.find_budget(fiscal_year)
        if budget is None:
            raise NotFoundError("budget", fiscal_year)
        return budget

    def list_budgets(self) -> List[Budget]:
        budgets = [Budget.from_dict(d) for d in self.storage.load_all(BUDGETS_TABLE)]
        budgets.sort(key=lambda b: b.fiscal_year)
        return budgets

    def historical_actuals(self, actor: Actor, fiscal_year: int,
                           cancel: Optional[CancellationToken] = None) -> Dict[PairKey, int]:
        """Natural-sign income and expense totals per (account, fund) for a year"""
        require_permission(actor, Permission.VIEW_BUDGETS)
        start, end = self.aggregation.fiscal_year_range(fiscal_year)
        raw = self.aggregation.totals_by_account_and_fund(start, end, cancel=cancel)
        accounts = self.chart.accounts_by_id()

        actuals = {}
        for (account_id, fund_id), amount in raw.items():
            account = accounts.get(account_id)
            if account is None or account.account_type not in BUDGET_ACCOUNT_TYPES:
                continue
            actuals[(account_id, fund_id)] = natural_amount(account.account_type, amount)
        return actuals

    def _validate(self, fiscal_year: int, entries: List[BudgetEntry]) -> None:
        if isinstance(fiscal_year, bool) or not isinstance(fiscal_year, int) or fiscal_year < 1:
            raise ValidationError("Fiscal year must be a positive integer", rule="fiscal_year",
                                  details={"fiscal_year": fiscal_year})
        seen = set()
        for index, entry in enumerate(entries):
            account = self.chart.find_account(entry.account_id)
            if account is None:
                raise ValidationError(f"Budget entry {index} references unknown account "
                                      f"{entry.account_id}", rule="budget_account",
                                      details={"entry_index": index, "account_id": entry.account_id})
            if account.account_type not in BUDGET_ACCOUNT_TYPES:
                raise ValidationError(f"Account {entry.account_id} is not an income or expense account",
                                      rule="budget_account_type",
                                      details={"entry_index": index, "account_id": entry.account_id})
            if self.chart.find_fund(entry.fund_id) is None:
                raise ValidationError(f"Budget entry {index} references unknown fund "
                                      f"{entry.fund_id}", rule="budget_fund",
                                      details={"entry_index": index, "fund_id": entry.fund_id})
            if isinstance(entry.amount, bool) or not isinstance(entry.amount, int):
                raise ValidationError(f"Budget entry {index} amount must be integer minor units",
                                      rule="amount_precision", details={"entry_index": index})
            if entry.month is not None and not 1 <= entry.month <= 12:
                raise ValidationError(f"Budget entry {index} month must be 1-12",
                                      rule="budget_month",
                                      details={"entry_index": index, "month": entry.month})
            key = (entry.account_id, entry.fund_id, entry.month)
            if key in seen:
                raise ValidationError("Duplicate budget entry for account, fund and month",
                                      rule="budget_duplicate_entry",
                                      details={"account_id": entry.account_id,
                                               "fund_id": entry.fund_id, "month": entry.month})
            seen.add(key)


def _row_order(accounts: Dict[str, Account], funds_order: Dict[str, int]):
    def key(pair: PairKey):
        account = accounts[pair[0]]
        return (account.account_type != AccountType.INCOME, account.account_number,
                funds_order.get(pair[1], len(funds_order)), pair[1])
    return key


class BudgetProjector:
    """Seeds proposals from prior-year actuals and compares budgets to actuals"""

    def __init__(self, budget_store: BudgetStore, aggregation: AggregationEngine,
                 chart: ChartOfAccounts):
        self.budget_store = budget_store
        self.aggregation = aggregation
        self.chart = chart

    def _fund_order(self) -> Dict[str, int]:
        return {fund.id: index for index, fund in enumerate(self.chart.list_funds())}

    def project(self, actor: Actor, fiscal_year: int,
                cancel: Optional[CancellationToken] = None) -> BudgetProjection:
        """
        Proposed budget for ``fiscal_year``.

        Prior-year actuals are the default for each (account, fund); saved
        entries for ``fiscal_year`` take precedence. With no prior-year
        activity every active income/expense account gets a zero-baseline
        row per active fund, flagged as having no historical data.
        """
        require_permission(actor, Permission.VIEW_BUDGETS)
        baseline_year = fiscal_year - 1
        historical = self.budget_store.historical_actuals(actor, baseline_year, cancel=cancel)
        budget = self.budget_store.find_budget(fiscal_year)
        saved = budget.annual_amounts() if budget else {}
        accounts = self.chart.accounts_by_id()
        no_history = not historical

        pairs = set(historical) | set(saved)
        if no_history:
            for account in self.chart.list_accounts(active_only=True):
                if account.account_type not in BUDGET_ACCOUNT_TYPES:
                    continue
                for fund in self.chart.list_funds(active_only=True):
                    pairs.add((account.id, fund.id))

        rows = []
        for pair in sorted(pairs, key=_row_order(accounts, self._fund_order())):
            account = accounts[pair[0]]
            has_history = pair in historical
            historical_amount = historical.get(pair, 0)
            if pair in saved:
                proposed, source = saved[pair], AmountSource.SAVED
            else:
                proposed, source = historical_amount, AmountSource.HISTORICAL
            rows.append(ProposalRow(
                account_id=account.id,
                fund_id=pair[1],
                account_number=account.account_number,
                account_name=account.name,
                account_type=account.account_type,
                proposed_amount=proposed,
                source=source,
                historical_amount=historical_amount,
                no_historical_data=not has_history
            ))

        if no_history:
            logger.info("No historical actuals for %s; proposing a zero baseline", baseline_year)
        return BudgetProjection(
            fiscal_year=fiscal_year,
            baseline_year=baseline_year,
            rows=rows,
            no_historical_data=no_history,
            saved_status=budget.status if budget else None
        )

    def variance(self, actor: Actor, fiscal_year: int, as_of: Optional[date] = None,
                 cancel: Optional[CancellationToken] = None) -> BudgetVariance:
        """
        Budget versus actual for a finalized budget.

        Actuals run from the start of the fiscal year to ``as_of`` (or the
        year end). Rows cover every pair budgeted or with activity.

        Raises:
            NotFoundError: no budget for the year
            ValidationError: the budget is still a draft
        """
        require_permission(actor, Permission.VIEW_BUDGETS)
        budget = self.budget_store.get_budget(fiscal_year)
        if not budget.is_final:
            raise ValidationError(f"Budget for {fiscal_year} is not finalized",
                                  rule="budget_not_final",
                                  details={"fiscal_year": fiscal_year})

        start, end = self.aggregation.fiscal_year_range(fiscal_year)
        if as_of is not None:
            if as_of < start:
                raise ValidationError(f"{as_of} is before fiscal year {fiscal_year}",
                                      rule="date_range",
                                      details={"as_of": as_of.isoformat()})
            end = min(end, as_of)

        budgeted = budget.annual_amounts()
        raw = self.aggregation.totals_by_account_and_fund(start, end, cancel=cancel)
        accounts = self.chart.accounts_by_id()
        actuals = {}
        for pair, amount in raw.items():
            account = accounts.get(pair[0])
            if account is not None and account.account_type in BUDGET_ACCOUNT_TYPES:
                actuals[pair] = natural_amount(account.account_type, amount)

        result = BudgetVariance(fiscal_year=fiscal_year, start=start, end=end)
        pairs = set(budgeted) | set(actuals)
        for pair in sorted(pairs, key=_row_order(accounts, self._fund_order())):
            account = accounts[pair[0]]
            planned = budgeted.get(pair, 0)
            actual = actuals.get(pair, 0)
            row = VarianceRow(
                account_id=account.id,
                fund_id=pair[1],
                account_number=account.account_number,
                account_name=account.name,
                account_type=account.account_type,
                budgeted=planned,
                actual=actual,
                variance=actual - planned,
                variance_percent=variance_percentage(actual - planned, planned)
            )
            if account.account_type == AccountType.INCOME:
                result.income.append(row)
            else:
                result.expenses.append(row)
        return result
