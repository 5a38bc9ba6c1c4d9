"""
Aggregation Engine

Pure reads over posted transactions: balances as of a date, activity over a
date range, and per-period breakdowns. Every public call reads the
transaction table once, so its figures come from a single snapshot; callers
combining several figures can pass one ``postings()`` result as ``snapshot``.
Void transactions never contribute. Dates are inclusive calendar dates.
"""

from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from enum import Enum
import threading
import logging

from .storage import StorageInterface
from .chart import TRANSACTIONS_TABLE
from .config import FundLedgerConfig, get_config
from .errors import ValidationError, OperationCancelledError

logger = logging.getLogger(__name__)


class Granularity(Enum):
    """Period sizes for grouped totals"""
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class CancellationToken:
    """
    Cooperative cancellation for long reads.

    The caller keeps the token and calls ``cancel()`` from any thread; the
    engine checks it between batches of records.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Aggregation cancelled by caller")


@dataclass(frozen=True)
class Posting:
    """A single non-void line flattened with its transaction date"""
    entry_date: date
    account_id: str
    fund_id: str
    amount: int


@dataclass
class PeriodTotals:
    """Signed totals per account for one period"""
    label: str
    start: date
    end: date
    totals: Dict[str, int] = field(default_factory=dict)

    def total(self, account_ids: Optional[Iterable[str]] = None) -> int:
        if account_ids is None:
            return sum(self.totals.values())
        return sum(self.totals.get(account_id, 0) for account_id in account_ids)


def _add_months(first_of_month: date, months: int) -> date:
    index = first_of_month.year * 12 + (first_of_month.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


class AggregationEngine:
    """Balances and activity computed from the transaction table"""

    def __init__(self, storage: StorageInterface, config: Optional[FundLedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()

    @property
    def fiscal_year_start_month(self) -> int:
        return self.config.fiscal_year_start_month

    # Snapshot

    def postings(self, cancel: Optional[CancellationToken] = None) -> List[Posting]:
        """Every non-void line from one read of the transaction table"""
        interval = max(1, self.config.cancellation_check_interval)
        result = []
        if cancel:
            cancel.raise_if_cancelled()
        for index, txn in enumerate(self.storage.load_all(TRANSACTIONS_TABLE)):
            if cancel and index % interval == 0:
                cancel.raise_if_cancelled()
            if txn.get('status') == 'void':
                continue
            entry_date = date.fromisoformat(txn['entry_date'])
            for line in txn['lines']:
                result.append(Posting(entry_date, line['account_id'], line['fund_id'],
                                      line['amount']))
        return result

    def _source(self, snapshot: Optional[List[Posting]],
                cancel: Optional[CancellationToken]) -> List[Posting]:
        return snapshot if snapshot is not None else self.postings(cancel)

    def _iter_window(self, postings: List[Posting], start: Optional[date], end: Optional[date],
                     cancel: Optional[CancellationToken]) -> Iterator[Posting]:
        interval = max(1, self.config.cancellation_check_interval)
        for index, posting in enumerate(postings):
            if cancel and index % interval == 0:
                cancel.raise_if_cancelled()
            if start is not None and posting.entry_date < start:
                continue
            if end is not None and posting.entry_date > end:
                continue
            yield posting

    def _check_range(self, start: date, end: date) -> None:
        if start > end:
            raise ValidationError(f"Start date {start} is after end date {end}",
                                  rule="date_range",
                                  details={"start": start.isoformat(), "end": end.isoformat()})
        span = (end - start).days
        if span > self.config.max_report_range_days:
            raise ValidationError(
                f"Date range of {span} days exceeds the limit of "
                f"{self.config.max_report_range_days}",
                rule="date_range_limit",
                details={"days": span, "limit": self.config.max_report_range_days}
            )

    # Point and range figures

    def balance_as_of(self, as_of: date, account_id: Optional[str] = None,
                      fund_id: Optional[str] = None,
                      cancel: Optional[CancellationToken] = None,
                      snapshot: Optional[List[Posting]] = None) -> int:
        """Signed sum of every posting on or before ``as_of``"""
        total = 0
        for posting in self._iter_window(self._source(snapshot, cancel), None, as_of, cancel):
            if account_id is not None and posting.account_id != account_id:
                continue
            if fund_id is not None and posting.fund_id != fund_id:
                continue
            total += posting.amount
        return total

    def activity_between(self, start: date, end: date, account_id: Optional[str] = None,
                         fund_id: Optional[str] = None,
                         cancel: Optional[CancellationToken] = None,
                         snapshot: Optional[List[Posting]] = None) -> int:
        """Signed sum of postings dated ``start`` through ``end``"""
        self._check_range(start, end)
        total = 0
        for posting in self._iter_window(self._source(snapshot, cancel), start, end, cancel):
            if account_id is not None and posting.account_id != account_id:
                continue
            if fund_id is not None and posting.fund_id != fund_id:
                continue
            total += posting.amount
        return total

    def totals_by_account(self, start: Optional[date], end: date,
                          cancel: Optional[CancellationToken] = None,
                          snapshot: Optional[List[Posting]] = None) -> Dict[str, int]:
        """
        Signed totals per account. ``start=None`` means from the first
        posting, which gives balances as of ``end``.
        """
        if start is not None:
            self._check_range(start, end)
        totals: Dict[str, int] = {}
        for posting in self._iter_window(self._source(snapshot, cancel), start, end, cancel):
            totals[posting.account_id] = totals.get(posting.account_id, 0) + posting.amount
        return totals

    def totals_by_account_and_fund(self, start: Optional[date], end: date,
                                   cancel: Optional[CancellationToken] = None,
                                   snapshot: Optional[List[Posting]] = None
                                   ) -> Dict[Tuple[str, str], int]:
        """Signed totals per (account, fund) pair"""
        if start is not None:
            self._check_range(start, end)
        totals: Dict[Tuple[str, str], int] = {}
        for posting in self._iter_window(self._source(snapshot, cancel), start, end, cancel):
            key = (posting.account_id, posting.fund_id)
            totals[key] = totals.get(key, 0) + posting.amount
        return totals

    # Periods

    def fiscal_year_of(self, day: date) -> int:
        """Fiscal years are named after the calendar year they end in"""
        start_month = self.fiscal_year_start_month
        if start_month == 1 or day.month < start_month:
            return day.year
        return day.year + 1

    def fiscal_year_range(self, fiscal_year: int) -> Tuple[date, date]:
        start_month = self.fiscal_year_start_month
        if start_month == 1:
            start = date(fiscal_year, 1, 1)
        else:
            start = date(fiscal_year - 1, start_month, 1)
        return start, _add_months(start, 12) - timedelta(days=1)

    def year_label(self, fiscal_year: int) -> str:
        if self.fiscal_year_start_month == 1:
            return str(fiscal_year)
        return f"FY{fiscal_year}"

    def quarter_ranges(self, fiscal_year: int) -> List[Tuple[str, date, date]]:
        """
        The four quarters of a year as (label, start, end).

        Calendar quarters (Jan-Mar, Apr-Jun, Jul-Sep, Oct-Dec) unless a
        fiscal year start month is configured.
        """
        year_start, _ = self.fiscal_year_range(fiscal_year)
        prefix = self.year_label(fiscal_year)
        ranges = []
        for quarter in range(4):
            q_start = _add_months(year_start, quarter * 3)
            q_end = _add_months(q_start, 3) - timedelta(days=1)
            ranges.append((f"{prefix}-Q{quarter + 1}", q_start, q_end))
        return ranges

    def _period_containing(self, granularity: Granularity, day: date) -> Tuple[str, date, date]:
        if granularity == Granularity.MONTH:
            start = date(day.year, day.month, 1)
            return start.strftime("%Y-%m"), start, _add_months(start, 1) - timedelta(days=1)
        fiscal_year = self.fiscal_year_of(day)
        if granularity == Granularity.YEAR:
            start, end = self.fiscal_year_range(fiscal_year)
            return self.year_label(fiscal_year), start, end
        for label, start, end in self.quarter_ranges(fiscal_year):
            if start <= day <= end:
                return label, start, end
        raise ValueError(f"No quarter contains {day}")

    def period_ranges(self, granularity: Granularity, start: date,
                      end: date) -> List[Tuple[str, date, date]]:
        """Consecutive periods covering start..end, clipped to the range"""
        self._check_range(start, end)
        ranges = []
        cursor = start
        while cursor <= end:
            label, p_start, p_end = self._period_containing(granularity, cursor)
            ranges.append((label, max(p_start, start), min(p_end, end)))
            cursor = p_end + timedelta(days=1)
        return ranges

    def group_by_period(self, granularity: Granularity, start: date, end: date,
                        account_ids: Optional[Iterable[str]] = None,
                        cancel: Optional[CancellationToken] = None,
                        snapshot: Optional[List[Posting]] = None) -> List[PeriodTotals]:
        """
        Per-account signed totals for each period in start..end, in order.
        All periods come from the same snapshot.
        """
        granularity = Granularity(granularity)
        periods = [PeriodTotals(label, p_start, p_end)
                   for label, p_start, p_end in self.period_ranges(granularity, start, end)]
        wanted = set(account_ids) if account_ids is not None else None

        for posting in self._iter_window(self._source(snapshot, cancel), start, end, cancel):
            if wanted is not None and posting.account_id not in wanted:
                continue
            for period in periods:
                if period.start <= posting.entry_date <= period.end:
                    period.totals[posting.account_id] = (
                        period.totals.get(posting.account_id, 0) + posting.amount
                    )
                    break

        logger.debug("Grouped %s to %s into %d %s periods", start, end, len(periods),
                     granularity.value)
        return periods
