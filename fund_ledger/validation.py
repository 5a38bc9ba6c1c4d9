"""
Posting Validator

Checks a candidate transaction before anything is written. Rules are applied
in a fixed order and the first violation is reported; a candidate either
passes every rule or is rejected whole.
"""

from datetime import date, datetime
from typing import Any, Optional, Sequence

from .chart import ChartOfAccounts, Account
from .errors import ValidationError, NotFoundError, InactiveAccountError

MIN_LINES = 2


class PostingValidator:
    """
    Double-entry rules for postings.

    Lines may be any objects exposing ``account_id``, ``fund_id`` and
    ``amount`` (signed integer minor units, debits positive).
    """

    def __init__(self, chart: ChartOfAccounts):
        self.chart = chart

    def validate(self, entry_date: Optional[date], memo: Optional[str],
                 lines: Sequence[Any]) -> None:
        """
        Validate a candidate transaction

        Raises:
            ValidationError: naming the first rule violated
        """
        self._check_date(entry_date)
        self._check_line_count(lines)
        self._check_amounts(lines)
        self._check_balance(lines)
        self._check_references(lines)

    def _check_date(self, entry_date: Optional[date]) -> None:
        # datetime is a date subclass; a timestamp would invite timezone shifts
        if entry_date is None or isinstance(entry_date, datetime) or not isinstance(entry_date, date):
            raise ValidationError("Transaction date must be a calendar date",
                                  rule="entry_date",
                                  details={"entry_date": str(entry_date)})

    def _check_line_count(self, lines: Sequence[Any]) -> None:
        if not lines or len(lines) < MIN_LINES:
            raise ValidationError(
                f"A transaction needs at least {MIN_LINES} lines",
                rule="min_lines",
                details={"line_count": len(lines) if lines else 0}
            )

    def _check_amounts(self, lines: Sequence[Any]) -> None:
        for index, line in enumerate(lines):
            amount = line.amount
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise ValidationError(
                    f"Line {index} amount must be integer minor units",
                    rule="amount_precision",
                    details={"line_index": index, "amount": repr(amount)}
                )
            if amount == 0:
                raise ValidationError(
                    f"Line {index} amount must be non-zero",
                    rule="non_zero_amount",
                    details={"line_index": index}
                )

    def _check_balance(self, lines: Sequence[Any]) -> None:
        total = sum(line.amount for line in lines)
        if total != 0:
            raise ValidationError(
                f"Transaction is out of balance by {total} minor units",
                rule="balanced",
                details={
                    "imbalance": total,
                    "debits": sum(l.amount for l in lines if l.amount > 0),
                    "credits": -sum(l.amount for l in lines if l.amount < 0),
                }
            )

    def _check_references(self, lines: Sequence[Any]) -> None:
        for index, line in enumerate(lines):
            account = self.chart.find_account(line.account_id)
            if account is None or not account.is_active:
                raise ValidationError(
                    f"Line {index} references "
                    f"{'an inactive' if account else 'an unknown'} account {line.account_id}",
                    rule="active_account",
                    details={"line_index": index, "account_id": line.account_id}
                )
            fund = self.chart.find_fund(line.fund_id)
            if fund is None or not fund.is_active:
                raise ValidationError(
                    f"Line {index} references "
                    f"{'an inactive' if fund else 'an unknown'} fund {line.fund_id}",
                    rule="active_fund",
                    details={"line_index": index, "fund_id": line.fund_id}
                )

    def validate_destination_account(self, account_id: str) -> Account:
        """
        Reference check for the target of a line move

        Raises:
            NotFoundError: unknown account
            InactiveAccountError: retired account
        """
        account = self.chart.find_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        if not account.is_active:
            raise InactiveAccountError(account_id)
        return account
