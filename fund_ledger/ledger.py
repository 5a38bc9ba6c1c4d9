"""
Ledger Store

Durable record of fund-accounting transactions. Every transaction is a set of
signed lines (debits positive, credits negative, integer minor units) that
sum to zero. Posted transactions are never deleted: voiding marks them void
so they drop out of every balance but stay queryable for audit.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from enum import Enum
from collections import Counter
import logging
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .chart import ChartOfAccounts, TRANSACTIONS_TABLE, natural_amount
from .validation import PostingValidator
from .errors import (
    ValidationError, NotFoundError, AlreadyVoidError, DuplicateIdentifierError
)
from .rbac import Actor, Permission, require_permission
from .logging_config import log_action

logger = logging.getLogger(__name__)


class TransactionStatus(Enum):
    """Lifecycle states of a transaction"""
    POSTED = "posted"  # Counts toward every balance
    VOID = "void"      # Retained for audit, excluded from aggregation


@dataclass
class Line:
    """
    One debit or credit within a transaction.

    ``amount`` is signed: positive for a debit, negative for a credit.
    """
    account_id: str
    fund_id: str
    amount: int
    memo: str = ""
    donor_id: Optional[str] = None  # Opaque contribution tag
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def debit(cls, account_id: str, fund_id: str, amount: int, memo: str = "",
              donor_id: Optional[str] = None) -> 'Line':
        return cls(account_id=account_id, fund_id=fund_id, amount=amount,
                   memo=memo, donor_id=donor_id)

    @classmethod
    def credit(cls, account_id: str, fund_id: str, amount: int, memo: str = "",
               donor_id: Optional[str] = None) -> 'Line':
        return cls(account_id=account_id, fund_id=fund_id, amount=-amount,
                   memo=memo, donor_id=donor_id)

    @property
    def is_debit(self) -> bool:
        return self.amount > 0

    @property
    def is_credit(self) -> bool:
        return self.amount < 0

    def payload_key(self) -> tuple:
        """Identity of the line's content, ignoring its id"""
        return (self.account_id, self.fund_id, self.amount, self.memo, self.donor_id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Line':
        return cls(**data)


@dataclass
class Transaction(StorageRecord):
    """
    Dated journal entry owning its lines.

    The transaction and its lines are stored as one record, so a write is
    all-or-nothing.
    """
    entry_date: date
    memo: str
    created_by: str
    lines: List[Line]
    status: TransactionStatus = TransactionStatus.POSTED
    reference_number: Optional[str] = None
    idempotency_key: Optional[str] = None
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None
    void_reason: Optional[str] = None

    @property
    def is_void(self) -> bool:
        return self.status == TransactionStatus.VOID

    @property
    def total_debits(self) -> int:
        return sum(line.amount for line in self.lines if line.amount > 0)

    @property
    def total_credits(self) -> int:
        return -sum(line.amount for line in self.lines if line.amount < 0)

    def get_line(self, line_id: str) -> Optional[Line]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    def account_ids(self) -> List[str]:
        """Distinct accounts touched, in line order"""
        return list(dict.fromkeys(line.account_id for line in self.lines))

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['entry_date'] = self.entry_date.isoformat()
        result['status'] = self.status.value
        result['voided_at'] = self.voided_at.isoformat() if self.voided_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data['entry_date'] = date.fromisoformat(data['entry_date'])
        data['status'] = TransactionStatus(data['status'])
        data['lines'] = [Line.from_dict(line) for line in data['lines']]
        if data.get('voided_at'):
            data['voided_at'] = datetime.fromisoformat(data['voided_at'])
        return super().from_dict(data)


@dataclass
class Donation:
    """One gift within an online donation batch"""
    income_account_id: str
    fund_id: str
    amount: int
    donor_id: Optional[str] = None


@dataclass
class DesignatedGift:
    """Part of a deposit given to a designated fund"""
    account_id: str
    fund_id: str
    amount: int
    description: str = ""


@dataclass
class TransactionFilter:
    """Criteria for listing transactions; every field is optional"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None  # Inclusive
    account_id: Optional[str] = None
    fund_id: Optional[str] = None
    text: Optional[str] = None  # Case-insensitive memo/reference match
    include_void: bool = True
    status: Optional[TransactionStatus] = None

    def matches(self, txn: Transaction) -> bool:
        if self.start_date and txn.entry_date < self.start_date:
            return False
        if self.end_date and txn.entry_date > self.end_date:
            return False
        if not self.include_void and txn.is_void:
            return False
        if self.status and txn.status != self.status:
            return False
        if self.account_id and not any(l.account_id == self.account_id for l in txn.lines):
            return False
        if self.fund_id and not any(l.fund_id == self.fund_id for l in txn.lines):
            return False
        if self.text:
            needle = self.text.lower()
            haystack = [txn.memo or "", txn.reference_number or ""]
            haystack.extend(line.memo or "" for line in txn.lines)
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


def _sort_key(txn: Transaction):
    return (txn.entry_date, txn.id)


class LedgerStore:
    """
    Posts, voids and queries transactions.

    Writes go through ``storage.atomic()`` together with their audit event;
    validation runs inside the same block so a concurrent chart change cannot
    slip between the check and the write.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        chart: ChartOfAccounts,
        validator: Optional[PostingValidator] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.chart = chart
        self.validator = validator or PostingValidator(chart)
        self.table_name = TRANSACTIONS_TABLE

    def create_transaction(
        self,
        actor: Actor,
        entry_date: date,
        memo: str,
        lines: Sequence[Line],
        reference_number: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Validate and post a transaction

        Args:
            actor: Caller; bookkeeper or admin
            entry_date: Calendar date of the entry
            memo: Description
            lines: Signed lines summing to zero
            reference_number: Optional external reference (check number etc.)
            idempotency_key: Optional key making retries safe

        Returns:
            The posted Transaction. When ``idempotency_key`` was already used
            with the same content, the earlier transaction is returned.

        Raises:
            AuthorizationError: actor may not post
            ValidationError: the candidate breaks a posting rule
            DuplicateIdentifierError: idempotency key reused with different content
        """
        require_permission(actor, Permission.POST_TRANSACTION)

        # Fresh copies with their own ids, so a line belongs to exactly one transaction
        new_lines = [Line(account_id=l.account_id, fund_id=l.fund_id, amount=l.amount,
                          memo=l.memo or "", donor_id=l.donor_id)
                     for l in (lines or [])]

        with self.storage.atomic():
            if idempotency_key:
                existing = self._find_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return self._replay(existing, entry_date, memo, new_lines, actor)

            try:
                self.validator.validate(entry_date, memo, new_lines)
            except ValidationError as e:
                log_action(logger, "warning", f"Rejected posting: {e.message}",
                           user_id=actor.actor_id, action="post_transaction",
                           resource="transaction", extra=e.to_dict())
                raise

            now = datetime.now(timezone.utc)
            txn = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                entry_date=entry_date,
                memo=memo or "",
                created_by=actor.actor_id,
                lines=new_lines,
                reference_number=reference_number,
                idempotency_key=idempotency_key
            )
            self.storage.insert(self.table_name, txn.id, txn.to_dict())

            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_POSTED, "transaction", txn.id,
                {
                    "entry_date": txn.entry_date,
                    "memo": txn.memo,
                    "total": txn.total_debits,
                    "line_count": len(txn.lines),
                    "reference_number": reference_number,
                },
                user_id=actor.actor_id
            )

        log_action(logger, "info", f"Posted transaction {txn.id} dated {txn.entry_date}",
                   user_id=actor.actor_id, action="post_transaction", resource=txn.id)
        return txn

    def void_transaction(self, actor: Actor, transaction_id: str, reason: str = "") -> Transaction:
        """
        Mark a transaction void

        Raises:
            NotFoundError: unknown transaction
            AlreadyVoidError: transaction is already void
        """
        require_permission(actor, Permission.VOID_TRANSACTION)

        with self.storage.atomic():
            txn = self.get_transaction(transaction_id)
            if txn.is_void:
                raise AlreadyVoidError(transaction_id)

            now = datetime.now(timezone.utc)
            txn.status = TransactionStatus.VOID
            txn.voided_at = now
            txn.voided_by = actor.actor_id
            txn.void_reason = reason
            txn.updated_at = now
            self.storage.save(self.table_name, txn.id, txn.to_dict())

            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_VOIDED, "transaction", txn.id,
                {"reason": reason, "total": txn.total_debits},
                user_id=actor.actor_id
            )

        log_action(logger, "info", f"Voided transaction {txn.id}",
                   user_id=actor.actor_id, action="void_transaction", resource=txn.id)
        return txn

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise NotFoundError("transaction", transaction_id)
        return Transaction.from_dict(data)

    def load_transactions(self) -> List[Transaction]:
        """Every transaction (posted and void) from one storage read"""
        return [Transaction.from_dict(d) for d in self.storage.load_all(self.table_name)]

    def list_transactions(self, filter: Optional[TransactionFilter] = None) -> List[Transaction]:
        """Transactions matching ``filter``, ordered by date then id"""
        filter = filter or TransactionFilter()
        result = [txn for txn in self.load_transactions() if filter.matches(txn)]
        result.sort(key=_sort_key)
        return result

    def transactions_for_account(self, account_id: str,
                                 include_void: bool = False) -> List[Transaction]:
        """Candidates for moving lines off an account"""
        return self.list_transactions(
            TransactionFilter(account_id=account_id, include_void=include_void)
        )

    def find_duplicates(self, entry_date: date, amount: int,
                        memo: Optional[str] = None) -> List[Transaction]:
        """
        Posted transactions that look like the candidate: same date and same
        total, and the same memo (case-insensitive) when one is given.
        """
        result = []
        for txn in self.list_transactions(TransactionFilter(
                start_date=entry_date, end_date=entry_date, include_void=False)):
            if txn.total_debits != abs(amount):
                continue
            if memo is not None and (txn.memo or "").strip().lower() != memo.strip().lower():
                continue
            result.append(txn)
        return result

    def is_account_referenced(self, account_id: str) -> bool:
        return self.chart.account_reference_count(account_id) > 0

    def is_fund_referenced(self, fund_id: str) -> bool:
        return self.chart.fund_reference_count(fund_id) > 0

    def line_count_by_fund(self, include_void: bool = False) -> Dict[str, int]:
        """Number of lines per fund"""
        counts: Counter = Counter()
        for txn in self.load_transactions():
            if txn.is_void and not include_void:
                continue
            counts.update(line.fund_id for line in txn.lines)
        return dict(counts)

    # Posting helpers. Amounts are positive minor units; the helper picks sides.

    def record_giving(self, actor: Actor, entry_date: date, deposit_account_id: str,
                      income_account_id: str, fund_id: str, amount: int, memo: str = "",
                      donor_id: Optional[str] = None, reference_number: Optional[str] = None,
                      idempotency_key: Optional[str] = None) -> Transaction:
        """Contribution received: debit the deposit account, credit income"""
        self._check_positive(amount)
        return self.create_transaction(actor, entry_date, memo, [
            Line.debit(deposit_account_id, fund_id, amount, memo),
            Line.credit(income_account_id, fund_id, amount, memo, donor_id=donor_id),
        ], reference_number=reference_number, idempotency_key=idempotency_key)

    def record_expense(self, actor: Actor, entry_date: date, expense_account_id: str,
                       payment_account_id: str, fund_id: str, amount: int, memo: str = "",
                       reference_number: Optional[str] = None,
                       idempotency_key: Optional[str] = None) -> Transaction:
        """Payment made: debit the expense, credit the paying account"""
        self._check_positive(amount)
        return self.create_transaction(actor, entry_date, memo, [
            Line.debit(expense_account_id, fund_id, amount, memo),
            Line.credit(payment_account_id, fund_id, amount, memo),
        ], reference_number=reference_number, idempotency_key=idempotency_key)

    def transfer_between_accounts(self, actor: Actor, entry_date: date, from_account_id: str,
                                  to_account_id: str, fund_id: str, amount: int,
                                  memo: str = "") -> Transaction:
        """Move money between two asset accounts within one fund"""
        self._check_positive(amount)
        if from_account_id == to_account_id:
            raise ValidationError("Transfer source and destination are the same account",
                                  rule="distinct_accounts",
                                  details={"account_id": from_account_id})
        return self.create_transaction(actor, entry_date, memo, [
            Line.debit(to_account_id, fund_id, amount, memo),
            Line.credit(from_account_id, fund_id, amount, memo),
        ])

    def transfer_between_funds(self, actor: Actor, entry_date: date, account_id: str,
                               from_fund_id: str, to_fund_id: str, amount: int,
                               memo: str = "") -> Transaction:
        """Reassign money held in one account from one fund to another"""
        self._check_positive(amount)
        if from_fund_id == to_fund_id:
            raise ValidationError("Transfer source and destination are the same fund",
                                  rule="distinct_funds",
                                  details={"fund_id": from_fund_id})
        return self.create_transaction(actor, entry_date, memo, [
            Line.debit(account_id, to_fund_id, amount, memo),
            Line.credit(account_id, from_fund_id, amount, memo),
        ])

    def record_opening_balance(self, actor: Actor, entry_date: date, account_id: str,
                               fund_id: str, amount: int, equity_account_id: str,
                               memo: str = "Opening balance") -> Transaction:
        """
        Bring in a starting balance against an equity account.

        ``amount`` is on the account's normal side (a positive liability
        balance is a credit).
        """
        self._check_positive(amount)
        account = self.chart.get_account(account_id)
        signed = natural_amount(account.account_type, amount)
        return self.create_transaction(actor, entry_date, memo, [
            Line(account_id=account_id, fund_id=fund_id, amount=signed, memo=memo),
            Line(account_id=equity_account_id, fund_id=fund_id, amount=-signed, memo=memo),
        ])

    def record_online_donation_batch(
        self,
        actor: Actor,
        entry_date: date,
        deposit_account_id: str,
        fees_account_id: str,
        net_deposit: int,
        processing_fees: int,
        donations: Sequence[Donation],
        memo: str = "Online donation batch",
        reference_number: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Payout from an online giving processor

        The deposit account receives the net payout and the processor's fee
        is booked as an expense, both in the first donation's fund. Each
        donation is credited to its own income account and fund, so the
        donations must add up to net deposit plus fees.

        Raises:
            ValidationError: bad amounts, no donations, or donations that do
                not sum to the gross amount
        """
        self._check_positive(net_deposit)
        self._check_non_negative(processing_fees, "processing_fees")
        donations = list(donations or [])
        if not donations:
            raise ValidationError("At least one donation is required", rule="min_donations")
        for donation in donations:
            self._check_positive(donation.amount)

        gross = net_deposit + processing_fees
        donated = sum(donation.amount for donation in donations)
        if donated != gross:
            raise ValidationError(
                f"Donations total {donated} must equal the gross amount {gross}",
                rule="batch_total",
                details={"donations_total": donated, "gross_amount": gross}
            )

        primary_fund_id = donations[0].fund_id
        lines = [Line.debit(deposit_account_id, primary_fund_id, net_deposit,
                            "Online donation deposit (net)")]
        if processing_fees > 0:
            lines.append(Line.debit(fees_account_id, primary_fund_id, processing_fees,
                                    "Online donation processing fees"))
        lines.extend(Line.credit(d.income_account_id, d.fund_id, d.amount, "Online donation",
                                 donor_id=d.donor_id)
                     for d in donations)
        return self.create_transaction(actor, entry_date, memo, lines,
                                       reference_number=reference_number,
                                       idempotency_key=idempotency_key)

    def record_weekly_deposit(
        self,
        actor: Actor,
        entry_date: date,
        deposit_account_id: str,
        income_account_id: str,
        general_fund_id: str,
        general_amount: int,
        missions_fund_id: Optional[str] = None,
        missions_amount: int = 0,
        designated: Sequence[DesignatedGift] = (),
        memo: str = "Weekly deposit",
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Sunday deposit split across the general fund, missions and
        designated funds. Every portion gets its own deposit-account debit
        in its fund; zero portions are skipped.
        """
        self._check_non_negative(general_amount, "general_amount")
        self._check_non_negative(missions_amount, "missions_amount")
        designated = list(designated or [])
        for gift in designated:
            self._check_non_negative(gift.amount, "designated_amount")
        if missions_amount > 0 and not missions_fund_id:
            raise ValidationError("A missions fund is required for a missions amount",
                                  rule="missions_fund",
                                  details={"missions_amount": missions_amount})

        total = general_amount + missions_amount + sum(gift.amount for gift in designated)
        if total <= 0:
            raise ValidationError("Total deposit must be positive", rule="positive_amount",
                                  details={"amount": total})

        lines = []
        if general_amount > 0:
            lines.append(Line.debit(deposit_account_id, general_fund_id, general_amount,
                                    "Cash received - General Fund"))
            lines.append(Line.credit(income_account_id, general_fund_id, general_amount,
                                     "Tithes & Offerings - General"))
        if missions_amount > 0:
            lines.append(Line.debit(deposit_account_id, missions_fund_id, missions_amount,
                                    "Cash received - Missions"))
            lines.append(Line.credit(income_account_id, missions_fund_id, missions_amount,
                                     "Missions Giving"))
        for gift in designated:
            if gift.amount == 0:
                continue
            lines.append(Line.debit(deposit_account_id, gift.fund_id, gift.amount,
                                    f"Cash received - {gift.description}" if gift.description
                                    else "Cash received"))
            lines.append(Line.credit(gift.account_id, gift.fund_id, gift.amount,
                                     gift.description))
        return self.create_transaction(actor, entry_date, memo, lines,
                                       idempotency_key=idempotency_key)

    # Helpers

    def _find_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        matches = self.storage.find(self.table_name, {'idempotency_key': key})
        return Transaction.from_dict(matches[0]) if matches else None

    def _replay(self, existing: Transaction, entry_date: date, memo: str,
                lines: List[Line], actor: Actor) -> Transaction:
        same = (
            existing.entry_date == entry_date
            and existing.memo == (memo or "")
            and Counter(l.payload_key() for l in existing.lines)
            == Counter(l.payload_key() for l in lines)
        )
        if not same:
            raise DuplicateIdentifierError(
                f"Idempotency key {existing.idempotency_key!r} was used for a different transaction",
                table=self.table_name, record_id=existing.id
            )
        log_action(logger, "info", f"Idempotent replay of transaction {existing.id}",
                   user_id=actor.actor_id, action="post_transaction", resource=existing.id)
        return existing

    @staticmethod
    def _check_positive(amount: int) -> None:
        if isinstance(amount, int) and not isinstance(amount, bool) and amount <= 0:
            raise ValidationError("Amount must be positive", rule="positive_amount",
                                  details={"amount": amount})

    @staticmethod
    def _check_non_negative(amount: int, name: str) -> None:
        if isinstance(amount, int) and not isinstance(amount, bool) and amount < 0:
            raise ValidationError(f"{name} cannot be negative", rule="non_negative_amount",
                                  details={name: amount})
