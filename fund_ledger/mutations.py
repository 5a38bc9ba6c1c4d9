"""
Transaction Mutator

Reclassifies lines of posted transactions from one account to another. Only
the account reference changes; amounts, funds, memos and dates are never
rewritten, so every transaction stays balanced and every fund total is
conserved.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Sequence
import logging

from .audit import AuditTrail, AuditEventType
from .ledger import LedgerStore
from .validation import PostingValidator
from .errors import ValidationError, NotFoundError, AlreadyVoidError, NoOpError
from .rbac import Actor, Permission, require_permission
from .logging_config import log_action

logger = logging.getLogger(__name__)


@dataclass
class MoveRecord:
    """What a completed move changed"""
    transaction_id: str
    line_ids: List[str]
    source_accounts: Dict[str, str]  # line id -> account before the move
    destination_account_id: str
    moved_at: datetime
    actor_id: str
    audit_event_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['moved_at'] = self.moved_at.isoformat()
        return result


class TransactionMutator:
    """
    Moves posted lines between accounts.

    Each move and its audit record are written inside one ``storage.atomic()``
    block, so readers see the lines either all before or all after the move.
    """

    def __init__(self, ledger: LedgerStore, validator: PostingValidator,
                 audit_trail: AuditTrail):
        self.ledger = ledger
        self.validator = validator
        self.audit_trail = audit_trail
        self.storage = ledger.storage


    def move_lines(
        self,
        actor: Actor,
        transaction_id: str,
        line_ids: Sequence[str],
        destination_account_id: str
    ) -> MoveRecord:
        """
        Point the selected lines of a transaction at another account

        Raises:
            AuthorizationError: actor may not move lines
            ValidationError: no lines selected
            NotFoundError: unknown transaction, destination account or line id
            InactiveAccountError: destination account is retired
            AlreadyVoidError: void transactions are frozen
            NoOpError: every selected line already uses the destination
        """
        require_permission(actor, Permission.MOVE_TRANSACTION_LINES)
        with self.storage.atomic():
            record = self._move(actor, transaction_id, line_ids, destination_account_id)
        self._log_move(record)
        return record

    def move_transactions(
        self,
        actor: Actor,
        transaction_ids: Sequence[str],
        source_account_id: str,
        destination_account_id: str
    ) -> List[MoveRecord]:
        """
        Move every line on ``source_account_id`` in each listed transaction.

        The whole batch is one atomic unit: if any transaction fails, none
        are moved and nothing is logged.
        """
        require_permission(actor, Permission.MOVE_TRANSACTION_LINES)
        if not transaction_ids:
            raise ValidationError("Select at least one transaction to move",
                                  rule="transaction_selection")
        if source_account_id == destination_account_id:
            raise NoOpError("Source and destination accounts are the same",
                            {"account_id": source_account_id})

        records = []
        with self.storage.atomic():
            for transaction_id in dict.fromkeys(transaction_ids):
                txn = self.ledger.get_transaction(transaction_id)
                line_ids = [l.id for l in txn.lines if l.account_id == source_account_id]
                if not line_ids:
                    raise ValidationError(
                        f"Transaction {transaction_id} has no line on account {source_account_id}",
                        rule="source_account",
                        details={"transaction_id": transaction_id,
                                 "account_id": source_account_id}
                    )
                records.append(self._move(actor, transaction_id, line_ids,
                                          destination_account_id))

        for record in records:
            self._log_move(record)
        return records

    # Helpers

    def _move(self, actor: Actor, transaction_id: str, line_ids: Sequence[str],
              destination_account_id: str) -> MoveRecord:
        """Rewrite and audit one transaction's lines; caller holds the atomic block"""
        selected_ids = list(dict.fromkeys(line_ids or []))
        if not selected_ids:
            raise ValidationError("Select at least one line to move", rule="line_selection",
                                  details={"transaction_id": transaction_id})

        txn = self.ledger.get_transaction(transaction_id)
        self.validator.validate_destination_account(destination_account_id)
        if txn.is_void:
            raise AlreadyVoidError(transaction_id)

        lines = []
        for line_id in selected_ids:
            line = txn.get_line(line_id)
            if line is None:
                raise NotFoundError("line", line_id,
                                    f"Line {line_id} is not part of transaction {transaction_id}")
            lines.append(line)

        if all(line.account_id == destination_account_id for line in lines):
            raise NoOpError(
                f"Selected lines already use account {destination_account_id}",
                {"transaction_id": transaction_id, "line_ids": selected_ids,
                 "destination_account_id": destination_account_id}
            )

        now = datetime.now(timezone.utc)
        source_accounts = {line.id: line.account_id for line in lines}
        for line in lines:
            line.account_id = destination_account_id
        txn.updated_at = now
        self.storage.save(self.ledger.table_name, txn.id, txn.to_dict())

        record = MoveRecord(
            transaction_id=txn.id,
            line_ids=selected_ids,
            source_accounts=source_accounts,
            destination_account_id=destination_account_id,
            moved_at=now,
            actor_id=actor.actor_id
        )
        event = self.audit_trail.log_event(
            AuditEventType.TRANSACTION_LINES_MOVED, "transaction", txn.id,
            {
                "transaction_id": txn.id,
                "line_ids": selected_ids,
                "source_accounts": source_accounts,
                "destination_account_id": destination_account_id,
                "timestamp": now,
                "actor": actor.actor_id,
            },
            user_id=actor.actor_id
        )
        if event is not None:
            record.audit_event_id = event.id
        return record

    @staticmethod
    def _log_move(record: MoveRecord) -> None:
        log_action(
            logger, "info",
            f"Moved {len(record.line_ids)} line(s) of {record.transaction_id} "
            f"to {record.destination_account_id}",
            user_id=record.actor_id, action="move_lines", resource=record.transaction_id,
            extra={"source_accounts": record.source_accounts}
        )
