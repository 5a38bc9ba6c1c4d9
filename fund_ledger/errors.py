"""
Error Taxonomy

Every failure the engine reports is one of these types. Each error carries
structured detail (rule, identifiers) so callers can render an actionable
message without parsing text, and raw storage failures are wrapped before
they leave the engine.
"""

from typing import Any, Dict, Optional


class FundLedgerError(Exception):
    """Base class for all engine errors"""

    code = "fund_ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for callers to render"""
        return {
            "error": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


class ValidationError(FundLedgerError, ValueError):
    """Malformed or unbalanced input; rejected before any write"""

    code = "validation_error"

    def __init__(self, message: str, rule: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.rule = rule

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["rule"] = self.rule
        return result


class DuplicateIdentifierError(ValidationError):
    """A write would violate uniqueness of an identifier"""

    code = "duplicate_identifier"

    def __init__(self, message: str, table: Optional[str] = None,
                 record_id: Optional[str] = None):
        super().__init__(message, rule="unique_identifier",
                         details={"table": table, "record_id": record_id})
        self.table = table
        self.record_id = record_id


class NotFoundError(FundLedgerError, LookupError):
    """Unknown transaction, line, account, fund or budget"""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{entity_type} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class AlreadyVoidError(FundLedgerError):
    """Transaction is already void"""

    code = "already_void"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} is already void",
                         {"transaction_id": transaction_id})
        self.transaction_id = transaction_id


class NoOpError(FundLedgerError):
    """Requested change would not change anything"""

    code = "no_op"


class InactiveAccountError(FundLedgerError):
    """Mutation targets a retired account"""

    code = "inactive_account"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} is inactive",
                         {"account_id": account_id})
        self.account_id = account_id


class AuthorizationError(FundLedgerError, PermissionError):
    """Actor's role lacks the capability for the operation"""

    code = "authorization_error"

    def __init__(self, actor_id: Optional[str], role: Optional[str], permission: str):
        super().__init__(
            f"Role {role!r} is not allowed to {permission}",
            {"actor_id": actor_id, "role": role, "permission": permission},
        )
        self.actor_id = actor_id
        self.role = role
        self.permission = permission


class InternalConsistencyError(FundLedgerError):
    """An aggregation invariant failed; indicates a defect, not bad input"""

    code = "internal_consistency_error"

    def __init__(self, message: str, check: str, details: Optional[Dict[str, Any]] = None):
        merged = {"check": check}
        merged.update(details or {})
        super().__init__(message, merged)
        self.check = check


class OperationCancelledError(FundLedgerError):
    """Caller cancelled a long-running read"""

    code = "operation_cancelled"


class StorageError(FundLedgerError):
    """Wrapped failure from the persistence backend"""

    code = "storage_error"
