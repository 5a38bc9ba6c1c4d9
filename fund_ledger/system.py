"""
Fund Ledger System

Composition root wiring every engine component to one storage backend.
"""

from typing import Optional
import logging

from .config import FundLedgerConfig, get_config
from .logging_config import setup_logging_from_config
from .currency import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .chart import ChartOfAccounts
from .validation import PostingValidator
from .ledger import LedgerStore
from .mutations import TransactionMutator
from .aggregation import AggregationEngine
from .budgets import BudgetStore, BudgetProjector
from .reporting import ReportingFacade

logger = logging.getLogger(__name__)


class FundLedgerSystem:
    """Fund ledger engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[FundLedgerConfig] = None,
                 configure_logging: bool = False):
        self.config = config or get_config()
        if configure_logging:
            setup_logging_from_config(self.config)

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)
        self.currency = Currency.from_code(self.config.currency)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.chart = ChartOfAccounts(self.storage, self.audit_trail)
        self.validator = PostingValidator(self.chart)
        self.ledger = LedgerStore(self.storage, self.audit_trail, self.chart, self.validator)
        self.mutator = TransactionMutator(self.ledger, self.validator, self.audit_trail)

        # Read side
        self.aggregation = AggregationEngine(self.storage, self.config)
        self.budget_store = BudgetStore(self.storage, self.audit_trail, self.chart,
                                        self.aggregation)
        self.projector = BudgetProjector(self.budget_store, self.aggregation, self.chart)
        self.reporting = ReportingFacade(self.aggregation, self.chart, self.budget_store,
                                         self.projector, currency=self.currency)

        logger.info("Fund ledger initialized with %s storage", type(self.storage).__name__)

    def close(self) -> None:
        """Close the storage connection"""
        self.storage.close()

    def __enter__(self) -> 'FundLedgerSystem':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
