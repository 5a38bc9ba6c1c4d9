"""
Fund Ledger & Reporting Engine

Fund-accounting ledger for small organizations: double-entry transactions
tracked by general-ledger account and restriction fund, budget planning
against historical actuals, and derived financial statements. All amounts
are integer minor units and balances are derived from postings.
"""

__version__ = "1.0.0"
