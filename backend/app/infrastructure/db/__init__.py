"""
Database Infrastructure Package for the Billing Reconciliation Engine

Exports database utilities and repository dependencies.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session_context,
    init_db,
    close_db,
)

from app.infrastructure.db.dependencies import (
    SubscriptionRepoDep,
    ValidationLedgerRepoDep,
    ReconciliationMetricsRepoDep,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session_context",
    "init_db",
    "close_db",
    # Dependencies
    "SubscriptionRepoDep",
    "ValidationLedgerRepoDep",
    "ReconciliationMetricsRepoDep",
]
