"""
Repository Layer for the Billing Reconciliation Engine

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.validation_ledger_repository import (
    LedgerWriteResult,
    ValidationLedgerRepository,
    get_validation_ledger_repository,
)
from app.infrastructure.db.repositories.reconciliation_metrics_repository import (
    ReconciliationMetricsRepository,
    get_reconciliation_metrics_repository,
)


__all__ = [
    # Repositories
    "SubscriptionRepository",
    "ValidationLedgerRepository",
    "ReconciliationMetricsRepository",
    "LedgerWriteResult",
    # Singletons
    "get_subscription_repository",
    "get_validation_ledger_repository",
    "get_reconciliation_metrics_repository",
]
