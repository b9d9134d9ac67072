"""
Dependency Injection Providers for the Billing Reconciliation Engine

FastAPI dependencies for the repositories. Repositories open their own
sessions, so providers hand out the shared singletons.
"""

from typing import Annotated

from fastapi import Depends

from app.infrastructure.db.repositories import (
    ReconciliationMetricsRepository,
    SubscriptionRepository,
    ValidationLedgerRepository,
    get_reconciliation_metrics_repository,
    get_subscription_repository,
    get_validation_ledger_repository,
)


# Type aliases for repository dependencies
SubscriptionRepoDep = Annotated[
    SubscriptionRepository,
    Depends(get_subscription_repository)
]
ValidationLedgerRepoDep = Annotated[
    ValidationLedgerRepository,
    Depends(get_validation_ledger_repository)
]
ReconciliationMetricsRepoDep = Annotated[
    ReconciliationMetricsRepository,
    Depends(get_reconciliation_metrics_repository)
]
