"""
SQLModel ORM Models for the Billing Reconciliation Engine

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.validation_record import ValidationRecordModel
from app.infrastructure.db.models.reconciliation_metrics import ReconciliationMetricsModel


__all__ = [
    "SubscriptionModel",
    "ValidationRecordModel",
    "ReconciliationMetricsModel",
]
