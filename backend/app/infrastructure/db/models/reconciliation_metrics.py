"""
Reconciliation Metrics Model

One summary row per reconciliation run, for trend monitoring only.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


class ReconciliationMetricsModel(SQLModel, table=True):
    """Maps to the 'reconciliation_metrics' table."""

    __tablename__ = "reconciliation_metrics"

    id: UUID = Field(default_factory=uuid4, primary_key=True)

    total_checked: int = Field(default=0)
    expired_count: int = Field(default=0)
    updated_count: int = Field(default=0)
    errors_count: int = Field(default=0)
    drift_detected: int = Field(default=0)
    duration_ms: int = Field(default=0)

    reconciled_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
