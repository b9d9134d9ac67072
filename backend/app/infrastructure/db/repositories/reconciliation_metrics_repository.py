"""
Reconciliation Metrics Repository

Insert-only store for per-run reconciliation summaries.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.reconciliation_metrics import ReconciliationMetricsModel
from app.infrastructure.exceptions import PersistenceError
from app.domain.subscription import ReconciliationMetrics


logger = logging.getLogger(__name__)


class ReconciliationMetricsRepository:
    """Repository for ``reconciliation_metrics`` rows."""

    async def create(self, metrics: ReconciliationMetrics) -> None:
        """
        Persist one run summary.

        Raises:
            PersistenceError: if the insert fails
        """
        model = ReconciliationMetricsModel(
            total_checked=metrics.total_checked,
            expired_count=metrics.expired,
            updated_count=metrics.updated,
            errors_count=metrics.errors,
            drift_detected=metrics.drift_detected,
            duration_ms=metrics.duration_ms,
            reconciled_at=metrics.reconciled_at or datetime.now(timezone.utc),
        )
        try:
            async with get_session_context() as session:
                session.add(model)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to store reconciliation metrics: {e}",
                operation="insert",
                table=ReconciliationMetricsModel.__tablename__,
                original_error=e,
            )

    async def list_recent(self, limit: int = 10) -> List[ReconciliationMetrics]:
        """Most recent run summaries, newest first."""
        async with get_session_context() as session:
            statement = (
                select(ReconciliationMetricsModel)
                .order_by(ReconciliationMetricsModel.reconciled_at.desc())
                .limit(limit)
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def list_since(self, since: datetime) -> List[ReconciliationMetrics]:
        """Run summaries reconciled at or after ``since``, newest first."""
        async with get_session_context() as session:
            statement = (
                select(ReconciliationMetricsModel)
                .where(ReconciliationMetricsModel.reconciled_at >= since)
                .order_by(ReconciliationMetricsModel.reconciled_at.desc())
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    @staticmethod
    def _to_domain(model: ReconciliationMetricsModel) -> ReconciliationMetrics:
        return ReconciliationMetrics(
            total_checked=model.total_checked,
            expired=model.expired_count,
            updated=model.updated_count,
            errors=model.errors_count,
            drift_detected=model.drift_detected,
            duration_ms=model.duration_ms,
            reconciled_at=model.reconciled_at,
        )


_metrics_repo_instance: Optional[ReconciliationMetricsRepository] = None


def get_reconciliation_metrics_repository() -> ReconciliationMetricsRepository:
    """Get or create reconciliation metrics repository singleton."""
    global _metrics_repo_instance

    if _metrics_repo_instance is None:
        _metrics_repo_instance = ReconciliationMetricsRepository()

    return _metrics_repo_instance
