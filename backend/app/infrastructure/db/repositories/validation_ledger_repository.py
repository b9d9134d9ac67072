"""
Validation Ledger Repository

Durable, content-addressed store of every IAP validation attempt.
Used for deduplication of resubmitted proofs and as an audit trail.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.validation_record import ValidationRecordModel
from app.infrastructure.exceptions import PersistenceError
from app.domain.subscription import (
    Platform,
    ValidationEnvironment,
    ValidationRecord,
    ValidationStatus,
)


logger = logging.getLogger(__name__)


@dataclass
class LedgerWriteResult:
    """Outcome of a ledger insert.

    ``created`` is False when another writer already stored a conclusive
    record for the same (receipt_hash, platform); ``record`` is then the
    existing row.
    """
    record: ValidationRecord
    created: bool


class ValidationLedgerRepository:
    """
    Append-only repository for ``iap_validation_history``.

    Rows are never updated or deleted.
    """

    async def find_conclusive(
        self,
        receipt_hash: str,
        platform: Platform,
    ) -> Optional[ValidationRecord]:
        """
        Get the outcome-determining record for a proof, if any.

        Args:
            receipt_hash: SHA-256 of the raw receipt/token
            platform: ios or android

        Returns:
            ValidationRecord or None
        """
        async with get_session_context() as session:
            statement = select(ValidationRecordModel).where(
                ValidationRecordModel.receipt_hash == receipt_hash,
                ValidationRecordModel.platform == platform.value,
                ValidationRecordModel.is_conclusive.is_(True),
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def latest_valid_for_transaction(
        self,
        transaction_id: str,
    ) -> Optional[ValidationRecord]:
        """Most recent valid record for a store transaction/order id."""
        async with get_session_context() as session:
            statement = (
                select(ValidationRecordModel)
                .where(
                    ValidationRecordModel.transaction_id == transaction_id,
                    ValidationRecordModel.status == ValidationStatus.VALID.value,
                )
                .order_by(ValidationRecordModel.validated_at.desc())
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def record(self, entry: ValidationRecord) -> LedgerWriteResult:
        """
        Append a validation attempt.

        Conclusive entries go through ``INSERT ... ON CONFLICT DO NOTHING``
        against the partial unique index; a conflict means a concurrent
        submission of the same proof already stored its outcome, which is
        re-read and returned.

        Raises:
            PersistenceError: if the write fails
        """
        try:
            values = self._to_row(entry)
        except ValueError as e:
            raise PersistenceError(
                f"Invalid validation record for user {entry.user_id!r}: {e}",
                operation="insert",
                table=ValidationRecordModel.__tablename__,
                original_error=e,
            )

        try:
            async with get_session_context() as session:
                stmt = pg_insert(ValidationRecordModel).values(**values)
                if entry.is_conclusive:
                    stmt = stmt.on_conflict_do_nothing(
                        index_elements=["receipt_hash", "platform"],
                        index_where=text("is_conclusive"),
                    )
                stmt = stmt.returning(ValidationRecordModel.id)

                result = await session.execute(stmt)
                inserted_id = result.scalar_one_or_none()
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to store validation record: {e}",
                operation="insert",
                table=ValidationRecordModel.__tablename__,
                original_error=e,
            )

        if inserted_id is None:
            existing = await self.find_conclusive(entry.receipt_hash, entry.platform)
            if existing is None:
                raise PersistenceError(
                    "Validation record conflict but no conclusive row found",
                    operation="insert",
                    table=ValidationRecordModel.__tablename__,
                )
            logger.info(
                f"Receipt {entry.receipt_hash[:12]} already recorded by a concurrent validation"
            )
            return LedgerWriteResult(record=existing, created=False)

        logger.debug(
            f"Stored {entry.platform.value} validation {inserted_id} "
            f"status={entry.status.value} conclusive={entry.is_conclusive}"
        )
        return LedgerWriteResult(
            record=entry.model_copy(update={"id": str(inserted_id)}),
            created=True,
        )

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_row(self, entry: ValidationRecord) -> dict:
        """Column values for an insert; raises ValueError on a non-UUID user id."""
        return {
            "id": uuid4(),
            "user_id": UUID(entry.user_id),
            "platform": entry.platform.value,
            "product_id": entry.product_id,
            "receipt_hash": entry.receipt_hash,
            "transaction_id": entry.transaction_id,
            "status": entry.status.value,
            "environment": entry.environment.value,
            "is_conclusive": entry.is_conclusive,
            "raw_receipt": entry.raw_receipt,
            "validation_response": entry.validation_response,
            "validation_duration_ms": entry.validation_duration_ms,
            "validated_at": entry.validated_at or datetime.now(timezone.utc),
        }

    def _to_domain(self, model: ValidationRecordModel) -> ValidationRecord:
        """Convert database model to domain entity."""
        return ValidationRecord(
            id=str(model.id),
            user_id=str(model.user_id),
            platform=Platform(model.platform),
            product_id=model.product_id,
            receipt_hash=model.receipt_hash,
            transaction_id=model.transaction_id,
            status=ValidationStatus(model.status),
            environment=ValidationEnvironment(model.environment),
            raw_receipt=model.raw_receipt,
            validation_response=model.validation_response or {},
            validation_duration_ms=model.validation_duration_ms or 0,
            is_conclusive=model.is_conclusive,
            validated_at=model.validated_at,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_ledger_repo_instance: Optional[ValidationLedgerRepository] = None


def get_validation_ledger_repository() -> ValidationLedgerRepository:
    """Get or create validation ledger repository singleton."""
    global _ledger_repo_instance

    if _ledger_repo_instance is None:
        _ledger_repo_instance = ValidationLedgerRepository()

    return _ledger_repo_instance
