"""
Unit tests for ValidationLedgerRepository input handling.

Only the paths that fail before a database session is opened are covered
here; the session factory is patched so nothing touches Postgres.
"""

from unittest.mock import MagicMock, patch

import pytest

from app.domain.subscription import Platform, ValidationRecord, ValidationStatus, hash_receipt
from app.infrastructure.db.repositories.validation_ledger_repository import ValidationLedgerRepository
from app.infrastructure.exceptions import PersistenceError


def _entry(user_id):
    return ValidationRecord(
        user_id=user_id,
        platform=Platform.IOS,
        product_id="cookcam_creator_monthly",
        receipt_hash=hash_receipt("receipt-data"),
        transaction_id="1000000000000001",
        status=ValidationStatus.VALID,
        raw_receipt="receipt-data",
    )


class TestRecord:

    async def test_non_uuid_user_id_raises_persistence_error(self):
        session_factory = MagicMock()
        with patch(
            "app.infrastructure.db.repositories.validation_ledger_repository.get_session_context",
            session_factory,
        ):
            with pytest.raises(PersistenceError) as exc_info:
                await ValidationLedgerRepository().record(_entry("not-a-uuid"))

        assert exc_info.value.details["operation"] == "insert"
        assert exc_info.value.details["table"] == "iap_validation_history"
        assert isinstance(exc_info.value.original_error, ValueError)
        session_factory.assert_not_called()
