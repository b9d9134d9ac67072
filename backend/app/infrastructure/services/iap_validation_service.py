"""
IAP Validation Service

Validates App Store receipts and Google Play purchase tokens against their
authority, with ledger-backed deduplication of resubmitted proofs.

Flow per submission:
1. Hash the proof and look for a conclusive ledger record (dedup hit
   returns the stored outcome, no authority call)
2. Call the platform client through the retry controller
3. Append the outcome to the ledger (best-effort)
4. Return the result
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app.config.settings import get_settings
from app.domain.subscription import (
    DEFAULT_PERIOD_DAYS,
    Platform,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
    ValidationRecord,
    ValidationResult,
    ValidationStatus,
    hash_receipt,
    resolve_entitlements,
    tier_for_product,
)
from app.infrastructure.auth.entitlement_propagator import (
    EntitlementPropagator,
    get_entitlement_propagator,
)
from app.infrastructure.authorities.apple_client import AppleReceiptClient
from app.infrastructure.authorities.google_play_client import GooglePlayClient
from app.infrastructure.authorities.retry import (
    FailureKind,
    RetryOutcome,
    RetryPolicy,
    with_retry,
)
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.validation_ledger_repository import (
    LedgerWriteResult,
    ValidationLedgerRepository,
    get_validation_ledger_repository,
)
from app.infrastructure.exceptions import (
    ConfigurationError,
    DatabaseError,
    EntitlementPropagationError,
    PersistenceError,
    ValidationError,
)


logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._holders: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class IAPValidationService:
    """
    Purchase-proof validation for the iOS and Android stores.

    Authority errors never escape ``validate_purchase``; they are folded
    into the returned ValidationResult.
    """

    def __init__(
        self,
        ledger: Optional[ValidationLedgerRepository] = None,
        subscriptions: Optional[SubscriptionRepository] = None,
        propagator: Optional[EntitlementPropagator] = None,
        apple_client: Optional[AppleReceiptClient] = None,
        google_client: Optional[GooglePlayClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._ledger = ledger or get_validation_ledger_repository()
        self._subscriptions = subscriptions or get_subscription_repository()
        self._propagator = propagator or get_entitlement_propagator()
        self._apple = apple_client or AppleReceiptClient()
        self._google = google_client or GooglePlayClient()
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._clock = clock
        self._locks = _KeyedLocks()

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_purchase(
        self,
        user_id: str,
        platform: Platform,
        raw_proof: str,
        product_id: str,
    ) -> ValidationResult:
        """
        Validate a receipt (iOS) or purchase token (Android).

        Concurrent submissions of the same proof are serialized, so at most
        one of them reaches the authority.

        Raises:
            ValidationError: empty proof or product id
        """
        if not raw_proof:
            raise ValidationError("Purchase proof is required", details={"platform": platform.value})
        if not product_id:
            raise ValidationError("Product id is required")

        receipt_hash = hash_receipt(raw_proof)

        async with self._locks.hold((receipt_hash, platform.value)):
            existing = await self._find_conclusive(receipt_hash, platform)
            if existing is not None:
                logger.info(
                    f"Dedup hit for {platform.value} receipt {receipt_hash[:12]} "
                    f"(user {user_id}), skipping authority call"
                )
                return self._result_from_record(existing, user_id)

            started = time.monotonic()
            outcome = await with_retry(
                lambda: self._call_authority(platform, raw_proof, product_id),
                policy=self._retry_policy,
                sleep=self._sleep,
                label=f"{platform.value} validation",
            )
            duration_ms = int((time.monotonic() - started) * 1000)

            entry = self._build_record(
                user_id, platform, product_id, raw_proof, receipt_hash, outcome, duration_ms
            )
            written = await self._append(entry)

            if written is not None and not written.created:
                return self._result_from_record(written.record, user_id)

            return self._result_from_outcome(outcome)

    async def _call_authority(self, platform: Platform, raw_proof: str, product_id: str):
        if platform == Platform.IOS:
            return await self._apple.validate(raw_proof)
        return await self._google.verify(product_id, raw_proof)

    async def _find_conclusive(
        self,
        receipt_hash: str,
        platform: Platform,
    ) -> Optional[ValidationRecord]:
        try:
            return await self._ledger.find_conclusive(receipt_hash, platform)
        except (SQLAlchemyError, DatabaseError) as e:
            logger.error(f"Ledger lookup failed, validating against authority: {e}")
            return None

    async def _append(self, entry: ValidationRecord) -> Optional[LedgerWriteResult]:
        try:
            return await self._ledger.record(entry)
        except PersistenceError as e:
            logger.error(
                f"Failed to store {entry.platform.value} validation for user {entry.user_id}: {e.message}"
            )
            return None

    # =========================================================================
    # Mapping
    # =========================================================================

    def _build_record(
        self,
        user_id: str,
        platform: Platform,
        product_id: str,
        raw_proof: str,
        receipt_hash: str,
        outcome: RetryOutcome,
        duration_ms: int,
    ) -> ValidationRecord:
        if outcome.success:
            verification = outcome.value
            return ValidationRecord(
                user_id=user_id,
                platform=platform,
                product_id=product_id,
                receipt_hash=receipt_hash,
                transaction_id=verification.transaction_id,
                status=ValidationStatus.VALID if verification.success else ValidationStatus.INVALID,
                environment=verification.environment,
                raw_receipt=raw_proof,
                validation_response=verification.to_response(),
                validation_duration_ms=duration_ms,
                is_conclusive=verification.conclusive,
                validated_at=datetime.now(timezone.utc),
            )

        # Exhausted transient failures stay inconclusive so a resubmission
        # reaches the authority again
        return ValidationRecord(
            user_id=user_id,
            platform=platform,
            product_id=product_id,
            receipt_hash=receipt_hash,
            status=ValidationStatus.INVALID,
            raw_receipt=raw_proof,
            validation_response={
                "success": False,
                "error": outcome.error_message,
                "failure_kind": outcome.failure_kind.value if outcome.failure_kind else None,
                "attempts": outcome.attempts,
            },
            validation_duration_ms=duration_ms,
            is_conclusive=outcome.failure_kind == FailureKind.PERMANENT,
            validated_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def _result_from_outcome(outcome: RetryOutcome) -> ValidationResult:
        if outcome.success:
            verification = outcome.value
            return ValidationResult(
                success=verification.success,
                transaction_id=verification.transaction_id,
                expiry_date=verification.expiry_date,
                environment=verification.environment,
                error=verification.error,
                should_retry=not verification.conclusive,
            )

        return ValidationResult(
            success=False,
            error=outcome.error_message,
            should_retry=outcome.failure_kind != FailureKind.PERMANENT,
        )

    @staticmethod
    def _result_from_record(record: ValidationRecord, user_id: str) -> ValidationResult:
        # Built from the stored authority payload so a dedup hit matches the
        # result returned for the original submission
        response = record.validation_response or {}
        valid = record.status == ValidationStatus.VALID
        claimed_by_other = record.user_id.lower() != user_id.lower()
        if valid and claimed_by_other:
            logger.warning(
                f"User {user_id} submitted {record.platform.value} proof "
                f"{record.receipt_hash[:12]} already claimed by user {record.user_id}"
            )
        return ValidationResult(
            success=valid,
            transaction_id=record.transaction_id,
            expiry_date=record.expiry_date,
            environment=response.get("environment"),
            error=None if valid else response.get("error"),
            should_retry=False,
            claimed_by_other_user=claimed_by_other,
        )

    # =========================================================================
    # Activation
    # =========================================================================

    async def activate_purchase(
        self,
        user_id: str,
        platform: Platform,
        product_id: str,
        result: ValidationResult,
    ) -> Subscription:
        """
        Grant the subscription backed by a successful validation and push
        the user's resulting tier into their auth claims.

        A proof whose authority expiry has already passed is stored as
        expired, so the propagated tier never includes it. A propagation
        failure is logged only; the next reconciliation run converges the
        claims.

        Raises:
            ValidationError: the result is unsuccessful or the proof belongs
                to another user
        """
        if not result.success:
            raise ValidationError("Only successful validations can be activated")
        if result.claimed_by_other_user:
            raise ValidationError(
                "Purchase already claimed by another account",
                details={"user_id": user_id, "transaction_id": result.transaction_id},
            )

        now = self._clock()
        period_end = result.expiry_date or now + timedelta(days=DEFAULT_PERIOD_DAYS)
        status = SubscriptionStatus.ACTIVE
        if period_end < now:
            logger.warning(
                f"{platform.value} purchase {result.transaction_id} for user {user_id} "
                f"expired at {period_end.isoformat()}, storing as expired"
            )
            status = SubscriptionStatus.EXPIRED

        subscription = await self._subscriptions.activate_from_purchase(
            user_id=user_id,
            provider=SubscriptionProvider(platform.value),
            provider_subscription_id=result.transaction_id,
            tier_id=tier_for_product(product_id),
            current_period_end=period_end,
            status=status,
        )

        baseline = get_settings().baseline_tier_id
        tiers = resolve_entitlements(
            await self._subscriptions.list_all(user_id=user_id), baseline
        )
        try:
            await self._propagator.propagate(user_id, tiers.get(user_id, baseline))
        except (EntitlementPropagationError, ConfigurationError) as e:
            logger.error(f"Entitlement propagation failed after purchase for user {user_id}: {e.message}")

        return subscription


_iap_service_instance: Optional[IAPValidationService] = None


def get_iap_validation_service() -> IAPValidationService:
    """Get or create IAP validation service singleton."""
    global _iap_service_instance

    if _iap_service_instance is None:
        _iap_service_instance = IAPValidationService()

    return _iap_service_instance
