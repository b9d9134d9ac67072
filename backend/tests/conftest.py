"""
Test configuration and fixtures for the Billing Reconciliation Engine.

Provides shared fixtures and in-memory stand-ins for the repositories and
the claims store, so services can be exercised without PostgreSQL or
Supabase.
"""

import os

# Must be set before app.config.settings is imported anywhere
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")
os.environ.setdefault("APPLE_SHARED_SECRET", "test-apple-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

import pytest

from app.domain.subscription import (
    ENTITLED_STATUSES,
    Platform,
    ReconciliationMetrics,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
    ValidationRecord,
    ValidationStatus,
)
from app.infrastructure.auth.entitlement_propagator import ClaimsStore
from app.infrastructure.db.repositories.validation_ledger_repository import LedgerWriteResult
from app.infrastructure.exceptions import (
    EntitlementPropagationError,
    NotFoundError,
    PersistenceError,
)


FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# In-memory Repositories
# =============================================================================

class InMemorySubscriptionRepository:
    """Dict-backed SubscriptionRepository with the same async surface."""

    def __init__(self, rows: Iterable[Subscription] = ()):
        self.rows: Dict[str, Subscription] = {}
        self.fail_listing = False
        self.fail_updates_for: set = set()
        for row in rows:
            self.add(row)

    def add(self, row: Subscription) -> Subscription:
        if row.id is None:
            row = row.model_copy(update={"id": str(uuid4())})
        self.rows[row.id] = row
        return row

    def _check_listing(self):
        if self.fail_listing:
            raise ConnectionError("subscription store unavailable")

    async def list_by_status(self, statuses, providers=None, user_id=None) -> List[Subscription]:
        self._check_listing()
        statuses = set(statuses)
        providers = set(providers) if providers is not None else None
        return [
            row for row in self.rows.values()
            if row.status in statuses
            and (providers is None or row.provider in providers)
            and (user_id is None or row.user_id == user_id)
        ]

    async def list_overdue(self, now: datetime) -> List[Subscription]:
        self._check_listing()
        return [
            row for row in self.rows.values()
            if row.status in ENTITLED_STATUSES
            and row.current_period_end is not None
            and row.current_period_end < now
        ]

    async def list_all(self, user_id: Optional[str] = None) -> List[Subscription]:
        self._check_listing()
        return [row for row in self.rows.values() if user_id is None or row.user_id == user_id]

    async def get_for_user_and_provider(self, user_id, provider) -> Optional[Subscription]:
        matches = [
            row for row in self.rows.values()
            if row.user_id == user_id and row.provider == provider
        ]
        return matches[-1] if matches else None

    async def update_state(self, subscription_id, status=None, current_period_end=None) -> Subscription:
        if subscription_id in self.fail_updates_for:
            raise PersistenceError("write rejected", operation="update_state")
        if subscription_id not in self.rows:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        changes = {}
        if status is not None:
            changes["status"] = status
        if current_period_end is not None:
            changes["current_period_end"] = current_period_end
        self.rows[subscription_id] = self.rows[subscription_id].model_copy(update=changes)
        return self.rows[subscription_id]

    async def activate_from_purchase(
        self, user_id, provider, provider_subscription_id, tier_id, current_period_end,
        status=SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        existing = await self.get_for_user_and_provider(user_id, provider)
        row = existing or Subscription(id=str(uuid4()), user_id=user_id, provider=provider)
        row = row.model_copy(update={
            "provider_subscription_id": provider_subscription_id,
            "status": status,
            "tier_id": tier_id,
            "current_period_end": current_period_end,
        })
        self.rows[row.id] = row
        return row


class InMemoryValidationLedger:
    """Append-only list honoring the one-conclusive-row-per-proof rule."""

    def __init__(self):
        self.records: List[ValidationRecord] = []
        self.fail_writes = False
        self.lookups = 0

    async def find_conclusive(self, receipt_hash: str, platform: Platform) -> Optional[ValidationRecord]:
        self.lookups += 1
        for record in self.records:
            if record.receipt_hash == receipt_hash and record.platform == platform and record.is_conclusive:
                return record
        return None

    async def latest_valid_for_transaction(self, transaction_id: str) -> Optional[ValidationRecord]:
        matches = [
            r for r in self.records
            if r.transaction_id == transaction_id and r.status == ValidationStatus.VALID
        ]
        return matches[-1] if matches else None

    async def record(self, entry: ValidationRecord) -> LedgerWriteResult:
        if self.fail_writes:
            raise PersistenceError("ledger unavailable", operation="insert")
        if entry.is_conclusive:
            for existing in self.records:
                if (
                    existing.receipt_hash == entry.receipt_hash
                    and existing.platform == entry.platform
                    and existing.is_conclusive
                ):
                    return LedgerWriteResult(record=existing, created=False)
        stored = entry.model_copy(update={"id": str(uuid4())})
        self.records.append(stored)
        return LedgerWriteResult(record=stored, created=True)


class InMemoryMetricsRepository:
    def __init__(self):
        self.rows: List[ReconciliationMetrics] = []
        self.fail_writes = False

    async def create(self, metrics: ReconciliationMetrics) -> None:
        if self.fail_writes:
            raise PersistenceError("metrics table unavailable", operation="insert")
        self.rows.append(metrics)

    async def list_recent(self, limit: int = 10) -> List[ReconciliationMetrics]:
        return list(reversed(self.rows))[:limit]

    async def list_since(self, since: datetime) -> List[ReconciliationMetrics]:
        rows = [r for r in self.rows if r.reconciled_at is not None and r.reconciled_at >= since]
        return sorted(rows, key=lambda r: r.reconciled_at, reverse=True)


class RecordingClaimsStore(ClaimsStore):
    """Claims store that remembers every write and can reject chosen users."""

    def __init__(self, failing_users: Iterable[str] = ()):
        self.claims: Dict[str, dict] = {}
        self.failing_users = set(failing_users)

    async def update_claims(self, user_id: str, claims: dict) -> None:
        if user_id in self.failing_users:
            raise EntitlementPropagationError(f"claims rejected for {user_id}", user_id=user_id)
        self.claims[user_id] = claims


async def no_sleep(delay: float) -> None:
    """Zero-delay replacement for asyncio.sleep in retry loops."""
    return None


def make_subscription(
    provider: SubscriptionProvider = SubscriptionProvider.CARD,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    period_end: Optional[datetime] = None,
    user_id: Optional[str] = None,
    remote_id: Optional[str] = "sub_123",
    tier_id: int = 2,
) -> Subscription:
    return Subscription(
        id=str(uuid4()),
        user_id=user_id or str(uuid4()),
        provider=provider,
        provider_subscription_id=remote_id,
        status=status,
        tier_id=tier_id,
        current_period_end=period_end if period_end is not None else FIXED_NOW + timedelta(days=10),
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def subscription_repo():
    return InMemorySubscriptionRepository()


@pytest.fixture
def ledger():
    return InMemoryValidationLedger()


@pytest.fixture
def metrics_repo():
    return InMemoryMetricsRepository()


@pytest.fixture
def claims_store():
    return RecordingClaimsStore()


@pytest.fixture
def app():
    """Get the FastAPI application."""
    from app.main import app
    return app


@pytest.fixture
def subscription_factory():
    return make_subscription


@pytest.fixture
def instant_sleep():
    return no_sleep
