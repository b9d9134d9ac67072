"""
Integration tests for the billing API endpoints.

Tests the full request/response cycle with authentication overridden and
the services wired to in-memory stores.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import get_current_user_id
from app.domain.subscription import (
    Platform,
    ReconciliationMetrics,
    SubscriptionStatus,
    ValidationEnvironment,
    ValidationRecord,
    ValidationStatus,
    hash_receipt,
)
from app.infrastructure.auth.entitlement_propagator import EntitlementPropagator
from app.infrastructure.authorities.apple_client import AppleVerification
from app.infrastructure.authorities.drift import DriftStrategyRegistry
from app.infrastructure.authorities.retry import RetryPolicy
from app.infrastructure.db.repositories import get_reconciliation_metrics_repository
from app.infrastructure.exceptions import PermanentAuthorityError, TransientAuthorityError
from app.infrastructure.services.iap_validation_service import (
    IAPValidationService,
    get_iap_validation_service,
)
from app.infrastructure.services.reconciliation_service import (
    SubscriptionReconciliationService,
    get_reconciliation_service,
)


USER_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def apple():
    client = MagicMock()
    client.validate = AsyncMock(return_value=AppleVerification(
        success=True,
        status_code=0,
        environment=ValidationEnvironment.PRODUCTION,
        transaction_id="1000000000000001",
        expiry_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
    ))
    return client


@pytest.fixture
def client(app, apple, ledger, subscription_repo, metrics_repo, claims_store, instant_sleep):
    propagator = EntitlementPropagator(store=claims_store)
    iap_service = IAPValidationService(
        ledger=ledger,
        subscriptions=subscription_repo,
        propagator=propagator,
        apple_client=apple,
        google_client=MagicMock(),
        retry_policy=RetryPolicy(max_attempts=2),
        sleep=instant_sleep,
    )
    reconciliation_service = SubscriptionReconciliationService(
        subscriptions=subscription_repo,
        metrics_repository=metrics_repo,
        propagator=propagator,
        strategies=DriftStrategyRegistry([]),
    )

    app.dependency_overrides[get_current_user_id] = lambda: USER_ID
    app.dependency_overrides[get_iap_validation_service] = lambda: iap_service
    app.dependency_overrides[get_reconciliation_service] = lambda: reconciliation_service
    app.dependency_overrides[get_reconciliation_metrics_repository] = lambda: metrics_repo

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


class TestHealthEndpoints:

    def test_health_endpoint(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestReceiptValidation:

    def test_successful_purchase_activates_subscription(self, client, subscription_repo, claims_store):
        response = client.post("/api/iap/validate-receipt", json={
            "platform": "ios",
            "product_id": "cookcam_monthly",
            "receipt": "base64receipt",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["transaction_id"] == "1000000000000001"
        assert data["tier_id"] == 2
        assert data["status"] == "active"
        assert len(subscription_repo.rows) == 1
        assert claims_store.claims[USER_ID]["subscription_tier"] == 2

    def test_missing_proof(self, client, apple):
        response = client.post("/api/iap/validate-receipt", json={
            "platform": "android",
            "product_id": "cookcam_monthly",
        })

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "purchase_token is required for android validation",
        }
        apple.validate.assert_not_awaited()

    def test_rejected_receipt(self, client, apple, subscription_repo):
        apple.validate.side_effect = PermanentAuthorityError("The receipt could not be authenticated.")

        response = client.post("/api/iap/validate-receipt", json={
            "platform": "ios", "product_id": "cookcam_monthly", "receipt": "forged",
        })

        assert response.status_code == 400
        assert response.json()["error"] == "The receipt could not be authenticated."
        assert subscription_repo.rows == {}

    def test_store_outage_asks_for_retry(self, client, apple):
        apple.validate.side_effect = TransientAuthorityError("App Store unavailable")

        response = client.post("/api/iap/validate-receipt", json={
            "platform": "ios", "product_id": "cookcam_monthly", "receipt": "r",
        })

        assert response.status_code == 503
        assert response.json()["should_retry"] is True

    def test_unknown_platform_is_rejected(self, client):
        response = client.post("/api/iap/validate-receipt", json={
            "platform": "windows", "product_id": "cookcam_monthly", "receipt": "r",
        })
        assert response.status_code == 422

    def test_receipt_claimed_by_another_account(self, client, apple, ledger, subscription_repo, claims_store):
        ledger.records.append(ValidationRecord(
            id="rec-1",
            user_id="00000000-0000-0000-0000-000000000002",
            platform=Platform.IOS,
            product_id="cookcam_creator_monthly",
            receipt_hash=hash_receipt("shared-receipt"),
            transaction_id="1000000000000099",
            status=ValidationStatus.VALID,
            raw_receipt="shared-receipt",
            validation_response={"success": True, "expiry_date": "2030-01-01T00:00:00+00:00"},
        ))

        response = client.post("/api/iap/validate-receipt", json={
            "platform": "ios", "product_id": "cookcam_creator_monthly", "receipt": "shared-receipt",
        })

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "error": "Purchase already claimed by another account",
        }
        apple.validate.assert_not_awaited()
        assert subscription_repo.rows == {}
        assert USER_ID not in claims_store.claims

    def test_lapsed_purchase_is_stored_expired(self, client, apple, claims_store):
        apple.validate.return_value = AppleVerification(
            success=True,
            status_code=0,
            environment=ValidationEnvironment.PRODUCTION,
            transaction_id="1000000000000002",
            expiry_date=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )

        response = client.post("/api/iap/validate-receipt", json={
            "platform": "ios", "product_id": "cookcam_creator_monthly", "receipt": "old-receipt",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "expired"
        assert claims_store.claims[USER_ID]["subscription_tier"] == 1


class TestReconciliationEndpoints:

    def test_manual_run_is_accepted(self, client, metrics_repo):
        response = client.post("/api/reconciliation/run")

        assert response.status_code == 202
        assert response.json()["message"] == "Reconciliation job started"
        # TestClient runs background tasks before returning
        assert len(metrics_repo.rows) == 1

    def test_own_user_reconciliation(self, client, subscription_repo, subscription_factory, claims_store):
        subscription_repo.add(subscription_factory(user_id=USER_ID, status=SubscriptionStatus.CANCELLED))

        response = client.post(f"/api/reconciliation/user/{USER_ID}")

        assert response.status_code == 200
        assert response.json()["user_id"] == USER_ID
        assert claims_store.claims[USER_ID]["subscription_tier"] == 1

    def test_other_user_is_forbidden(self, client):
        response = client.post("/api/reconciliation/user/someone-else")
        assert response.status_code == 403

    def test_recent_metrics(self, client, metrics_repo):
        metrics_repo.rows.append(ReconciliationMetrics(total_checked=5, expired=1))

        response = client.get("/api/reconciliation/metrics")

        assert response.status_code == 200
        assert response.json()["metrics"][0]["total_checked"] == 5

    def test_aborted_single_user_run(self, client, subscription_repo):
        subscription_repo.fail_listing = True

        response = client.post(f"/api/reconciliation/user/{USER_ID}")

        assert response.status_code == 503
        assert response.json()["error"] == "ReconciliationAbortedError"

    def test_health_rollup(self, client, metrics_repo):
        recent = datetime.now(timezone.utc) - timedelta(hours=1)
        metrics_repo.rows.extend([
            ReconciliationMetrics(total_checked=10, errors=1, duration_ms=400, reconciled_at=recent),
            ReconciliationMetrics(total_checked=30, errors=1, duration_ms=200, reconciled_at=recent),
            ReconciliationMetrics(total_checked=99, reconciled_at=recent - timedelta(days=45)),
        ])

        response = client.get("/api/reconciliation/health")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert len(data["health"]) == 1
        day = data["health"][0]
        assert day["day"] == recent.date().isoformat()
        assert day["runs"] == 2
        assert day["total_checked"] == 40
        assert day["avg_duration_ms"] == 300
        assert day["error_rate"] == 0.05

    def test_alerts_list_runs_over_threshold(self, client, metrics_repo):
        recent = datetime.now(timezone.utc) - timedelta(hours=1)
        metrics_repo.rows.extend([
            ReconciliationMetrics(total_checked=100, errors=15, reconciled_at=recent),
            ReconciliationMetrics(total_checked=100, errors=1, reconciled_at=recent - timedelta(hours=1)),
            ReconciliationMetrics(total_checked=100, errors=50, reconciled_at=recent - timedelta(days=30)),
        ])

        response = client.get("/api/reconciliation/alerts")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["count"] == 1
        assert data["alerts"][0]["alert"] == "high_error_rate"
        assert data["alerts"][0]["rate"] == 0.15
        assert data["alerts"][0]["metrics"]["errors"] == 15

    def test_no_alerts(self, client):
        response = client.get("/api/reconciliation/alerts")

        assert response.status_code == 200
        assert response.json() == {"success": True, "alerts": [], "count": 0}
