"""
Subscription Domain Models

Domain models for the billing reconciliation bounded context.
Enums, DTOs, and domain entities shared by the validation path and the
reconciliation job.
"""

import hashlib
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionProvider(str, Enum):
    """Authority that owns a subscription."""
    CARD = "card"
    IOS = "ios"
    ANDROID = "android"


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle status."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"


class Platform(str, Enum):
    """IAP platforms that submit receipts/purchase tokens."""
    IOS = "ios"
    ANDROID = "android"


class ValidationStatus(str, Enum):
    """Outcome stored in the validation ledger."""
    VALID = "valid"
    INVALID = "invalid"


class ValidationEnvironment(str, Enum):
    """Store environment a receipt was issued in."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


# Statuses that grant access
ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

# Tier ids (match subscription_tiers seed data)
BASELINE_TIER_ID = 1
REGULAR_TIER_ID = 2
CREATOR_TIER_ID = 3

# Fallback period when an authority reports no expiry
DEFAULT_PERIOD_DAYS = 30


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """Local system-of-record row for one user's entitlement."""
    id: Optional[str] = None
    user_id: str
    provider: SubscriptionProvider
    provider_subscription_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    tier_id: int = REGULAR_TIER_ID
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES


class ValidationRecord(BaseModel):
    """One immutable audit/dedup entry in the validation ledger."""
    id: Optional[str] = None
    user_id: str
    platform: Platform
    product_id: str
    receipt_hash: str
    transaction_id: Optional[str] = None
    status: ValidationStatus
    environment: ValidationEnvironment = ValidationEnvironment.PRODUCTION
    raw_receipt: str
    validation_response: Dict[str, Any] = Field(default_factory=dict)
    validation_duration_ms: int = 0
    is_conclusive: bool = True
    validated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def expiry_date(self) -> Optional[datetime]:
        """Authority-reported expiry captured at validation time."""
        raw = self.validation_response.get("expiry_date")
        if not raw:
            return None
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(raw)


class ValidationResult(BaseModel):
    """Outcome of validating one purchase proof."""
    success: bool
    transaction_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    environment: Optional[ValidationEnvironment] = None
    error: Optional[str] = None
    should_retry: bool = False
    # Set when a stored proof was first validated for a different user
    claimed_by_other_user: bool = False


class RemoteSubscriptionState(BaseModel):
    """
    Authority view of a subscription, already mapped onto local vocabulary.

    ``current_period_end`` is None when the authority gave no period (for
    example a deleted remote object); the local value is kept in that case.
    """
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    raw_status: Optional[str] = None


class ReconciliationMetrics(BaseModel):
    """Summary of one reconciliation run."""
    total_checked: int = 0
    expired: int = 0
    updated: int = 0
    errors: int = 0
    drift_detected: int = 0
    duration_ms: int = 0
    reconciled_at: Optional[datetime] = None

    def error_rate(self) -> float:
        if not self.total_checked:
            return 0.0
        return self.errors / self.total_checked

    def drift_rate(self) -> float:
        if not self.total_checked:
            return 0.0
        return self.drift_detected / self.total_checked

    def has_high_error_rate(self, threshold: float = 0.10) -> bool:
        return self.errors > self.total_checked * threshold

    def has_high_drift_rate(self, threshold: float = 0.05) -> bool:
        return self.drift_detected > self.total_checked * threshold


class ReconciliationHealthDay(BaseModel):
    """Per-day rollup of the reconciliation runs that finished that day (UTC)."""
    day: date
    runs: int = 0
    total_checked: int = 0
    expired: int = 0
    updated: int = 0
    errors: int = 0
    drift_detected: int = 0
    avg_duration_ms: int = 0
    error_rate: float = 0.0
    drift_rate: float = 0.0


class ReconciliationAlert(BaseModel):
    """A past run that crossed an error or drift threshold."""
    alert: str
    rate: float
    reconciled_at: Optional[datetime] = None
    metrics: ReconciliationMetrics


# =============================================================================
# Request/Response DTOs
# =============================================================================

class ReceiptValidationRequest(BaseModel):
    """Request DTO for submitting an in-app purchase."""
    platform: Platform
    product_id: str = Field(..., min_length=1, description="Store product identifier")
    receipt: Optional[str] = Field(
        default=None, description="Base64 App Store receipt (iOS)"
    )
    purchase_token: Optional[str] = Field(
        default=None, description="Google Play purchase token (Android)"
    )

    @property
    def proof(self) -> Optional[str]:
        if self.platform == Platform.IOS:
            return self.receipt
        return self.purchase_token


class ReceiptValidationResponse(BaseModel):
    """Response DTO for a purchase submission."""
    success: bool
    platform: Platform
    product_id: str
    transaction_id: Optional[str] = None
    tier_id: Optional[int] = None
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None


class ReconciliationRunResponse(BaseModel):
    """Response DTO for a manually triggered run."""
    success: bool = True
    message: str
    timestamp: datetime


class UserReconciliationResponse(BaseModel):
    """Response DTO for a single-user reconciliation."""
    success: bool = True
    message: str
    user_id: str
    metrics: ReconciliationMetrics


class ReconciliationMetricsResponse(BaseModel):
    """Response DTO for recent reconciliation metrics."""
    success: bool = True
    metrics: list[ReconciliationMetrics]


class ReconciliationHealthResponse(BaseModel):
    """Response DTO for the daily reconciliation health rollup."""
    success: bool = True
    health: list[ReconciliationHealthDay]


class ReconciliationAlertsResponse(BaseModel):
    """Response DTO for runs that crossed an alert threshold."""
    success: bool = True
    alerts: list[ReconciliationAlert]
    count: int


# =============================================================================
# Business Logic
# =============================================================================

def hash_receipt(raw_proof: str) -> str:
    """Stable dedup key for a receipt or purchase token (SHA-256 hex)."""
    return hashlib.sha256(raw_proof.encode("utf-8")).hexdigest()


def tier_for_product(product_id: str) -> int:
    """Map a store product id onto a tier id."""
    if "creator" in product_id.lower():
        return CREATOR_TIER_ID
    return REGULAR_TIER_ID


def resolve_entitlements(
    subscriptions: Iterable[Subscription],
    baseline_tier_id: int = BASELINE_TIER_ID,
) -> Dict[str, int]:
    """
    Resolve the granted tier for every user that owns at least one row.

    Granted tier is the highest tier_id among the user's active/trialing
    subscriptions; users with none fall back to ``baseline_tier_id``.
    """
    tiers: Dict[str, int] = {}
    for sub in subscriptions:
        current = tiers.get(sub.user_id, baseline_tier_id)
        if sub.is_entitled:
            current = max(current, sub.tier_id)
        tiers[sub.user_id] = current
    return tiers


def summarize_health(runs: Iterable[ReconciliationMetrics]) -> List[ReconciliationHealthDay]:
    """
    Roll run summaries up into one entry per UTC day, newest day first.

    Rates are computed over the day's totals, not averaged per run. Runs
    without a ``reconciled_at`` timestamp are skipped.
    """
    days: Dict[date, List[ReconciliationMetrics]] = {}
    for run in runs:
        if run.reconciled_at is None:
            continue
        day = run.reconciled_at.astimezone(timezone.utc).date()
        days.setdefault(day, []).append(run)

    health = []
    for day in sorted(days, reverse=True):
        day_runs = days[day]
        totals = ReconciliationMetrics(
            total_checked=sum(r.total_checked for r in day_runs),
            expired=sum(r.expired for r in day_runs),
            updated=sum(r.updated for r in day_runs),
            errors=sum(r.errors for r in day_runs),
            drift_detected=sum(r.drift_detected for r in day_runs),
        )
        health.append(ReconciliationHealthDay(
            day=day,
            runs=len(day_runs),
            total_checked=totals.total_checked,
            expired=totals.expired,
            updated=totals.updated,
            errors=totals.errors,
            drift_detected=totals.drift_detected,
            avg_duration_ms=sum(r.duration_ms for r in day_runs) // len(day_runs),
            error_rate=round(totals.error_rate(), 4),
            drift_rate=round(totals.drift_rate(), 4),
        ))
    return health
