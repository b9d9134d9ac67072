"""
Subscription Reconciliation Service

Daily sweep that brings the local subscription store back in line with
the authorities and pushes resulting tiers into auth claims.

Phases (sequential; rows inside a phase run concurrently, bounded by
RECONCILIATION_CONCURRENCY):
1. Expire entitled rows whose period already ended
2. Card drift sweep against Stripe
3. IAP drift sweep against the validation ledger
4. Entitlement propagation for every user with a subscription row

A drift correction that lands on expired counts toward both ``updated`` and
``expired``, so ``expired`` counts every row the run moved to expired.

A single row's failure is counted and logged; failing to list the rows of
a phase aborts the run with ReconciliationAbortedError.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from app.config.settings import get_settings
from app.domain.subscription import (
    ReconciliationAlert,
    ReconciliationMetrics,
    Subscription,
    SubscriptionStatus,
    resolve_entitlements,
)
from app.infrastructure.auth.entitlement_propagator import (
    EntitlementPropagator,
    get_entitlement_propagator,
)
from app.infrastructure.authorities.drift import (
    CardDriftStrategy,
    DriftStrategy,
    DriftStrategyRegistry,
    IAPDriftStrategy,
    has_drifted,
    plan_correction,
)
from app.infrastructure.authorities.stripe_client import get_stripe_client
from app.infrastructure.db.repositories.reconciliation_metrics_repository import (
    ReconciliationMetricsRepository,
    get_reconciliation_metrics_repository,
)
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.validation_ledger_repository import (
    get_validation_ledger_repository,
)
from app.infrastructure.exceptions import PersistenceError, ReconciliationAbortedError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_strategies() -> DriftStrategyRegistry:
    """Card sweep first, then IAP."""
    return DriftStrategyRegistry([
        CardDriftStrategy(get_stripe_client()),
        IAPDriftStrategy(get_validation_ledger_repository()),
    ])


class SubscriptionReconciliationService:
    """
    Drift reconciliation between the subscription store and the billing
    authorities.

    Not guarded against overlapping runs; the scheduler must not start a
    second run while one is in progress.
    """

    def __init__(
        self,
        subscriptions: Optional[SubscriptionRepository] = None,
        metrics_repository: Optional[ReconciliationMetricsRepository] = None,
        propagator: Optional[EntitlementPropagator] = None,
        strategies: Optional[DriftStrategyRegistry] = None,
        concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        settings = get_settings()
        self._subscriptions = subscriptions or get_subscription_repository()
        self._metrics_repository = metrics_repository or get_reconciliation_metrics_repository()
        self._propagator = propagator or get_entitlement_propagator()
        self._strategies = strategies or default_strategies()
        self._concurrency = max(concurrency or settings.reconciliation_concurrency, 1)
        self._baseline_tier_id = settings.baseline_tier_id
        self._clock = clock

    # =========================================================================
    # Entry Points
    # =========================================================================

    async def reconcile_all(self) -> ReconciliationMetrics:
        """
        Run all four phases across every subscription.

        Returns:
            Metrics for the run (also persisted, best-effort)

        Raises:
            ReconciliationAbortedError: rows for a phase could not be listed
        """
        started = time.monotonic()
        metrics = ReconciliationMetrics()
        logger.info("Starting subscription reconciliation")

        await self._expire_overdue(metrics)
        for strategy in self._strategies.strategies:
            await self._sweep(strategy, metrics)
        await self._propagate_entitlements(metrics)

        metrics.duration_ms = int((time.monotonic() - started) * 1000)
        metrics.reconciled_at = self._clock()

        logger.info(
            f"Reconciliation complete: checked={metrics.total_checked} "
            f"expired={metrics.expired} updated={metrics.updated} "
            f"errors={metrics.errors} drift={metrics.drift_detected} "
            f"duration={metrics.duration_ms}ms"
        )

        await self._store_metrics(metrics)
        return metrics

    async def reconcile_single_user(self, user_id: str) -> ReconciliationMetrics:
        """Drift sweeps and propagation for one user; metrics are not persisted."""
        started = time.monotonic()
        metrics = ReconciliationMetrics()
        logger.info(f"Reconciling subscriptions for user {user_id}")

        for strategy in self._strategies.strategies:
            await self._sweep(strategy, metrics, user_id=user_id)
        await self._propagate_entitlements(metrics, user_id=user_id)

        metrics.duration_ms = int((time.monotonic() - started) * 1000)
        metrics.reconciled_at = self._clock()
        return metrics

    # =========================================================================
    # Phases
    # =========================================================================

    async def _expire_overdue(self, metrics: ReconciliationMetrics) -> None:
        now = self._clock()
        overdue = await self._list("expire", self._subscriptions.list_overdue(now))
        logger.info(f"Found {len(overdue)} overdue subscriptions")

        async def _expire(subscription: Subscription) -> None:
            try:
                await self._subscriptions.update_state(
                    subscription.id, status=SubscriptionStatus.EXPIRED
                )
                metrics.expired += 1
                metrics.total_checked += 1
                logger.info(
                    f"Expired {subscription.provider.value} subscription {subscription.id} "
                    f"for user {subscription.user_id}"
                )
            except Exception as e:
                metrics.errors += 1
                logger.error(f"Failed to expire subscription {subscription.id}: {e}")

        await self._run_pool(overdue, _expire)

    async def _sweep(
        self,
        strategy: DriftStrategy,
        metrics: ReconciliationMetrics,
        user_id: Optional[str] = None,
    ) -> None:
        now = self._clock()
        rows = await self._list(
            f"{strategy.name}_drift",
            self._subscriptions.list_by_status(
                strategy.sweep_statuses, providers=strategy.providers, user_id=user_id
            ),
        )
        logger.info(f"Checking {len(rows)} {strategy.name} subscriptions for drift")

        async def _check(subscription: Subscription) -> None:
            metrics.total_checked += 1
            try:
                remote = await strategy.resolve(subscription, now)
                if remote is None or not has_drifted(subscription, remote, strategy.tolerance):
                    return

                metrics.drift_detected += 1
                correction = plan_correction(subscription, remote, now)
                logger.warning(
                    f"Drift on {subscription.provider.value} subscription {subscription.id}: "
                    f"local={subscription.status.value}/{subscription.current_period_end} "
                    f"remote={remote.raw_status}/{remote.current_period_end} "
                    f"-> {correction.status.value}"
                )
                await self._subscriptions.update_state(
                    subscription.id,
                    status=correction.status,
                    current_period_end=correction.current_period_end,
                )
                metrics.updated += 1
                if correction.status == SubscriptionStatus.EXPIRED:
                    metrics.expired += 1
            except Exception as e:
                metrics.errors += 1
                logger.error(
                    f"Failed to reconcile {strategy.name} subscription {subscription.id}: {e}"
                )

        await self._run_pool(rows, _check)

    async def _propagate_entitlements(
        self,
        metrics: ReconciliationMetrics,
        user_id: Optional[str] = None,
    ) -> None:
        rows = await self._list("propagate", self._subscriptions.list_all(user_id=user_id))
        tiers = resolve_entitlements(rows, self._baseline_tier_id)
        logger.info(f"Propagating entitlements for {len(tiers)} users")

        report = await self._propagator.propagate_many(tiers, concurrency=self._concurrency)
        metrics.errors += len(report.failed)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _list(self, phase: str, query: Awaitable[List[T]]) -> List[T]:
        try:
            return await query
        except Exception as e:
            logger.critical(f"Reconciliation aborted: could not list rows for phase '{phase}': {e}")
            raise ReconciliationAbortedError(
                f"Could not list subscriptions for phase '{phase}'",
                phase=phase,
                original_error=e,
            )

    async def _run_pool(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[Any]],
    ) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(item: T) -> None:
            async with semaphore:
                await worker(item)

        await asyncio.gather(*(_bounded(item) for item in items))

    async def _store_metrics(self, metrics: ReconciliationMetrics) -> None:
        try:
            await self._metrics_repository.create(metrics)
        except PersistenceError as e:
            logger.error(f"Failed to store reconciliation metrics: {e.message}")


# =============================================================================
# Job Entry Point
# =============================================================================

def detect_alerts(metrics: ReconciliationMetrics) -> List[ReconciliationAlert]:
    """Threshold crossings of a single run, error rate first."""
    settings = get_settings()
    alerts = []

    if metrics.has_high_error_rate(settings.high_error_rate_threshold):
        alerts.append(ReconciliationAlert(
            alert="high_error_rate",
            rate=round(metrics.error_rate(), 4),
            reconciled_at=metrics.reconciled_at,
            metrics=metrics,
        ))

    if metrics.has_high_drift_rate(settings.high_drift_rate_threshold):
        alerts.append(ReconciliationAlert(
            alert="high_drift_rate",
            rate=round(metrics.drift_rate(), 4),
            reconciled_at=metrics.reconciled_at,
            metrics=metrics,
        ))

    return alerts


def collect_alerts(runs: Iterable[ReconciliationMetrics]) -> List[ReconciliationAlert]:
    """Threshold crossings across stored runs, newest run first."""
    ordered = sorted(
        runs,
        key=lambda run: run.reconciled_at or datetime.min.replace(tzinfo=timezone.utc),
        reverse=True,
    )
    return [alert for run in ordered for alert in detect_alerts(run)]


def evaluate_alerts(metrics: ReconciliationMetrics) -> List[str]:
    """Log alert signals for a finished run and return their names."""
    names = [alert.alert for alert in detect_alerts(metrics)]

    if "high_error_rate" in names:
        logger.error(
            f"ALERT: high reconciliation error rate {metrics.error_rate():.1%} "
            f"({metrics.errors}/{metrics.total_checked})"
        )

    if "high_drift_rate" in names:
        logger.warning(
            f"ALERT: high subscription drift rate {metrics.drift_rate():.1%} "
            f"({metrics.drift_detected}/{metrics.total_checked})"
        )

    return names


async def run_reconciliation_job(
    service: Optional[SubscriptionReconciliationService] = None,
) -> ReconciliationMetrics:
    """
    Scheduled entry point: full run followed by alert evaluation.

    Raises:
        ReconciliationAbortedError: the run could not complete
    """
    service = service or get_reconciliation_service()
    metrics = await service.reconcile_all()
    evaluate_alerts(metrics)
    return metrics


_reconciliation_service_instance: Optional[SubscriptionReconciliationService] = None


def get_reconciliation_service() -> SubscriptionReconciliationService:
    """Get or create reconciliation service singleton."""
    global _reconciliation_service_instance

    if _reconciliation_service_instance is None:
        _reconciliation_service_instance = SubscriptionReconciliationService()

    return _reconciliation_service_instance
