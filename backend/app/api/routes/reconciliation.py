"""
Reconciliation API Routes

Manual triggers and monitoring for the subscription reconciliation job.
"""

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, BackgroundTasks, HTTPException, status

from app.api.dependencies import CurrentUserDep, ReconciliationServiceDep
from app.config.settings import get_settings
from app.domain.subscription import (
    ReconciliationAlertsResponse,
    ReconciliationHealthResponse,
    ReconciliationMetricsResponse,
    ReconciliationRunResponse,
    UserReconciliationResponse,
    summarize_health,
)
from app.infrastructure.db.dependencies import ReconciliationMetricsRepoDep
from app.infrastructure.exceptions import ReconciliationAbortedError
from app.infrastructure.services.reconciliation_service import (
    collect_alerts,
    run_reconciliation_job,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation")


async def _run_in_background(service, triggered_by: str) -> None:
    try:
        await run_reconciliation_job(service)
    except ReconciliationAbortedError as e:
        logger.error(f"Manual reconciliation run failed (triggered by {triggered_by}): {e.message}")


@router.post(
    "/run",
    response_model=ReconciliationRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_reconciliation(
    background_tasks: BackgroundTasks,
    user_id: CurrentUserDep,
    service: ReconciliationServiceDep,
):
    """Start a full reconciliation run without waiting for it."""
    # TODO: restrict to admins once roles exist in auth claims
    logger.info(f"Reconciliation run manually triggered by {user_id}")
    background_tasks.add_task(_run_in_background, service, user_id)

    return ReconciliationRunResponse(
        message="Reconciliation job started",
        timestamp=datetime.now(timezone.utc),
    )


@router.post("/user/{target_user_id}", response_model=UserReconciliationResponse)
async def reconcile_user(
    target_user_id: str,
    user_id: CurrentUserDep,
    service: ReconciliationServiceDep,
):
    """Reconcile the caller's own subscriptions."""
    if target_user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only reconcile your own subscriptions",
        )

    metrics = await service.reconcile_single_user(target_user_id)
    return UserReconciliationResponse(
        message="User subscriptions reconciled",
        user_id=target_user_id,
        metrics=metrics,
    )


@router.get("/metrics", response_model=ReconciliationMetricsResponse)
async def get_reconciliation_metrics(
    user_id: CurrentUserDep,
    repo: ReconciliationMetricsRepoDep,
):
    """Summaries of the last ten runs, newest first."""
    return ReconciliationMetricsResponse(metrics=await repo.list_recent(limit=10))


@router.get("/health", response_model=ReconciliationHealthResponse)
async def get_reconciliation_health(
    user_id: CurrentUserDep,
    repo: ReconciliationMetricsRepoDep,
):
    """Daily rollup of recent runs, newest day first."""
    days = get_settings().reconciliation_health_days
    since = datetime.now(timezone.utc) - timedelta(days=days)
    return ReconciliationHealthResponse(health=summarize_health(await repo.list_since(since)))


@router.get("/alerts", response_model=ReconciliationAlertsResponse)
async def get_reconciliation_alerts(
    user_id: CurrentUserDep,
    repo: ReconciliationMetricsRepoDep,
):
    """Recent runs whose error or drift rate crossed its alert threshold."""
    days = get_settings().reconciliation_alert_days
    since = datetime.now(timezone.utc) - timedelta(days=days)
    alerts = collect_alerts(await repo.list_since(since))
    return ReconciliationAlertsResponse(alerts=alerts, count=len(alerts))
