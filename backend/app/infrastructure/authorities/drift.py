"""
Drift Strategies

One strategy per authority family, keyed by subscription provider. The
reconciliation job asks a strategy for the authority's view of a row and
applies the same correction rules to whatever comes back, so adding a
provider never touches the orchestration.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from app.config.settings import get_settings
from app.domain.subscription import (
    ENTITLED_STATUSES,
    RemoteSubscriptionState,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)
from app.infrastructure.authorities.retry import RetryPolicy, with_retry
from app.infrastructure.authorities.stripe_client import StripeCardClient
from app.infrastructure.db.repositories.validation_ledger_repository import (
    ValidationLedgerRepository,
)
from app.infrastructure.exceptions import AuthorityNotFoundError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftCorrection:
    """Values to write back onto a drifted subscription row."""
    status: SubscriptionStatus
    current_period_end: Optional[datetime]


def has_drifted(
    local: Subscription,
    remote: RemoteSubscriptionState,
    tolerance: timedelta,
) -> bool:
    """True when status differs or period end differs by more than ``tolerance``."""
    if local.status != remote.status:
        return True
    if remote.current_period_end is None:
        return False
    if local.current_period_end is None:
        return True
    return abs(local.current_period_end - remote.current_period_end) > tolerance


def plan_correction(
    local: Subscription,
    remote: RemoteSubscriptionState,
    now: datetime,
) -> DriftCorrection:
    """
    Resolve the row values to write for a drifted subscription.

    An entitled status is never written together with a period end that
    has already passed; such rows are written as expired.
    """
    period_end = remote.current_period_end or local.current_period_end
    status = remote.status
    if status in ENTITLED_STATUSES and period_end is not None and period_end < now:
        status = SubscriptionStatus.EXPIRED
    return DriftCorrection(status=status, current_period_end=period_end)


class DriftStrategy(ABC):
    """Authority view of one subscription family."""

    name: str = "base"
    providers: Tuple[SubscriptionProvider, ...] = ()
    sweep_statuses: Tuple[SubscriptionStatus, ...] = ENTITLED_STATUSES
    tolerance: timedelta = timedelta(0)

    @abstractmethod
    async def resolve(
        self,
        subscription: Subscription,
        now: datetime,
    ) -> Optional[RemoteSubscriptionState]:
        """
        Ask the authority for the row's current state.

        Returns None when the row cannot be compared (and is skipped).
        Raises for lookup failures; the caller counts them as errors and
        leaves the row untouched.
        """


class CardDriftStrategy(DriftStrategy):
    """Card subscriptions checked against Stripe."""

    name = "card"
    providers = (SubscriptionProvider.CARD,)
    sweep_statuses = (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
    )

    def __init__(
        self,
        client: StripeCardClient,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._retry_policy = retry_policy
        self._sleep = sleep

    async def resolve(
        self,
        subscription: Subscription,
        now: datetime,
    ) -> Optional[RemoteSubscriptionState]:
        remote_id = subscription.provider_subscription_id
        if not remote_id:
            logger.warning(f"Card subscription {subscription.id} has no remote id, skipping")
            return None

        outcome = await with_retry(
            lambda: self._client.retrieve_subscription(remote_id),
            policy=self._retry_policy,
            sleep=self._sleep,
            label=f"stripe lookup {remote_id}",
        )
        if outcome.success:
            return outcome.value

        if isinstance(outcome.error, AuthorityNotFoundError):
            logger.info(f"Stripe subscription {remote_id} no longer exists, marking cancelled")
            return RemoteSubscriptionState(status=SubscriptionStatus.CANCELLED, raw_status="deleted")

        raise outcome.error


class IAPDriftStrategy(DriftStrategy):
    """
    App Store / Google Play subscriptions checked against the validation
    ledger's most recent valid record for their transaction id.
    """

    name = "iap"
    providers = (SubscriptionProvider.IOS, SubscriptionProvider.ANDROID)
    sweep_statuses = ENTITLED_STATUSES

    def __init__(
        self,
        ledger: ValidationLedgerRepository,
        tolerance: Optional[timedelta] = None,
    ):
        self._ledger = ledger
        if tolerance is None:
            tolerance = timedelta(seconds=get_settings().iap_drift_tolerance_seconds)
        self.tolerance = tolerance

    async def resolve(
        self,
        subscription: Subscription,
        now: datetime,
    ) -> Optional[RemoteSubscriptionState]:
        # Lapsed rows are left to the expiry phase
        if subscription.current_period_end and subscription.current_period_end < now:
            return None

        transaction_id = subscription.provider_subscription_id
        if not transaction_id:
            return None

        record = await self._ledger.latest_valid_for_transaction(transaction_id)
        if record is None or record.expiry_date is None:
            return None

        return RemoteSubscriptionState(
            status=subscription.status,
            current_period_end=record.expiry_date,
            raw_status="ledger",
        )


class DriftStrategyRegistry:
    """Provider -> strategy dispatch table."""

    def __init__(self, strategies: Iterable[DriftStrategy]):
        self._strategies = list(strategies)
        self._by_provider: Dict[SubscriptionProvider, DriftStrategy] = {}
        for strategy in self._strategies:
            for provider in strategy.providers:
                self._by_provider[provider] = strategy

    @property
    def strategies(self) -> Tuple[DriftStrategy, ...]:
        """Strategies in sweep order."""
        return tuple(self._strategies)

    def for_provider(self, provider: SubscriptionProvider) -> Optional[DriftStrategy]:
        return self._by_provider.get(provider)
