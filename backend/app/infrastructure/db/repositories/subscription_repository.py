"""
Subscription Repository

Data access layer for the local subscription system of record.
Follows Repository pattern for Clean Architecture.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from uuid import uuid4, UUID

from sqlmodel import select

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.exceptions import NotFoundError
from app.domain.subscription import (
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
    ENTITLED_STATUSES,
)


logger = logging.getLogger(__name__)


def _as_uuid(value) -> UUID:
    return UUID(value) if isinstance(value, str) else value


class SubscriptionRepository:
    """
    Repository for subscription data access.

    Every method opens its own session so callers running rows
    concurrently never share a session.
    """

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def list_by_status(
        self,
        statuses: Iterable[SubscriptionStatus],
        providers: Optional[Iterable[SubscriptionProvider]] = None,
        user_id: Optional[str] = None,
    ) -> List[Subscription]:
        """
        List subscriptions filtered by status and optionally provider/user.

        Args:
            statuses: Statuses to include
            providers: Providers to include (all when None)
            user_id: Restrict to one user (all users when None)

        Returns:
            Subscription domain models
        """
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.status.in_([s.value for s in statuses])
            )
            if providers is not None:
                statement = statement.where(
                    SubscriptionModel.provider.in_([p.value for p in providers])
                )
            if user_id is not None:
                statement = statement.where(SubscriptionModel.user_id == _as_uuid(user_id))

            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def list_overdue(self, now: datetime) -> List[Subscription]:
        """
        List entitled subscriptions whose period already ended.

        Args:
            now: Reference time (UTC)

        Returns:
            Active/trialing subscriptions with current_period_end < now
        """
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.status.in_([s.value for s in ENTITLED_STATUSES]),
                SubscriptionModel.current_period_end < now,
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def list_all(self, user_id: Optional[str] = None) -> List[Subscription]:
        """List every subscription row, optionally for a single user."""
        async with get_session_context() as session:
            statement = select(SubscriptionModel)
            if user_id is not None:
                statement = statement.where(SubscriptionModel.user_id == _as_uuid(user_id))
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def get_for_user_and_provider(
        self,
        user_id: str,
        provider: SubscriptionProvider,
    ) -> Optional[Subscription]:
        """Most recently updated subscription a user holds with a provider."""
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(
                    SubscriptionModel.user_id == _as_uuid(user_id),
                    SubscriptionModel.provider == provider.value,
                )
                .order_by(SubscriptionModel.updated_at.desc())
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def update_state(
        self,
        subscription_id: str,
        status: Optional[SubscriptionStatus] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Overwrite status and/or period end of one subscription.

        Args:
            subscription_id: Local subscription ID
            status: New status (unchanged when None)
            current_period_end: New period end (unchanged when None)

        Returns:
            Updated subscription

        Raises:
            NotFoundError: if the row no longer exists
        """
        async with get_session_context() as session:
            model = await session.get(SubscriptionModel, _as_uuid(subscription_id))
            if not model:
                raise NotFoundError(
                    f"Subscription {subscription_id} not found",
                    operation="update_state",
                    table=SubscriptionModel.__tablename__,
                )

            if status is not None:
                model.status = status.value
            if current_period_end is not None:
                model.current_period_end = current_period_end
            model.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return self._to_domain(model)

    async def activate_from_purchase(
        self,
        user_id: str,
        provider: SubscriptionProvider,
        provider_subscription_id: Optional[str],
        tier_id: int,
        current_period_end: datetime,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        """
        Create or re-activate the user's subscription for a provider.

        Called after a purchase proof was validated by its authority;
        ``status`` is expired when the authority expiry already passed.
        """
        existing = await self.get_for_user_and_provider(user_id, provider)
        now = datetime.now(timezone.utc)

        async with get_session_context() as session:
            if existing:
                model = await session.get(SubscriptionModel, _as_uuid(existing.id))
            else:
                model = SubscriptionModel(
                    id=uuid4(),
                    user_id=_as_uuid(user_id),
                    provider=provider.value,
                    current_period_start=now,
                    created_at=now,
                )
                session.add(model)

            model.provider_subscription_id = provider_subscription_id
            model.status = status.value
            model.tier_id = tier_id
            model.current_period_end = current_period_end
            model.updated_at = now

            await session.commit()
            await session.refresh(model)

            logger.info(
                f"Activated {provider.value} subscription {model.id} "
                f"for user {user_id} at tier {tier_id} ({status.value})"
            )
            return self._to_domain(model)

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            user_id=str(model.user_id),
            provider=SubscriptionProvider(model.provider),
            provider_subscription_id=model.provider_subscription_id,
            status=SubscriptionStatus(model.status),
            tier_id=model.tier_id,
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_subscription_repo_instance: Optional[SubscriptionRepository] = None


def get_subscription_repository() -> SubscriptionRepository:
    """Get or create subscription repository singleton."""
    global _subscription_repo_instance

    if _subscription_repo_instance is None:
        _subscription_repo_instance = SubscriptionRepository()

    return _subscription_repo_instance
