"""
Stripe Card Subscription Client

Read-only view of card subscriptions held by Stripe, mapped onto the local
subscription vocabulary for drift reconciliation.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from stripe import StripeError

from app.config.settings import get_settings
from app.domain.subscription import RemoteSubscriptionState, SubscriptionStatus
from app.infrastructure.exceptions import (
    AuthorityNotFoundError,
    ConfigurationError,
    PermanentAuthorityError,
    RateLimitError,
    TransientAuthorityError,
)


logger = logging.getLogger(__name__)

PROVIDER = "stripe"

# Stripe status -> local status
CARD_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "unpaid": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def map_card_status(remote_status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status; unknown values are treated as cancelled."""
    mapped = CARD_STATUS_MAP.get(remote_status or "")
    if mapped is None:
        logger.warning(f"Unknown Stripe subscription status '{remote_status}', treating as cancelled")
        return SubscriptionStatus.CANCELLED
    return mapped


def _period_end(subscription: Any) -> Optional[datetime]:
    # Newer API versions carry the period on subscription items
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeCardClient:
    """
    Stripe card authority.

    The stripe SDK is synchronous, so calls run in a worker thread to keep
    the reconciliation pool non-blocking.
    """

    def __init__(self, api_key: Optional[str] = None, api_version: Optional[str] = None):
        settings = get_settings()
        self._api_key = api_key or settings.stripe_secret_key
        self._api_version = api_version or settings.stripe_api_version

        if not self._api_key:
            logger.warning("STRIPE_SECRET_KEY not configured")

    def _retrieve(self, subscription_id: str) -> Any:
        return stripe.Subscription.retrieve(
            subscription_id,
            api_key=self._api_key,
            stripe_version=self._api_version,
        )

    async def retrieve_subscription(self, subscription_id: str) -> RemoteSubscriptionState:
        """
        Fetch one subscription and map it onto local status.

        Raises:
            AuthorityNotFoundError: Stripe has no such subscription
            RateLimitError: Stripe rate limit
            TransientAuthorityError: network or Stripe-side failure
            PermanentAuthorityError: any other request error
        """
        if not self._api_key:
            raise ConfigurationError(
                "Stripe secret key not configured", missing_keys=["STRIPE_SECRET_KEY"]
            )

        try:
            subscription = await asyncio.to_thread(self._retrieve, subscription_id)
        except stripe.RateLimitError as e:
            raise RateLimitError(
                "Stripe rate limit hit", provider=PROVIDER, status_code=429, original_error=e
            )
        except stripe.InvalidRequestError as e:
            if e.http_status == 404 or e.code == "resource_missing":
                raise AuthorityNotFoundError(
                    f"Stripe subscription {subscription_id} not found",
                    provider=PROVIDER,
                    status_code=404,
                    original_error=e,
                )
            raise PermanentAuthorityError(
                f"Stripe rejected subscription lookup: {e.user_message or e}",
                provider=PROVIDER,
                status_code=e.http_status,
                original_error=e,
            )
        except stripe.APIConnectionError as e:
            raise TransientAuthorityError(
                f"Stripe unreachable: {e}", provider=PROVIDER, original_error=e
            )
        except StripeError as e:
            raise TransientAuthorityError(
                f"Stripe error: {e.user_message or e}",
                provider=PROVIDER,
                status_code=e.http_status,
                original_error=e,
            )

        raw_status = subscription.get("status")
        return RemoteSubscriptionState(
            status=map_card_status(raw_status),
            current_period_end=_period_end(subscription),
            raw_status=raw_status,
        )


_stripe_client_instance: Optional[StripeCardClient] = None


def get_stripe_client() -> StripeCardClient:
    """Get or create Stripe client singleton."""
    global _stripe_client_instance

    if _stripe_client_instance is None:
        _stripe_client_instance = StripeCardClient()

    return _stripe_client_instance
