"""
Unit tests for the Stripe card subscription client.

stripe.Subscription.retrieve is patched; no network access.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from app.domain.subscription import SubscriptionStatus
from app.infrastructure.authorities.stripe_client import StripeCardClient, map_card_status
from app.infrastructure.exceptions import (
    AuthorityNotFoundError,
    PermanentAuthorityError,
    RateLimitError,
    TransientAuthorityError,
)


PERIOD_END = 1893456000  # 2030-01-01T00:00:00Z


@pytest.fixture
def client():
    return StripeCardClient(api_key="sk_test_123", api_version="2023-10-16")


class TestStatusMapping:

    @pytest.mark.parametrize("remote, local", [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.TRIALING),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("incomplete", SubscriptionStatus.INCOMPLETE),
        ("canceled", SubscriptionStatus.CANCELLED),
        ("unpaid", SubscriptionStatus.CANCELLED),
        ("incomplete_expired", SubscriptionStatus.EXPIRED),
    ])
    def test_known_statuses(self, remote, local):
        assert map_card_status(remote) == local

    @pytest.mark.parametrize("remote", ["paused", "something_new", None])
    def test_unknown_status_falls_back_to_cancelled(self, remote):
        assert map_card_status(remote) == SubscriptionStatus.CANCELLED


class TestRetrieveSubscription:

    @pytest.mark.asyncio
    async def test_maps_status_and_period(self, client):
        with patch("stripe.Subscription.retrieve", return_value={
            "id": "sub_123", "status": "canceled", "current_period_end": PERIOD_END,
        }) as retrieve:
            state = await client.retrieve_subscription("sub_123")

        assert state.status == SubscriptionStatus.CANCELLED
        assert state.raw_status == "canceled"
        assert state.current_period_end == datetime(2030, 1, 1, tzinfo=timezone.utc)
        retrieve.assert_called_once_with(
            "sub_123", api_key="sk_test_123", stripe_version="2023-10-16"
        )

    @pytest.mark.asyncio
    async def test_period_end_from_first_item(self, client):
        with patch("stripe.Subscription.retrieve", return_value={
            "id": "sub_123",
            "status": "active",
            "items": {"data": [{"current_period_end": PERIOD_END}]},
        }):
            state = await client.retrieve_subscription("sub_123")

        assert state.current_period_end == datetime(2030, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_missing_subscription(self, client):
        error = stripe.InvalidRequestError(
            "No such subscription: 'sub_gone'", "id", code="resource_missing", http_status=404
        )
        with patch("stripe.Subscription.retrieve", side_effect=error):
            with pytest.raises(AuthorityNotFoundError):
                await client.retrieve_subscription("sub_gone")

    @pytest.mark.asyncio
    async def test_other_invalid_request_is_permanent(self, client):
        error = stripe.InvalidRequestError("Bad id", "id", http_status=400)
        with patch("stripe.Subscription.retrieve", side_effect=error):
            with pytest.raises(PermanentAuthorityError) as exc_info:
                await client.retrieve_subscription("bad")

        assert not isinstance(exc_info.value, AuthorityNotFoundError)

    @pytest.mark.asyncio
    async def test_rate_limit(self, client):
        with patch("stripe.Subscription.retrieve", side_effect=stripe.RateLimitError("Too many", http_status=429)):
            with pytest.raises(RateLimitError):
                await client.retrieve_subscription("sub_123")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, client):
        with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(TransientAuthorityError):
                await client.retrieve_subscription("sub_123")

    @pytest.mark.asyncio
    async def test_api_error_is_transient(self, client):
        with patch("stripe.Subscription.retrieve", side_effect=stripe.APIError("boom", http_status=500)):
            with pytest.raises(TransientAuthorityError):
                await client.retrieve_subscription("sub_123")
