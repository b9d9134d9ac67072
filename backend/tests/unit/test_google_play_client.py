"""
Unit tests for the Google Play purchases client.

Covers the service-account token lifecycle and purchase state mapping.
"""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.domain.subscription import ValidationEnvironment
from app.infrastructure.authorities.google_play_client import (
    ANDROID_PUBLISHER_SCOPE,
    GoogleAccessToken,
    GooglePlayClient,
    GoogleServiceAccount,
    is_subscription_product,
)
from app.infrastructure.exceptions import (
    AuthorityNotFoundError,
    ConfigurationError,
    RateLimitError,
    TransientAuthorityError,
)


TOKEN_URI = "https://oauth2.googleapis.com/token"
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def service_account(rsa_key):
    pem = rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return GoogleServiceAccount(
        client_email="billing@cookcam.iam.gserviceaccount.com",
        private_key=pem,
        token_uri=TOKEN_URI,
    )


class _Store:
    """Fake Google endpoints: token exchange plus a queue of purchase responses."""

    def __init__(self, purchase_responses):
        self.purchase_responses = list(purchase_responses)
        self.token_requests = []
        self.purchase_requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URI:
            self.token_requests.append(parse_qs(request.content.decode()))
            return httpx.Response(
                200,
                json={"access_token": f"token-{len(self.token_requests)}", "expires_in": 3600},
            )
        self.purchase_requests.append(request)
        return self.purchase_responses.pop(0)


def _client(service_account, store, clock=lambda: NOW):
    return GooglePlayClient(
        service_account=service_account,
        package_name="com.cookcam.app",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(store.handler)),
        clock=clock,
    )


class TestProductKinds:

    @pytest.mark.parametrize("product_id, expected", [
        ("cookcam_monthly", True),
        ("cookcam_yearly", True),
        ("cookcam_creator_tier", True),
        ("recipe_pack_1", False),
    ])
    def test_is_subscription_product(self, product_id, expected):
        assert is_subscription_product(product_id) is expected


class TestServiceAccount:

    def test_from_json(self):
        raw = json.dumps({"client_email": "a@b.iam", "private_key": "pem", "token_uri": TOKEN_URI})

        account = GoogleServiceAccount.from_json(raw)

        assert account.client_email == "a@b.iam"
        assert account.token_uri == TOKEN_URI

    def test_from_json_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            GoogleServiceAccount.from_json("{not json")

    def test_access_token_usability_window(self):
        token = GoogleAccessToken(token="t", expires_at=NOW + timedelta(minutes=5))

        assert token.is_usable(NOW) is True
        assert token.is_usable(NOW + timedelta(minutes=4, seconds=30)) is False


class TestAuthentication:

    def test_assertion_claims(self, service_account, rsa_key):
        client = _client(service_account, _Store([]))

        assertion = client.build_assertion(NOW)
        claims = jwt.decode(
            assertion,
            rsa_key.public_key(),
            algorithms=["RS256"],
            audience=TOKEN_URI,
            options={"verify_exp": False, "verify_iat": False},
        )

        assert claims["iss"] == service_account.client_email
        assert claims["scope"] == ANDROID_PUBLISHER_SCOPE
        assert claims["exp"] - claims["iat"] == 3600

    @pytest.mark.asyncio
    async def test_token_is_cached_until_expiry(self, service_account):
        store = _Store([])
        current = {"now": NOW}
        client = _client(service_account, store, clock=lambda: current["now"])

        first = await client.get_access_token()
        second = await client.get_access_token()
        current["now"] = NOW + timedelta(minutes=59, seconds=30)
        third = await client.get_access_token()

        assert first is second
        assert third.token == "token-2"
        assert len(store.token_requests) == 2
        assert store.token_requests[0]["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]

    @pytest.mark.asyncio
    async def test_missing_service_account(self):
        client = GooglePlayClient(service_account=None, package_name="com.cookcam.app")

        with pytest.raises(ConfigurationError):
            await client.get_access_token()


class TestVerify:

    @pytest.mark.asyncio
    async def test_paid_subscription(self, service_account):
        store = _Store([httpx.Response(200, json={
            "orderId": "GPA.1234-5678",
            "paymentState": 1,
            "expiryTimeMillis": "1893456000000",
        })])

        result = await _client(service_account, store).verify("cookcam_monthly", "token/abc")

        assert result.success is True
        assert result.is_subscription is True
        assert result.transaction_id == "GPA.1234-5678"
        assert result.expiry_date == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert result.environment == ValidationEnvironment.PRODUCTION
        request = store.purchase_requests[0]
        assert "/purchases/subscriptions/cookcam_monthly/tokens/token%2Fabc" in str(request.url)
        assert request.headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_unpaid_subscription(self, service_account):
        store = _Store([httpx.Response(200, json={"orderId": "GPA.1", "paymentState": 3})])

        result = await _client(service_account, store).verify("cookcam_monthly", "tok")

        assert result.success is False
        assert result.conclusive is True
        assert "paymentState=3" in result.error

    @pytest.mark.asyncio
    async def test_pending_payment_is_not_conclusive(self, service_account):
        store = _Store([httpx.Response(200, json={"orderId": "GPA.1", "paymentState": 0})])

        result = await _client(service_account, store).verify("cookcam_yearly", "tok")

        assert result.success is False
        assert result.conclusive is False

    @pytest.mark.asyncio
    async def test_one_time_product_and_test_purchase(self, service_account):
        store = _Store([httpx.Response(200, json={
            "orderId": "GPA.9", "purchaseState": 0, "purchaseType": 0,
        })])

        result = await _client(service_account, store).verify("recipe_pack_1", "tok")

        assert result.success is True
        assert result.is_subscription is False
        assert result.environment == ValidationEnvironment.SANDBOX
        assert "/purchases/products/" in str(store.purchase_requests[0].url)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410])
    async def test_gone_tokens_are_permanent(self, service_account, status):
        store = _Store([httpx.Response(status)])

        with pytest.raises(AuthorityNotFoundError):
            await _client(service_account, store).verify("cookcam_monthly", "tok")

    @pytest.mark.asyncio
    async def test_rate_limited(self, service_account):
        store = _Store([httpx.Response(429)])

        with pytest.raises(RateLimitError):
            await _client(service_account, store).verify("cookcam_monthly", "tok")

    @pytest.mark.asyncio
    async def test_unauthorized_drops_cached_token(self, service_account):
        store = _Store([
            httpx.Response(401),
            httpx.Response(200, json={"orderId": "GPA.2", "paymentState": 1}),
        ])
        client = _client(service_account, store)

        with pytest.raises(TransientAuthorityError):
            await client.verify("cookcam_monthly", "tok")
        result = await client.verify("cookcam_monthly", "tok")

        assert result.success is True
        assert len(store.token_requests) == 2

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, service_account):
        store = _Store([httpx.Response(500)])

        with pytest.raises(TransientAuthorityError) as exc_info:
            await _client(service_account, store).verify("cookcam_monthly", "tok")

        assert not isinstance(exc_info.value, RateLimitError)
