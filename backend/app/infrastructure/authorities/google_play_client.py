"""
Google Play Developer API Client

Looks up subscription and one-time product purchases by purchase token.
Authentication uses a service-account signed JWT (RS256) exchanged for a
short-lived OAuth2 bearer token.

API Docs: https://developers.google.com/android-publisher/api-ref/rest/v3/purchases
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx
import jwt

from app.config.settings import get_settings
from app.domain.subscription import ValidationEnvironment
from app.infrastructure.exceptions import (
    AuthorityNotFoundError,
    ConfigurationError,
    RateLimitError,
    TransientAuthorityError,
)


logger = logging.getLogger(__name__)

PROVIDER = "google_play"

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
ANDROID_PUBLISHER_BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME = timedelta(hours=1)
TOKEN_REFRESH_LEEWAY = timedelta(seconds=60)

# Product ids containing any of these are auto-renewing subscriptions
SUBSCRIPTION_PRODUCT_MARKERS = ("monthly", "yearly", "creator")

# purchases.subscriptions paymentState
PAYMENT_STATE_PENDING = 0
PAYMENT_STATE_RECEIVED = 1
# purchases.products purchaseState
PURCHASE_STATE_PURCHASED = 0
PURCHASE_STATE_PENDING = 2
# purchaseType 0 = license tester purchase
PURCHASE_TYPE_TEST = 0


def is_subscription_product(product_id: str) -> bool:
    """Naming convention: subscription products carry a period/tier marker."""
    product = product_id.lower()
    return any(marker in product for marker in SUBSCRIPTION_PRODUCT_MARKERS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GoogleServiceAccount:
    """Subset of a service-account JSON key needed for the JWT assertion."""
    client_email: str
    private_key: str
    token_uri: str = "https://oauth2.googleapis.com/token"

    @classmethod
    def from_json(cls, raw: str) -> "GoogleServiceAccount":
        try:
            data = json.loads(raw)
            return cls(
                client_email=data["client_email"],
                private_key=data["private_key"],
                token_uri=data.get("token_uri") or get_settings().google_token_url,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ConfigurationError(
                "GOOGLE_SERVICE_ACCOUNT_KEY is not a valid service account key",
                missing_keys=["GOOGLE_SERVICE_ACCOUNT_KEY"],
                original_error=e,
            )


@dataclass(frozen=True)
class GoogleAccessToken:
    """Short-lived bearer credential returned by the OAuth2 token endpoint."""
    token: str
    expires_at: datetime

    def is_usable(self, now: datetime) -> bool:
        return now + TOKEN_REFRESH_LEEWAY < self.expires_at


@dataclass
class GooglePurchaseVerification:
    """Normalized purchase lookup outcome."""
    success: bool
    is_subscription: bool
    environment: ValidationEnvironment
    transaction_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    payment_state: Optional[int] = None
    purchase_state: Optional[int] = None
    error: Optional[str] = None
    conclusive: bool = True

    def to_response(self) -> Dict[str, Any]:
        """JSON-safe payload stored in the validation ledger."""
        return {
            "success": self.success,
            "is_subscription": self.is_subscription,
            "environment": self.environment.value,
            "transaction_id": self.transaction_id,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "payment_state": self.payment_state,
            "purchase_state": self.purchase_state,
            "error": self.error,
        }


class GooglePlayClient:
    """
    Client for the Android Publisher purchases API.

    The bearer token is held on the instance as a ``GoogleAccessToken`` and
    refreshed on demand when it is missing or about to expire.
    """

    def __init__(
        self,
        service_account: Optional[GoogleServiceAccount] = None,
        package_name: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = _now,
    ):
        settings = get_settings()
        if service_account is None and settings.google_service_account_key:
            service_account = GoogleServiceAccount.from_json(settings.google_service_account_key)

        self._service_account = service_account
        self._package_name = package_name or settings.google_play_package_name
        self._timeout = timeout or settings.authority_timeout_seconds
        self._http_client = http_client
        self._clock = clock
        self._access_token: Optional[GoogleAccessToken] = None

        if self._service_account is None:
            logger.warning("GOOGLE_SERVICE_ACCOUNT_KEY not configured")

    # =========================================================================
    # Authentication
    # =========================================================================

    def build_assertion(self, now: datetime) -> str:
        """Sign the JWT-bearer assertion with the service account key."""
        issued_at = int(now.timestamp())
        payload = {
            "iss": self._service_account.client_email,
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": self._service_account.token_uri,
            "iat": issued_at,
            "exp": issued_at + int(ASSERTION_LIFETIME.total_seconds()),
        }
        return jwt.encode(payload, self._service_account.private_key, algorithm="RS256")

    async def get_access_token(self) -> GoogleAccessToken:
        """Return the cached bearer token, exchanging a new assertion if needed."""
        if self._service_account is None:
            raise ConfigurationError(
                "Google service account key not configured",
                missing_keys=["GOOGLE_SERVICE_ACCOUNT_KEY"],
            )

        now = self._clock()
        if self._access_token is not None and self._access_token.is_usable(now):
            return self._access_token

        response = await self._request(
            "POST",
            self._service_account.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self.build_assertion(now)},
        )
        if response.status_code != 200:
            raise TransientAuthorityError(
                f"Google token exchange failed with HTTP {response.status_code}",
                provider=PROVIDER,
                status_code=response.status_code,
            )

        body = response.json()
        self._access_token = GoogleAccessToken(
            token=body["access_token"],
            expires_at=now + timedelta(seconds=int(body.get("expires_in", 3600))),
        )
        logger.debug("Refreshed Google Play access token")
        return self._access_token

    def invalidate_token(self) -> None:
        self._access_token = None

    # =========================================================================
    # Purchases
    # =========================================================================

    def purchase_url(self, product_id: str, purchase_token: str) -> str:
        kind = "subscriptions" if is_subscription_product(product_id) else "products"
        return (
            f"{ANDROID_PUBLISHER_BASE_URL}/applications/{self._package_name}"
            f"/purchases/{kind}/{quote(product_id, safe='')}/tokens/{quote(purchase_token, safe='')}"
        )

    async def verify(self, product_id: str, purchase_token: str) -> GooglePurchaseVerification:
        """
        Look up a purchase token.

        Raises:
            AuthorityNotFoundError: token unknown or no longer valid (404/410)
            RateLimitError: HTTP 429
            TransientAuthorityError: 401, 5xx, network failures
        """
        token = await self.get_access_token()
        response = await self._request(
            "GET",
            self.purchase_url(product_id, purchase_token),
            headers={"Authorization": f"Bearer {token.token}"},
        )

        status = response.status_code
        if status in (404, 410):
            raise AuthorityNotFoundError(
                f"Google Play purchase not found (HTTP {status})",
                provider=PROVIDER,
                status_code=status,
            )
        if status == 429:
            raise RateLimitError(
                "Google Play rate limit hit", provider=PROVIDER, status_code=status
            )
        if status == 401:
            self.invalidate_token()
        if status != 200:
            raise TransientAuthorityError(
                f"Google Play lookup failed with HTTP {status}",
                provider=PROVIDER,
                status_code=status,
            )

        return self._parse_purchase(product_id, response.json())

    def _parse_purchase(self, product_id: str, data: Dict[str, Any]) -> GooglePurchaseVerification:
        environment = (
            ValidationEnvironment.SANDBOX
            if data.get("purchaseType") == PURCHASE_TYPE_TEST
            else ValidationEnvironment.PRODUCTION
        )

        if is_subscription_product(product_id):
            payment_state = data.get("paymentState")
            success = payment_state == PAYMENT_STATE_RECEIVED
            expiry_ms = data.get("expiryTimeMillis")
            return GooglePurchaseVerification(
                success=success,
                is_subscription=True,
                environment=environment,
                transaction_id=data.get("orderId"),
                expiry_date=(
                    datetime.fromtimestamp(int(expiry_ms) / 1000, tz=timezone.utc)
                    if expiry_ms else None
                ),
                payment_state=payment_state,
                error=None if success else f"Subscription payment not received (paymentState={payment_state})",
                conclusive=payment_state != PAYMENT_STATE_PENDING,
            )

        purchase_state = data.get("purchaseState")
        success = purchase_state == PURCHASE_STATE_PURCHASED
        return GooglePurchaseVerification(
            success=success,
            is_subscription=False,
            environment=environment,
            transaction_id=data.get("orderId"),
            purchase_state=purchase_state,
            error=None if success else f"Product not purchased (purchaseState={purchase_state})",
            conclusive=purchase_state != PURCHASE_STATE_PENDING,
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, timeout=self._timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientAuthorityError(
                "Google Play request timed out", provider=PROVIDER, original_error=e
            )
        except httpx.TransportError as e:
            raise TransientAuthorityError(
                f"Google Play unreachable: {e}", provider=PROVIDER, original_error=e
            )
