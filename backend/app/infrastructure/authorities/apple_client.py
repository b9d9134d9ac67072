"""
Apple App Store Receipt Client

Verifies receipts against Apple's verifyReceipt endpoint, handling the
production/sandbox duality.

API Docs: https://developer.apple.com/documentation/appstorereceipts/verifyreceipt
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from app.config.settings import get_settings
from app.domain.subscription import ValidationEnvironment
from app.infrastructure.exceptions import (
    PermanentAuthorityError,
    RateLimitError,
    TransientAuthorityError,
)


logger = logging.getLogger(__name__)

PROVIDER = "apple"

APPLE_STATUS_OK = 0
APPLE_STATUS_SANDBOX_RECEIPT = 21007

APPLE_STATUS_MESSAGES: Dict[int, str] = {
    21000: "The App Store could not read the JSON object you provided.",
    21002: "The data in the receipt-data property was malformed or missing.",
    21003: "The receipt could not be authenticated.",
    21004: "The shared secret you provided does not match the shared secret on file for your account.",
    21005: "The receipt server is not currently available.",
    21006: "This receipt is valid but the subscription has expired.",
    21007: "This receipt is from the sandbox environment.",
    21008: "This receipt is from the production environment.",
    21010: "This receipt could not be authorized.",
}

# Definitive answers about the receipt itself; retrying cannot change them
APPLE_PERMANENT_STATUSES = frozenset({21002, 21003, 21006, 21010})


def describe_apple_status(status: int) -> str:
    """Human-readable reason for a verifyReceipt status code."""
    return APPLE_STATUS_MESSAGES.get(status, f"Unknown status code: {status}")


@dataclass
class AppleVerification:
    """Normalized verifyReceipt outcome."""
    success: bool
    status_code: int
    environment: ValidationEnvironment
    transaction_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    product_id: Optional[str] = None
    error: Optional[str] = None
    conclusive: bool = True

    def to_response(self) -> Dict[str, Any]:
        """JSON-safe payload stored in the validation ledger."""
        return {
            "success": self.success,
            "status": self.status_code,
            "environment": self.environment.value,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "error": self.error,
        }


def _millis_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class AppleReceiptClient:
    """
    Client for Apple's receipt verification endpoint.

    ``verify`` performs exactly one HTTP call; ``validate`` adds the single
    production -> sandbox redirect and raises typed authority errors so it
    can be wrapped by the retry controller.
    """

    def __init__(
        self,
        shared_secret: Optional[str] = None,
        production_url: Optional[str] = None,
        sandbox_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self._shared_secret = shared_secret or settings.apple_shared_secret
        self._production_url = production_url or settings.apple_verify_url_production
        self._sandbox_url = sandbox_url or settings.apple_verify_url_sandbox
        self._timeout = timeout or settings.authority_timeout_seconds
        self._http_client = http_client

        if not self._shared_secret:
            logger.warning("APPLE_SHARED_SECRET not configured")

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.post(url, json=payload, timeout=self._timeout)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientAuthorityError(
                "Apple verifyReceipt timed out", provider=PROVIDER, original_error=e
            )
        except httpx.TransportError as e:
            raise TransientAuthorityError(
                f"Apple verifyReceipt unreachable: {e}", provider=PROVIDER, original_error=e
            )

    async def verify(self, receipt_data: str, use_production: bool = True) -> AppleVerification:
        """
        Call verifyReceipt once against the chosen environment.

        Returns an unsuccessful AppleVerification for non-zero statuses;
        raises only for transport/HTTP level failures.
        """
        url = self._production_url if use_production else self._sandbox_url
        environment = (
            ValidationEnvironment.PRODUCTION if use_production else ValidationEnvironment.SANDBOX
        )
        payload = {
            "receipt-data": receipt_data,
            "password": self._shared_secret,
            "exclude-old-transactions": True,
        }

        response = await self._post(url, payload)

        if response.status_code == 429:
            raise RateLimitError(
                "Apple verifyReceipt rate limited", provider=PROVIDER, status_code=429
            )
        if response.status_code >= 400:
            raise TransientAuthorityError(
                f"Apple verifyReceipt returned HTTP {response.status_code}",
                provider=PROVIDER,
                status_code=response.status_code,
            )

        try:
            body = response.json()
            status = int(body["status"])
        except (ValueError, KeyError, TypeError) as e:
            raise TransientAuthorityError(
                "Apple verifyReceipt returned an unreadable body",
                provider=PROVIDER,
                original_error=e,
            )

        if status != APPLE_STATUS_OK:
            return AppleVerification(
                success=False,
                status_code=status,
                environment=environment,
                error=describe_apple_status(status),
            )

        latest = self._latest_transaction(body)
        return AppleVerification(
            success=True,
            status_code=status,
            environment=environment,
            transaction_id=latest.get("original_transaction_id"),
            expiry_date=_millis_to_datetime(latest.get("expires_date_ms")),
            product_id=latest.get("product_id"),
        )

    async def validate(self, receipt_data: str) -> AppleVerification:
        """
        Verify a receipt, following at most one sandbox redirect.

        Raises:
            PermanentAuthorityError: structurally invalid/expired receipt
            TransientAuthorityError: anything that may succeed on retry
        """
        result = await self.verify(receipt_data, use_production=True)

        if result.status_code == APPLE_STATUS_SANDBOX_RECEIPT:
            logger.debug("Receipt is from the sandbox, re-verifying against sandbox URL")
            result = await self.verify(receipt_data, use_production=False)

        if result.success:
            return result

        if result.status_code in APPLE_PERMANENT_STATUSES:
            raise PermanentAuthorityError(
                result.error, provider=PROVIDER, status_code=result.status_code
            )
        raise TransientAuthorityError(
            result.error, provider=PROVIDER, status_code=result.status_code
        )

    @staticmethod
    def _latest_transaction(body: Dict[str, Any]) -> Dict[str, Any]:
        """Pick the transaction with the furthest expiry from the receipt."""
        latest_info = body.get("latest_receipt_info") or []
        if latest_info:
            return max(latest_info, key=lambda tx: int(tx.get("expires_date_ms") or 0))

        in_app = (body.get("receipt") or {}).get("in_app") or []
        return in_app[0] if in_app else {}
