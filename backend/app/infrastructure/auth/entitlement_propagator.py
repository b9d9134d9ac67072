"""
Entitlement Propagator

Pushes a user's resolved subscription tier into their Supabase auth
claims (``app_metadata``), so access checks reading the JWT see the same
tier as the subscription store.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from supabase import AuthError, Client, create_client

from app.config.settings import get_settings
from app.infrastructure.exceptions import ConfigurationError, EntitlementPropagationError


logger = logging.getLogger(__name__)


class ClaimsStore(ABC):
    """Writable per-user claims in the authentication layer."""

    @abstractmethod
    async def update_claims(self, user_id: str, claims: Dict[str, Any]) -> None:
        """Merge ``claims`` into the user's server-controlled metadata."""


class SupabaseClaimsStore(ClaimsStore):
    """Claims stored in Supabase ``app_metadata`` via the admin API."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            settings = get_settings()
            if not settings.supabase_service_role_key:
                raise ConfigurationError(
                    "Supabase service role key not configured",
                    missing_keys=["SUPABASE_SERVICE_ROLE_KEY"],
                )
            self._client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return self._client

    async def update_claims(self, user_id: str, claims: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(
                lambda: self.client.auth.admin.update_user_by_id(
                    user_id, {"app_metadata": claims}
                )
            )
        except (AuthError, httpx.HTTPError) as e:
            raise EntitlementPropagationError(
                f"Failed to update claims for user {user_id}: {e}",
                user_id=user_id,
                original_error=e,
            )


@dataclass
class PropagationReport:
    """Result of a bulk propagation."""
    propagated: int = 0
    failed: List[str] = field(default_factory=list)


class EntitlementPropagator:
    """Writes ``{subscription_tier, updated_at}`` claims for users."""

    def __init__(
        self,
        store: Optional[ClaimsStore] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store or SupabaseClaimsStore()
        self._clock = clock

    async def propagate(self, user_id: str, tier_id: int) -> None:
        """
        Set the user's granted tier in their auth claims.

        Raises:
            EntitlementPropagationError: the claims store rejected the write
        """
        claims = {
            "subscription_tier": tier_id,
            "updated_at": self._clock().isoformat(),
        }
        await self._store.update_claims(user_id, claims)
        logger.debug(f"Propagated tier {tier_id} to user {user_id}")

    async def propagate_many(
        self,
        tiers: Dict[str, int],
        concurrency: int = 10,
    ) -> PropagationReport:
        """Propagate many users; one user's failure never blocks the rest."""
        report = PropagationReport()
        semaphore = asyncio.Semaphore(max(concurrency, 1))

        async def _one(user_id: str, tier_id: int) -> None:
            async with semaphore:
                try:
                    await self.propagate(user_id, tier_id)
                    report.propagated += 1
                except (EntitlementPropagationError, ConfigurationError) as e:
                    logger.error(e.message)
                    report.failed.append(user_id)

        await asyncio.gather(*(_one(user_id, tier) for user_id, tier in tiers.items()))
        return report


_propagator_instance: Optional[EntitlementPropagator] = None


def get_entitlement_propagator() -> EntitlementPropagator:
    """Get or create entitlement propagator singleton."""
    global _propagator_instance

    if _propagator_instance is None:
        _propagator_instance = EntitlementPropagator()

    return _propagator_instance
