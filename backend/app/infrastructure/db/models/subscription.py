"""
Subscription Database Model

SQLModel table for the local subscription system of record.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID


class SubscriptionModel(SQLModel, table=True):
    """
    Subscription table for storing user entitlements per provider.

    Maps to the 'user_subscriptions' table in PostgreSQL. A user may own
    several rows (one per provider); rows are never deleted.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index("ix_user_subscriptions_provider_status", "provider", "status"),
        Index("ix_user_subscriptions_status_period_end", "status", "current_period_end"),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    user_id: UUID = Field(sa_column=Column(PGUUID(as_uuid=True), index=True, nullable=False))

    # Authority
    provider: str = Field(sa_column=Column(String(20), nullable=False))
    provider_subscription_id: Optional[str] = Field(default=None, index=True)

    # Entitlement
    status: str = Field(default="active", sa_column=Column(String(20), nullable=False))
    tier_id: int = Field(default=2)

    # Billing period dates
    current_period_start: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    current_period_end: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )

    # Timestamps
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
