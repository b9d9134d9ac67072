"""
IAP Validation History Model

Append-only ledger of every receipt/purchase-token validation attempt.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Column, DateTime, Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlmodel import Field, SQLModel


class ValidationRecordModel(SQLModel, table=True):
    """
    Validation ledger row.

    Only conclusive rows take part in deduplication: the partial unique
    index allows at most one per (receipt_hash, platform), while
    inconclusive attempts (authority unreachable) are kept for audit only.
    """

    __tablename__ = "iap_validation_history"
    __table_args__ = (
        Index(
            "uq_iap_validation_receipt_platform",
            "receipt_hash",
            "platform",
            unique=True,
            postgresql_where=text("is_conclusive"),
        ),
        Index("ix_iap_validation_transaction_status", "transaction_id", "status"),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    user_id: UUID = Field(sa_column=Column(PGUUID(as_uuid=True), index=True, nullable=False))

    platform: str = Field(sa_column=Column(String(20), nullable=False))
    product_id: str = Field(sa_column=Column(String(255), nullable=False))
    receipt_hash: str = Field(sa_column=Column(String(64), nullable=False))
    transaction_id: Optional[str] = Field(default=None, max_length=255)

    status: str = Field(sa_column=Column(String(20), nullable=False))
    environment: str = Field(default="production", sa_column=Column(String(20), nullable=False))
    is_conclusive: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("true")),
    )

    raw_receipt: str = Field(sa_column=Column(Text, nullable=False))
    validation_response: Optional[dict] = Field(
        default=None,
        sa_column=Column(JSONB, default={}),
        description="Authority payload (normalized) captured for audit",
    )
    validation_duration_ms: int = Field(default=0)

    validated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
