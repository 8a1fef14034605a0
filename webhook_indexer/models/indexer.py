"""
Indexer model - one tenant-configured normalization unit.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import (
    String, Text, Index, JSON, DateTime, ForeignKey, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class IndexerType(str, Enum):
    """Supported normalization strategies."""
    NFT_BIDS = "nft_bids"
    NFT_PRICES = "nft_prices"
    TOKEN_BORROW = "token_borrow"
    TOKEN_PRICES = "token_prices"

    @property
    def is_token_type(self) -> bool:
        return self in (IndexerType.TOKEN_BORROW, IndexerType.TOKEN_PRICES)


class IndexerStatus(str, Enum):
    """Indexer lifecycle status."""
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"


def _enum_values(enum_cls) -> list:
    return [member.value for member in enum_cls]


class Indexer(BaseModel, TimestampMixin):
    """Indexer record owned by a tenant."""

    __tablename__ = "indexers"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        comment="Owning tenant identifier"
    )

    db_credential_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("db_credentials.id", ondelete="RESTRICT"),
        comment="Target database credential"
    )

    indexer_type: Mapped[IndexerType] = mapped_column(
        SQLEnum(IndexerType, name="indexer_type", values_callable=_enum_values),
        comment="Normalization strategy"
    )

    params: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        comment="Variant-specific parameters"
    )

    target_table: Mapped[str] = mapped_column(
        String(63),
        comment="Table in the tenant database receiving rows"
    )

    webhook_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Upstream subscription identifier"
    )

    status: Mapped[IndexerStatus] = mapped_column(
        SQLEnum(IndexerStatus, name="indexer_status", values_callable=_enum_values),
        default=IndexerStatus.PENDING,
        comment="Lifecycle status"
    )

    last_indexed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last successful event"
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Error retained after initialization failure"
    )

    __table_args__ = (
        Index("idx_indexers_user_type", "user_id", "indexer_type"),
        Index("idx_indexers_webhook_id", "webhook_id"),
        Index("idx_indexers_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Indexer(id={self.id}, type={self.indexer_type.value}, "
            f"table={self.target_table}, status={self.status.value})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == IndexerStatus.ACTIVE
