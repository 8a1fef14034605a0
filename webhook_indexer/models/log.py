"""
Append-only indexing log entries.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import (
    String, Integer, Text, Index, JSON, DateTime, ForeignKey, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel


class LogEventType:
    """Event type values written by the service."""
    INITIALIZATION = "initialization"
    WEBHOOK_CREATION = "webhook_creation"
    SUCCESS = "success"
    ERROR = "error"
    TOKEN_DATA = "token_data"
    STATUS_CHANGE = "status_change"


class IndexingLog(BaseModel):
    """Structured log entry associated with an indexer."""

    __tablename__ = "indexing_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    indexer_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("indexers.id", ondelete="CASCADE")
    )

    event_type: Mapped[str] = mapped_column(String(50))

    message: Mapped[str] = mapped_column(Text)

    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    __table_args__ = (
        Index("idx_indexing_logs_indexer_created", "indexer_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<IndexingLog(id={self.id}, indexer={self.indexer_id}, type={self.event_type})>"
