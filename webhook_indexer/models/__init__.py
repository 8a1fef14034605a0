"""
Database models for the metadata store.

Holds indexer records, tenant database credentials and
the append-only indexing log.
"""

from .base import Base, BaseModel, TimestampMixin
from .credential import DBCredential
from .indexer import Indexer, IndexerType, IndexerStatus
from .log import IndexingLog, LogEventType

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "DBCredential",
    "Indexer",
    "IndexerType",
    "IndexerStatus",
    "IndexingLog",
    "LogEventType",
]
