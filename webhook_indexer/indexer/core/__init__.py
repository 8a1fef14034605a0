"""
Core indexer components.
"""

from .types import ItemOutcome, ItemResult, ProcessingStats, WebhookPayload, WebhookTransaction
from .base import BaseIndexer
from .enrichment import MetadataAwareIndexer
from .registry import IndexerRegistry

__all__ = [
    "ItemOutcome",
    "ItemResult",
    "ProcessingStats",
    "WebhookPayload",
    "WebhookTransaction",
    "BaseIndexer",
    "MetadataAwareIndexer",
    "IndexerRegistry",
]
