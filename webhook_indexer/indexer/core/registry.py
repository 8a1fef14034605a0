"""
Indexer type registry.

Maps a stored type tag to its variant class and caches constructed
instances by indexer id so one instance serves every event for an indexer.
"""

import asyncio
from typing import Any, Dict, Optional, Type

import structlog

from webhook_indexer.core.exceptions import UnknownIndexerTypeError
from webhook_indexer.models.indexer import IndexerType

from .base import BaseIndexer


logger = structlog.get_logger(__name__)


class IndexerRegistry:
    """Factory and instance cache for indexer variants."""

    def __init__(self, variants: Optional[Dict[IndexerType, Type[BaseIndexer]]] = None):
        self._variants: Dict[IndexerType, Type[BaseIndexer]] = dict(variants or {})
        self._instances: Dict[str, BaseIndexer] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="indexer_registry")

    def register(self, variant: Type[BaseIndexer]) -> None:
        self._variants[variant.indexer_type] = variant

    @property
    def supported_types(self) -> list:
        return [t.value for t in self._variants]

    def resolve_type(self, indexer_type: Any) -> IndexerType:
        """
        Normalize a stored type tag.

        Raises:
            UnknownIndexerTypeError: If the tag has no registered variant
        """
        try:
            tag = indexer_type if isinstance(indexer_type, IndexerType) else IndexerType(indexer_type)
        except ValueError:
            raise UnknownIndexerTypeError(str(indexer_type))
        if tag not in self._variants:
            raise UnknownIndexerTypeError(tag.value)
        return tag

    def create(self, indexer_id: str, indexer_type: Any, params: Optional[Dict[str, Any]]) -> BaseIndexer:
        """
        Construct a fresh, uncached variant instance.

        Raises:
            UnknownIndexerTypeError: Unknown type tag
            InvalidIndexerParamsError: Parameters fail the variant's schema
        """
        tag = self.resolve_type(indexer_type)
        return self._variants[tag](indexer_id, params)

    async def get_or_create(
        self,
        indexer_id: str,
        indexer_type: Any,
        params: Optional[Dict[str, Any]]
    ) -> BaseIndexer:
        """Return the cached instance for an indexer, constructing it once."""
        async with self._lock:
            instance = self._instances.get(indexer_id)
            if instance is None:
                instance = self.create(indexer_id, indexer_type, params)
                self._instances[indexer_id] = instance
                self.logger.debug("Indexer instance created", indexer_id=indexer_id, indexer_type=instance.indexer_type.value)
            return instance

    async def evict(self, indexer_id: str) -> bool:
        async with self._lock:
            removed = self._instances.pop(indexer_id, None)
        if removed is not None:
            self.logger.debug("Indexer instance evicted", indexer_id=indexer_id)
        return removed is not None

    def cached_ids(self) -> list:
        return list(self._instances)
