"""
In-memory mapping between upstream subscription ids and indexer ids.
"""

import asyncio
from typing import Dict, Optional

import structlog


logger = structlog.get_logger(__name__)


class WebhookMappingRegistry:
    """
    Bidirectional subscription id <-> indexer id table.

    Entries live for the lifetime of the process and are rebuilt from the
    metadata store at startup. Mutations and lookups share one lock.
    """

    def __init__(self):
        self._by_subscription: Dict[str, str] = {}
        self._by_indexer: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="mapping_registry")

    async def register(self, subscription_id: str, indexer_id: str) -> None:
        """Map a subscription to an indexer, replacing any previous pairing of either side."""
        async with self._lock:
            previous_indexer = self._by_subscription.pop(subscription_id, None)
            if previous_indexer is not None:
                self._by_indexer.pop(previous_indexer, None)
            previous_subscription = self._by_indexer.pop(indexer_id, None)
            if previous_subscription is not None:
                self._by_subscription.pop(previous_subscription, None)

            self._by_subscription[subscription_id] = indexer_id
            self._by_indexer[indexer_id] = subscription_id

        self.logger.info("Webhook mapping registered", webhook_id=subscription_id, indexer_id=indexer_id)

    async def lookup(self, subscription_id: str) -> Optional[str]:
        async with self._lock:
            return self._by_subscription.get(subscription_id)

    async def lookup_subscription(self, indexer_id: str) -> Optional[str]:
        """Reverse lookup: the subscription id serving an indexer."""
        async with self._lock:
            return self._by_indexer.get(indexer_id)

    async def unregister(self, indexer_id: str) -> Optional[str]:
        """Drop an indexer's mapping and return the subscription id it had."""
        async with self._lock:
            subscription_id = self._by_indexer.pop(indexer_id, None)
            if subscription_id is not None:
                self._by_subscription.pop(subscription_id, None)

        if subscription_id is not None:
            self.logger.info("Webhook mapping removed", webhook_id=subscription_id, indexer_id=indexer_id)
        return subscription_id

    async def all_mappings(self) -> Dict[str, str]:
        async with self._lock:
            return dict(self._by_subscription)

    def __len__(self) -> int:
        return len(self._by_subscription)


# Global registry instance
_registry: Optional[WebhookMappingRegistry] = None


def get_mapping_registry() -> WebhookMappingRegistry:
    """Get or create the process-wide mapping registry."""
    global _registry
    if _registry is None:
        _registry = WebhookMappingRegistry()
    return _registry
