"""
Pipeline services: metadata store, upstream webhook client, subscription
manager, mapping registry, tenant pools, metadata fetcher, dispatcher and
the indexer lifecycle service.
"""

from .connection_manager import TenantConnectionManager
from .dispatcher import DispatchResult, Dispatcher
from .helius_client import HeliusClient, WebhookAPI, WebhookConfig
from .indexer_service import IndexerService
from .mapping_registry import WebhookMappingRegistry
from .metadata_fetcher import TokenMetadata, TokenMetadataFetcher
from .metadata_store import IndexerStore
from .subscription_manager import AddressEntry, SubscriptionManager

__all__ = [
    "AddressEntry",
    "DispatchResult",
    "Dispatcher",
    "HeliusClient",
    "IndexerService",
    "IndexerStore",
    "SubscriptionManager",
    "TenantConnectionManager",
    "TokenMetadata",
    "TokenMetadataFetcher",
    "WebhookAPI",
    "WebhookConfig",
    "WebhookMappingRegistry",
]
