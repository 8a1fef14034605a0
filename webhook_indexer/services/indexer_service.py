"""
Indexer lifecycle service.

Creates indexers (target table plus dedicated upstream subscription),
moves them between statuses, tears them down and serves their logs.
"""

from typing import Any, Dict, List, Optional

import structlog

from webhook_indexer.core.config import settings
from webhook_indexer.core.exceptions import (
    ConfigurationError,
    CredentialNotFoundError,
    IndexerNotFoundError,
    InvalidStatusTransitionError,
    UpstreamWebhookError,
    WebhookIndexerException,
)
from webhook_indexer.indexer.core import IndexerRegistry
from webhook_indexer.indexer.core.base import STORAGE_ERRORS
from webhook_indexer.indexer.core.enrichment import MetadataSource
from webhook_indexer.models import Indexer, IndexerStatus, LogEventType
from webhook_indexer.utils.validation import validate_table_name

from .connection_manager import TenantConnectionManager
from .helius_client import WebhookAPI, WebhookConfig, build_indexer_callback_url
from .mapping_registry import WebhookMappingRegistry
from .metadata_store import IndexerStore
from .subscription_manager import SubscriptionManager


logger = structlog.get_logger(__name__)

# Log entries that get recent target rows attached when read back
ROW_ENRICHED_EVENTS = (LogEventType.SUCCESS, LogEventType.TOKEN_DATA)

# Allowed manual transitions: requested status -> required current status
MANUAL_TRANSITIONS = {
    IndexerStatus.PAUSED: IndexerStatus.ACTIVE,
    IndexerStatus.ACTIVE: IndexerStatus.PAUSED,
}


class IndexerService:
    """Tenant-facing indexer operations."""

    def __init__(
        self,
        store: IndexerStore,
        registry: IndexerRegistry,
        mappings: WebhookMappingRegistry,
        connections: TenantConnectionManager,
        webhook_api: Optional[WebhookAPI] = None,
        subscriptions: Optional[SubscriptionManager] = None,
        metadata_fetcher: Optional[MetadataSource] = None,
        callback_base_url: Optional[str] = None
    ):
        self.store = store
        self.registry = registry
        self.mappings = mappings
        self.connections = connections
        self.webhook_api = webhook_api
        self.subscriptions = subscriptions
        self.metadata_fetcher = metadata_fetcher
        self.callback_base_url = (
            callback_base_url if callback_base_url is not None else settings.helius_webhook_base_url
        )
        self.logger = logger.bind(service="indexer_service")

    # Creation

    async def create_indexer(
        self,
        user_id: str,
        db_credential_id: str,
        indexer_type: Any,
        params: Dict[str, Any],
        target_table: str
    ) -> Indexer:
        """
        Create, initialize and provision an indexer.

        Validation failures leave no record behind. Failures after the record
        exists mark it ``failed`` with the error text and are re-raised.

        Raises:
            InvalidTableNameError: Bad target table name
            UnknownIndexerTypeError: Unsupported type tag
            InvalidIndexerParamsError: Parameters fail the variant's schema
            CredentialNotFoundError: Credential missing or owned by another tenant
        """
        validate_table_name(target_table)
        tag = self.registry.resolve_type(indexer_type)
        # construct once up front so bad parameters fail before anything is stored
        self.registry.create("validation", tag, params)

        credential = await self.store.get_credential(db_credential_id)
        if credential.user_id != user_id:
            raise CredentialNotFoundError(db_credential_id)

        record = await self.store.create_indexer(user_id, db_credential_id, tag, params, target_table)
        instance = await self.registry.get_or_create(record.id, tag, params)

        try:
            engine = await self.connections.pool_for(credential)
            fetcher = self.metadata_fetcher if tag.is_token_type else None
            await instance.initialize(engine, target_table, fetcher)
        except (WebhookIndexerException,) + STORAGE_ERRORS as e:
            await self._fail(record.id, f"Failed to initialize indexer: {self._reason(e)}")
            raise

        await self._log(
            record.id,
            LogEventType.INITIALIZATION,
            "Indexer initialized successfully",
            {"target_table": target_table},
        )

        addresses = instance.declared_addresses()
        if self.webhook_api is not None and addresses:
            try:
                await self._provision(record.id, addresses)
            except WebhookIndexerException as e:
                await self._fail(record.id, f"Failed to create webhook: {e.message}")
                raise
        elif self.webhook_api is None:
            self.logger.warning("No webhook API configured, indexer will not receive events", indexer_id=record.id)

        await self.store.update_status(record.id, IndexerStatus.ACTIVE)
        self.logger.info(
            "Indexer activated",
            indexer_id=record.id,
            indexer_type=tag.value,
            table=target_table,
        )
        return await self.store.get_indexer(record.id)

    async def _provision(self, indexer_id: str, addresses: List[str]) -> str:
        """Create a dedicated upstream subscription for one indexer."""
        if not self.callback_base_url:
            raise ConfigurationError("webhook base URL is not configured")

        self.logger.info("Creating dedicated webhook", indexer_id=indexer_id, addresses=addresses)
        config = WebhookConfig(
            webhook_url=build_indexer_callback_url(indexer_id, base_url=self.callback_base_url),
            account_addresses=addresses,
            webhook_type=settings.helius_webhook_type,
        )
        webhook_id = await self.webhook_api.create_webhook(config)

        await self.mappings.register(webhook_id, indexer_id)
        await self.store.update_webhook_id(indexer_id, webhook_id)
        await self._log(
            indexer_id,
            LogEventType.WEBHOOK_CREATION,
            "Created dedicated webhook for indexer",
            {"webhook_id": webhook_id, "indexer_id": indexer_id, "addresses": addresses},
        )
        return webhook_id

    async def _fail(self, indexer_id: str, message: str) -> None:
        self.logger.error("Indexer failed", indexer_id=indexer_id, error=message)
        try:
            await self.store.update_status(indexer_id, IndexerStatus.FAILED, error_message=message)
        except STORAGE_ERRORS as e:
            self.logger.error("Failed to update indexer status", indexer_id=indexer_id, error=str(e))
        await self._log(indexer_id, LogEventType.ERROR, message, {"error": message})

    # Status

    async def pause_indexer(self, user_id: str, indexer_id: str) -> Indexer:
        return await self._transition(user_id, indexer_id, IndexerStatus.PAUSED)

    async def resume_indexer(self, user_id: str, indexer_id: str) -> Indexer:
        return await self._transition(user_id, indexer_id, IndexerStatus.ACTIVE)

    async def _transition(self, user_id: str, indexer_id: str, requested: IndexerStatus) -> Indexer:
        """
        Raises:
            InvalidStatusTransitionError: If the current status does not allow it
        """
        indexer = await self.get_indexer(user_id, indexer_id)
        if indexer.status != MANUAL_TRANSITIONS[requested]:
            raise InvalidStatusTransitionError(indexer_id, indexer.status.value, requested.value)

        await self.store.update_status(indexer_id, requested)
        await self._log(
            indexer_id,
            LogEventType.STATUS_CHANGE,
            f"Indexer {requested.value}",
            {"from": indexer.status.value, "to": requested.value},
        )
        return await self.store.get_indexer(indexer_id)

    # Deletion

    async def delete_indexer(self, user_id: str, indexer_id: str) -> None:
        """Tear down the upstream subscription and remove the indexer."""
        indexer = await self.get_indexer(user_id, indexer_id)

        webhook_id = await self.mappings.lookup_subscription(indexer_id) or indexer.webhook_id
        if webhook_id and self.webhook_api is not None:
            try:
                await self.webhook_api.delete_webhook(webhook_id)
                self.logger.info("Deleted webhook for indexer", indexer_id=indexer_id, webhook_id=webhook_id)
            except UpstreamWebhookError as e:
                self.logger.error(
                    "Failed to delete webhook",
                    indexer_id=indexer_id,
                    webhook_id=webhook_id,
                    error=e.message,
                )
        elif not webhook_id:
            self.logger.warning("Could not find webhook id for indexer", indexer_id=indexer_id)

        if self.subscriptions is not None:
            try:
                await self.subscriptions.remove_owner_addresses(indexer_id)
            except UpstreamWebhookError as e:
                self.logger.error("Failed to release shared addresses", indexer_id=indexer_id, error=e.message)

        await self.mappings.unregister(indexer_id)
        await self.store.delete_indexer(indexer_id, user_id)
        await self.registry.evict(indexer_id)
        self.logger.info("Indexer deleted", indexer_id=indexer_id)

    # Queries

    async def list_indexers(self, user_id: str) -> List[Indexer]:
        return await self.store.list_indexers(user_id)

    async def get_indexer(self, user_id: str, indexer_id: str) -> Indexer:
        """
        Raises:
            IndexerNotFoundError: If missing or owned by another tenant
        """
        indexer = await self.store.get_indexer(indexer_id)
        if indexer.user_id != user_id:
            raise IndexerNotFoundError(indexer_id)
        return indexer

    async def get_indexing_logs(
        self,
        user_id: str,
        indexer_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Log entries, newest first, with recent target rows attached to success entries."""
        indexer = await self.get_indexer(user_id, indexer_id)
        entries = [entry.to_dict() for entry in await self.store.list_logs(indexer_id, limit, offset)]

        to_enrich = [
            entry for entry in entries
            if entry["event_type"] in ROW_ENRICHED_EVENTS
            and not (entry.get("details") or {}).get("token_data")
        ]
        if not to_enrich:
            return entries

        try:
            credential = await self.store.get_credential(indexer.db_credential_id)
            engine = await self.connections.pool_for(credential)
            instance = await self.registry.get_or_create(indexer.id, indexer.indexer_type, indexer.params)
            for entry in to_enrich:
                details = dict(entry.get("details") or {})
                details["latest_rows"] = await instance.latest_rows(
                    engine, indexer.target_table, max_slot=details.get("slot")
                )
                entry["details"] = details
        except (WebhookIndexerException,) + STORAGE_ERRORS as e:
            self.logger.warning("Failed to attach target data to logs", indexer_id=indexer_id, error=str(e))

        return entries

    async def restore_mappings(self) -> int:
        """Register every stored subscription id in the mapping registry."""
        indexers = await self.store.list_indexers_with_webhook()
        for indexer in indexers:
            await self.mappings.register(indexer.webhook_id, indexer.id)
        self.logger.info("Webhook mappings restored", count=len(indexers))
        return len(indexers)

    # Helpers

    @staticmethod
    def _reason(error: Exception) -> str:
        return error.message if isinstance(error, WebhookIndexerException) else str(error)

    async def _log(self, indexer_id: str, event_type: str, message: str, details: Dict[str, Any]) -> None:
        try:
            await self.store.append_log(indexer_id, event_type, message, details)
        except STORAGE_ERRORS as e:
            self.logger.error("Failed to create log entry", indexer_id=indexer_id, event_type=event_type, error=str(e))


# Global service instance
_service: Optional[IndexerService] = None


def get_indexer_service() -> IndexerService:
    """Get or create the global indexer service."""
    global _service
    if _service is None:
        from webhook_indexer.indexer import get_indexer_registry

        from .connection_manager import get_connection_manager
        from .helius_client import get_helius_client
        from .mapping_registry import get_mapping_registry
        from .metadata_fetcher import get_metadata_fetcher
        from .metadata_store import get_indexer_store
        from .subscription_manager import get_subscription_manager

        has_api_key = bool(settings.helius_api_key)
        _service = IndexerService(
            store=get_indexer_store(),
            registry=get_indexer_registry(),
            mappings=get_mapping_registry(),
            connections=get_connection_manager(),
            webhook_api=get_helius_client() if has_api_key else None,
            subscriptions=get_subscription_manager() if has_api_key else None,
            metadata_fetcher=get_metadata_fetcher() if settings.metadata_enrichment_enabled else None,
        )
    return _service
