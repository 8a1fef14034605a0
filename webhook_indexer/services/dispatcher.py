"""
Inbound event dispatcher.

Resolves an upstream subscription id to its tenant indexer, gates on the
indexer status, obtains the tenant pool and cached indexer instance, runs
the payload through it and records the outcome in the indexing log.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

import structlog

from webhook_indexer.core.config import settings
from webhook_indexer.core.exceptions import (
    IndexerNotActiveError,
    IndexerNotFoundError,
    NotFoundError,
    ProcessingError,
    WebhookIndexerException,
)
from webhook_indexer.indexer.core import (
    BaseIndexer,
    IndexerRegistry,
    ItemOutcome,
    ItemResult,
    MetadataAwareIndexer,
    ProcessingStats,
    WebhookPayload,
)
from webhook_indexer.indexer.core.base import STORAGE_ERRORS
from webhook_indexer.indexer.core.enrichment import MetadataSource
from webhook_indexer.indexer.core.types import count_outcomes
from webhook_indexer.models import Indexer, IndexerType, LogEventType

from .connection_manager import TenantConnectionManager
from .mapping_registry import WebhookMappingRegistry
from .metadata_store import IndexerStore


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Lookup failures worth retrying: store races and transient storage errors
RETRYABLE_LOOKUP_ERRORS = (NotFoundError,) + STORAGE_ERRORS


@dataclass
class DispatchResult:
    """Outcome of one dispatched event."""
    indexer_id: str
    webhook_id: str
    slot: int
    results: List[ItemResult] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return count_outcomes(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "indexer_id": self.indexer_id,
            "webhook_id": self.webhook_id,
            "slot": self.slot,
            "counts": self.counts,
            "results": [r.to_dict() for r in self.results],
        }


class Dispatcher:
    """
    Request-time orchestrator for inbound events.

    Events for different indexers, and for the same indexer, may be
    dispatched concurrently; row convergence relies on the slot-monotonic
    upserts of each variant.
    """

    def __init__(
        self,
        store: IndexerStore,
        registry: IndexerRegistry,
        mappings: WebhookMappingRegistry,
        connections: TenantConnectionManager,
        metadata_fetcher: Optional[MetadataSource] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        self.store = store
        self.registry = registry
        self.mappings = mappings
        self.connections = connections
        self.metadata_fetcher = metadata_fetcher
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.retry_delay = retry_delay if retry_delay is not None else settings.dispatch_retry_delay
        self.stats = ProcessingStats()
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logger.bind(service="dispatcher")

    # Background scheduling

    def schedule(self, webhook_id: str, payload: WebhookPayload) -> asyncio.Task:
        """Dispatch an event in the background and return the task."""
        task = asyncio.create_task(self._dispatch_in_background(webhook_id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch_in_background(self, webhook_id: str, payload: WebhookPayload) -> None:
        try:
            await self.dispatch(webhook_id, payload)
        except WebhookIndexerException as e:
            self.logger.error(
                "Failed to process webhook payload",
                webhook_id=webhook_id,
                slot=payload.slot,
                error=e.message,
                code=e.code,
            )
        except Exception as e:
            self.logger.error(
                "Unexpected error processing webhook payload",
                webhook_id=webhook_id,
                slot=payload.slot,
                error=str(e),
                exc_info=True,
            )

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Dispatch

    async def dispatch(self, webhook_id: str, payload: WebhookPayload) -> DispatchResult:
        """
        Process one inbound event for the indexer behind a subscription id.

        Raises:
            IndexerNotFoundError: No indexer resolves after retries
            IndexerNotActiveError: The indexer does not accept events
            ProcessingError: One or more items failed to store
        """
        self.stats.dispatched += 1
        self.logger.info("Processing webhook payload", webhook_id=webhook_id, slot=payload.slot)

        try:
            indexer = await self.resolve_indexer(webhook_id)
        except WebhookIndexerException:
            self.stats.failed += 1
            raise

        if not indexer.is_active:
            self.stats.rejected += 1
            self.logger.warning(
                "Event rejected for inactive indexer",
                indexer_id=indexer.id,
                status=indexer.status.value,
            )
            raise IndexerNotActiveError(indexer.id, indexer.status.value)

        try:
            result = await self._process(indexer, webhook_id, payload)
        except Exception as e:
            self.stats.failed += 1
            error = e.message if isinstance(e, WebhookIndexerException) else str(e)
            await self._log(
                indexer.id,
                LogEventType.ERROR,
                f"Failed to process payload: {error}",
                {"error": error, "slot": payload.slot},
            )
            raise

        self.stats.succeeded += 1
        self.stats.last_processed_slot = payload.slot
        self.logger.info(
            "Successfully processed webhook payload",
            webhook_id=webhook_id,
            indexer_id=indexer.id,
            slot=payload.slot,
            **result.counts,
        )
        return result

    async def resolve_indexer(self, webhook_id: str) -> Indexer:
        """
        Find the indexer record behind an inbound subscription id.

        The mapping registry is consulted first. Otherwise the id is matched
        against stored subscription ids and, for per-indexer callback URLs,
        against indexer ids.
        """
        indexer_id = await self.mappings.lookup(webhook_id)
        if indexer_id is not None:
            return await self._with_retry(
                "indexer", webhook_id, lambda: self.store.get_indexer(indexer_id)
            )

        async def lookup() -> Indexer:
            try:
                indexer = await self.store.get_indexer_by_webhook_id(webhook_id)
            except IndexerNotFoundError:
                return await self.store.get_indexer(webhook_id)
            await self.mappings.register(webhook_id, indexer.id)
            return indexer

        return await self._with_retry("indexer", webhook_id, lookup)

    async def _with_retry(self, what: str, key: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a store lookup with linear backoff between attempts."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except RETRYABLE_LOOKUP_ERRORS as e:
                if attempt == self.max_attempts:
                    raise
                self.logger.warning(
                    f"Failed to get {what}, retrying",
                    key=key,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self.retry_delay * attempt)
        raise RuntimeError("unreachable")

    async def _process(self, indexer: Indexer, webhook_id: str, payload: WebhookPayload) -> DispatchResult:
        credential = await self._with_retry(
            "database credential",
            indexer.db_credential_id,
            lambda: self.store.get_credential(indexer.db_credential_id),
        )
        instance = await self.registry.get_or_create(indexer.id, indexer.indexer_type, indexer.params)
        engine = await self.connections.pool_for(credential)

        if isinstance(instance, MetadataAwareIndexer) and self.metadata_fetcher is not None:
            try:
                await instance.enrich_metadata(engine, indexer.target_table, self.metadata_fetcher)
            except Exception as e:
                self.logger.warning("Failed to enrich token metadata", indexer_id=indexer.id, error=str(e))
            results = await instance.process_with_metadata(
                engine, indexer.target_table, payload, self.metadata_fetcher
            )
        else:
            results = await instance.process(engine, indexer.target_table, payload)

        self.stats.record_results(results)
        failed = [r for r in results if r.outcome == ItemOutcome.FAILED]
        if failed:
            raise ProcessingError(indexer.id, len(failed), [r.to_dict() for r in failed])

        await self._record_success(indexer, instance, engine, payload, results)
        return DispatchResult(indexer.id, webhook_id, payload.slot, results)

    async def _record_success(
        self,
        indexer: Indexer,
        instance: BaseIndexer,
        engine: Any,
        payload: WebhookPayload,
        results: List[ItemResult]
    ) -> None:
        try:
            await self.store.update_last_indexed(indexer.id, datetime.utcnow())
        except (WebhookIndexerException,) + STORAGE_ERRORS as e:
            self.logger.error("Failed to update last indexed time", indexer_id=indexer.id, error=str(e))

        details: Dict[str, Any] = {"slot": payload.slot, "items": count_outcomes(results)}
        if payload.transaction.id:
            details["transaction_id"] = payload.transaction.id
        if payload.signatures:
            details["signatures"] = payload.signatures
        await self._log(indexer.id, LogEventType.SUCCESS, "Successfully processed webhook payload", details)

        if indexer.indexer_type != IndexerType.TOKEN_PRICES:
            return
        try:
            rows = await instance.latest_rows(engine, indexer.target_table)
        except STORAGE_ERRORS as e:
            self.logger.error("Failed to query token data", indexer_id=indexer.id, error=str(e))
            return
        if rows:
            await self._log(
                indexer.id,
                LogEventType.TOKEN_DATA,
                "Current token price data",
                {"slot": payload.slot, "token_data": rows},
            )

    async def _log(self, indexer_id: str, event_type: str, message: str, details: Dict[str, Any]) -> None:
        try:
            await self.store.append_log(indexer_id, event_type, message, details)
        except STORAGE_ERRORS as e:
            self.logger.error(
                "Failed to create log entry",
                indexer_id=indexer_id,
                event_type=event_type,
                error=str(e),
            )

    def get_stats(self) -> Dict[str, Any]:
        stats = asdict(self.stats)
        stats["start_time"] = self.stats.start_time.isoformat() if self.stats.start_time else None
        stats["pending_tasks"] = self.pending_tasks
        return stats


# Global dispatcher instance
_dispatcher: Optional[Dispatcher] = None


def get_dispatcher() -> Dispatcher:
    """Get or create the global dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        from webhook_indexer.indexer import get_indexer_registry

        from .connection_manager import get_connection_manager
        from .mapping_registry import get_mapping_registry
        from .metadata_fetcher import get_metadata_fetcher
        from .metadata_store import get_indexer_store

        _dispatcher = Dispatcher(
            store=get_indexer_store(),
            registry=get_indexer_registry(),
            mappings=get_mapping_registry(),
            connections=get_connection_manager(),
            metadata_fetcher=get_metadata_fetcher() if settings.metadata_enrichment_enabled else None,
        )
    return _dispatcher
